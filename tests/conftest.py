import argparse
import sys
from collections.abc import Callable
from pathlib import Path

import pytest
import yaml

import gen

GENERATOR_DIR = Path(__file__).resolve().parent.parent
if str(GENERATOR_DIR) not in sys.path:
    sys.path.insert(0, str(GENERATOR_DIR))


@pytest.fixture
def existing_paths(tmp_path: Path) -> dict[str, Path]:
    native_functions = tmp_path / "native_functions.yaml"
    native_functions.write_text("[]\n", encoding="utf-8")

    output_dir = tmp_path / "out"
    return {
        "native_functions": native_functions,
        "output_dir": output_dir,
    }


@pytest.fixture
def missing_path(tmp_path: Path) -> Path:
    return tmp_path / "missing"


@pytest.fixture
def make_args(existing_paths: dict[str, Path]) -> Callable[..., argparse.Namespace]:
    def _make_args(**overrides: object) -> argparse.Namespace:
        base_args: dict[str, object] = {
            "native_functions": existing_paths["native_functions"],
            "output_dir": existing_paths["output_dir"],
            "surface": None,
            "strict": False,
            "list_surfaces": False,
            "info": None,
        }
        base_args.update(overrides)
        return argparse.Namespace(**base_args)

    return _make_args


@pytest.fixture
def make_function() -> Callable[..., gen.Function]:
    def _make_function(
        func: str,
        *,
        variants: str | None = None,
        python_module: str | None = None,
        cpp_no_default_args: list[str] | None = None,
    ) -> gen.Function:
        record: dict[str, object] = {"func": func}
        if variants is not None:
            record["variants"] = variants
        if python_module is not None:
            record["python_module"] = python_module
        if cpp_no_default_args is not None:
            record["cpp_no_default_args"] = cpp_no_default_args
        return gen.parse_function(record)

    return _make_function


@pytest.fixture
def write_native_functions(tmp_path: Path) -> Callable[[list[dict[str, object]]], Path]:
    def _write_native_functions(
        records: list[dict[str, object]], name: str = "native_functions.yaml"
    ) -> Path:
        path = tmp_path / name
        path.write_text(yaml.safe_dump(records, sort_keys=False), encoding="utf-8")
        return path

    return _write_native_functions
