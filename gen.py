"""Ruby bindings generator for LibTorch native functions.

Generates Rice/C++ dispatch functions from PyTorch's native_functions.yaml.
Produces one `<surface>_functions.h` / `<surface>_functions.cpp` pair per
binding surface (torch, tensor, nn, linalg) under ext/torch.

Usage:
    python gen.py --native-functions codegen/native_functions.yaml --output-dir ext/torch
"""

import argparse
import enum
import re
import sys
from collections import defaultdict
from dataclasses import dataclass, replace
from pathlib import Path
from typing import NamedTuple

import yaml

PROJECT_ROOT = Path(__file__).parent
DEFAULT_NATIVE_FUNCTIONS = PROJECT_ROOT / "codegen" / "native_functions.yaml"
DEFAULT_OUTPUT_DIR = PROJECT_ROOT / "ext" / "torch"


# ===--- CLI config contracts ---=== #


@dataclass(frozen=True)
class GenerateConfig:
    native_functions: Path
    output_dir: Path
    surfaces: tuple[str, ...]
    strict: bool


@dataclass(frozen=True)
class DiscoveryConfig:
    command: str
    function_name: str | None
    native_functions: Path


VALID_ERROR_CODES = {
    "PATH_NOT_FOUND",
    "INVALID_SURFACE",
    "CONFLICT_GENERATE_DISCOVERY",
}


class ConfigError(Exception):
    def __init__(self, code: str, message: str, suggestion: str | None = None):
        if code not in VALID_ERROR_CODES:
            raise ValueError(f"Unknown config error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion


def validate_path_exists(
    path: Path | None, flag: str, suggestion: str | None = None
) -> Path:
    if path is None:
        raise ConfigError(
            "PATH_NOT_FOUND",
            f"{flag} is required: no path provided.",
            suggestion or f"Pass the path explicitly: {flag} /path/to/resource",
        )
    if path.exists():
        return path
    raise ConfigError(
        "PATH_NOT_FOUND",
        f"Path for {flag} does not exist: {path}",
        suggestion or "Provide an existing path for this flag.",
    )


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Generate Ruby bindings for LibTorch native functions"
    )

    parser.add_argument(
        "--native-functions", type=Path, default=DEFAULT_NATIVE_FUNCTIONS
    )
    parser.add_argument("--output-dir", type=Path, default=DEFAULT_OUTPUT_DIR)
    parser.add_argument("--surface", action="append", default=None)
    parser.add_argument("--strict", action="store_true", default=False)

    discovery_group = parser.add_mutually_exclusive_group()
    discovery_group.add_argument("--list-surfaces", action="store_true", default=False)
    discovery_group.add_argument("--info", type=str, default=None)

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = build_argument_parser()
    return parser.parse_args(argv)


def normalize_surfaces(raw_surfaces: list[str] | None) -> tuple[str, ...]:
    """Validate --surface values, dedupe them and return them in SURFACES order."""
    if not raw_surfaces:
        return SURFACE_NAMES

    selected: set[str] = set()
    for name in raw_surfaces:
        if name not in SURFACE_NAMES:
            raise ConfigError(
                "INVALID_SURFACE",
                f"Unknown surface: {name}",
                f"Use one or more of: {', '.join(SURFACE_NAMES)}.",
            )
        selected.add(name)
    return tuple(name for name in SURFACE_NAMES if name in selected)


def validate_config(args: argparse.Namespace) -> GenerateConfig | DiscoveryConfig:
    has_generate_input = bool(args.surface or args.strict)
    has_discovery_command = bool(args.list_surfaces or args.info)

    if has_generate_input and has_discovery_command:
        raise ConfigError(
            "CONFLICT_GENERATE_DISCOVERY",
            "Generate flags cannot be combined with discovery flags.",
            "Choose either generate mode or one discovery command.",
        )

    native_functions = validate_path_exists(
        args.native_functions,
        "--native-functions",
        "Download native_functions.yaml for your LibTorch version:\n"
        "  https://github.com/pytorch/pytorch/blob/main/aten/src/ATen/native/native_functions.yaml\n"
        "Or pass a custom path: --native-functions /your/path/to/native_functions.yaml",
    )

    if has_discovery_command:
        command = "list-surfaces" if args.list_surfaces else "info"
        return DiscoveryConfig(
            command=command,
            function_name=args.info,
            native_functions=native_functions,
        )

    return GenerateConfig(
        native_functions=native_functions,
        output_dir=args.output_dir,
        surfaces=normalize_surfaces(args.surface),
        strict=bool(args.strict),
    )


def build_config(argv: list[str] | None = None) -> GenerateConfig | DiscoveryConfig:
    return validate_config(parse_args(argv))


# ===--- Generation errors ---=== #

VALID_GENERATION_ERROR_CODES = {
    "INVALID_DESCRIPTOR",
    "DUPLICATE_FUNCTION",
    "UNKNOWN_TYPE",
    "UNSUPPORTED_RETURN",
    "UNEXPECTED_MODULE",
    "MISSING_BASE",
}


class GenerationError(Exception):
    """A defect in the descriptor table that halts the whole run.

    Raised before any file is written. `function` names the offending
    descriptor when one can be identified.
    """

    def __init__(self, code: str, message: str, function: str | None = None):
        if code not in VALID_GENERATION_ERROR_CODES:
            raise ValueError(f"Unknown generation error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message
        self.function = function


def warn(message: str) -> None:
    print(f"Warning: {message}", file=sys.stderr)


# ===--- Constants ---=== #


class Surface(NamedTuple):
    name: str
    def_method: str
    remove_self: bool


TORCH_SURFACE = Surface("torch", "define_singleton_method", remove_self=False)
TENSOR_SURFACE = Surface("tensor", "define_method", remove_self=True)
NN_SURFACE = Surface("nn", "define_singleton_method", remove_self=False)
LINALG_SURFACE = Surface("linalg", "define_singleton_method", remove_self=False)

SURFACES: tuple[Surface, ...] = (
    TORCH_SURFACE,
    TENSOR_SURFACE,
    NN_SURFACE,
    LINALG_SURFACE,
)
SURFACE_NAMES: tuple[str, ...] = tuple(surface.name for surface in SURFACES)
SURFACE_BY_NAME: dict[str, Surface] = {surface.name: surface for surface in SURFACES}

# python_module tags routed to their own surface.
MODULE_SURFACES: dict[str, str] = {"nn": "nn", "linalg": "linalg"}
# Recognized python_module tags that have no Ruby surface yet.
UNEMITTED_MODULES = frozenset({"fft", "special"})
KNOWN_MODULES = frozenset(MODULE_SURFACES) | UNEMITTED_MODULES

VALID_VARIANTS = frozenset({"function", "method"})

SKIPPED_FUNCTIONS = frozenset(
    {
        "to",
        "record_stream",
        # bound by hand in ext.cpp
        "index",
        "index_put_",
        "index_put",
    }
)
SKIPPED_NAME_FRAGMENTS: tuple[str, ...] = ("_backward", "_forward")
UNSUPPORTED_TYPE_TOKENS: tuple[str, ...] = ("Dimname", "ConstQuantizerPtr")

TENSOR_OPTION_NAMES: tuple[str, ...] = (
    "dtype",
    "device",
    "layout",
    "requires_grad",
    "pin_memory",
)
TENSOR_OPTIONS_MIN_PARAMS = 4

# Their accessors resolve None to the default, so the `?` marker is dropped.
NON_OPTIONAL_OPTION_NAMES = frozenset({"dtype", "device", "layout", "pin_memory"})

# Functions whose dtype defaults to int64 instead of the global default dtype.
INT64_DTYPE_FUNCTIONS = frozenset({"tril_indices", "triu_indices"})
INT64_DTYPE_PREFIXES: tuple[str, ...] = ("randperm",)

# Names that clash with methods defined by the Ruby layer.
RUBY_RESERVED_NAMES = frozenset({"size", "stride", "random!", "stft"})

GENERATOR_NAME = "torch-functions-gen"


# ===--- Descriptor model ---=== #


@dataclass(frozen=True)
class Param:
    name: str
    type: str
    optional: bool = False
    default: str | None = None
    modifier: str | None = None
    keyword_only: bool = False
    list_size: str | None = None

    @property
    def is_write(self) -> bool:
        return self.modifier is not None and "!" in self.modifier


@dataclass(frozen=True)
class Retval:
    name: str | None
    type: str
    modifier: str | None = None


@dataclass(frozen=True)
class Function:
    """One parsed native_functions.yaml record.

    Attributes:
        name: Full operator name including the overload suffix, e.g.
            "add.out". Unique within one table.
        func: Raw schema string the record was parsed from.
        params: Parameters in declaration order.
        retvals: Return values; empty for functions returning nothing.
        variants: Subset of {"function", "method"}.
        python_module: Module tag such as "nn" or "linalg", or None.
    """

    name: str
    func: str
    params: tuple[Param, ...]
    retvals: tuple[Retval, ...]
    variants: frozenset[str] = frozenset({"function"})
    python_module: str | None = None

    @property
    def base_name(self) -> str:
        return self.name.split(".", 1)[0]

    @property
    def out_index(self) -> int | None:
        # In-place mutators (trailing underscore) write to self but are not
        # out variants.
        if self.base_name.endswith("_") or not self.retvals:
            return None
        for index, param in enumerate(self.params):
            if param.is_write:
                return index
        return None

    @property
    def is_out(self) -> bool:
        return self.out_index is not None

    @property
    def out_params(self) -> tuple[Param, ...]:
        if self.out_index is None:
            return ()
        return self.params[self.out_index : self.out_index + len(self.retvals)]

    @property
    def collapses_out(self) -> bool:
        """True when several tensor outputs are passed as one `out` list."""
        return (
            self.is_out
            and len(self.retvals) > 1
            and all(param.type == "Tensor" for param in self.out_params)
        )


# ===--- Descriptor parsing ---=== #

_SIGNATURE_RE = re.compile(
    r"^(?P<name>[A-Za-z0-9_.]+)\((?P<params>.*)\)\s*->\s*(?P<returns>.+)$"
)
_MODIFIER_RE = re.compile(r"^(?P<head>[^(]*)\((?P<modifier>[^)]*)\)(?P<tail>.*)$")
_LIST_SIZE_RE = re.compile(r"\[(\d*)\]")


def _invalid_descriptor(index: int, field: str, detail: str, name: str | None = None):
    label = f"Record {index}" if name is None else f"Record {index} ({name})"
    return GenerationError("INVALID_DESCRIPTOR", f"{label}: field '{field}' {detail}", name)


def split_top_level(text: str) -> list[str]:
    """Split on commas that are not nested in brackets or parentheses."""
    parts: list[str] = []
    depth = 0
    current: list[str] = []
    for char in text:
        if char in "([":
            depth += 1
        elif char in ")]":
            depth -= 1
        if char == "," and depth == 0:
            parts.append("".join(current).strip())
            current = []
            continue
        current.append(char)
    tail = "".join(current).strip()
    if tail:
        parts.append(tail)
    return parts


def extract_modifier(type_str: str) -> tuple[str, str | None]:
    """Lift an alias annotation: Tensor(a!) -> (Tensor, a!), Tensor(a)[] -> (Tensor[], a)."""
    match = _MODIFIER_RE.match(type_str)
    if match is None:
        return type_str, None
    return match.group("head") + match.group("tail"), match.group("modifier")


def parse_param(
    raw: str,
    *,
    keyword_only: bool,
    base_name: str,
    no_default_args: frozenset[str],
) -> Param | None:
    head, has_default, default = raw.partition("=")
    type_str, _, name = head.strip().rpartition(" ")
    if not type_str or not name:
        return None

    optional = False
    if "?" in type_str:
        optional = name not in NON_OPTIONAL_OPTION_NAMES
        type_str = type_str.replace("?", "")

    type_str, modifier = extract_modifier(type_str)

    list_size = None
    size_match = _LIST_SIZE_RE.search(type_str)
    if size_match:
        list_size = size_match.group(1) or None

    param_default = default.strip() if has_default else None
    if name == "dtype" and (
        base_name in INT64_DTYPE_FUNCTIONS or base_name.startswith(INT64_DTYPE_PREFIXES)
    ):
        param_default = "torch.int64"
    if name in no_default_args:
        param_default = None

    return Param(
        name=name,
        type=type_str,
        optional=optional,
        default=param_default,
        modifier=modifier,
        keyword_only=keyword_only,
        list_size=list_size,
    )


def parse_params(
    text: str,
    *,
    base_name: str,
    no_default_args: frozenset[str],
    index: int,
    name: str,
) -> tuple[Param, ...]:
    params: list[Param] = []
    keyword_only = False
    for raw in split_top_level(text):
        if raw == "*":
            keyword_only = True
            continue
        param = parse_param(
            raw,
            keyword_only=keyword_only,
            base_name=base_name,
            no_default_args=no_default_args,
        )
        if param is None:
            raise _invalid_descriptor(
                index, "func", f"has a malformed parameter: {raw!r}", name
            )
        params.append(param)

    param_names = {param.name for param in params}
    if NON_OPTIONAL_OPTION_NAMES <= param_names and "requires_grad" not in param_names:
        params.append(
            Param(
                name="requires_grad",
                type="bool",
                default="False",
                keyword_only=True,
            )
        )
    return tuple(params)


def parse_retval(raw: str) -> Retval:
    # Lift the alias set first; it may contain spaces (`a -> *`).
    type_str, modifier = extract_modifier(raw.strip())
    type_str = type_str.strip()
    name = None
    if " " in type_str:
        type_str, _, name = type_str.rpartition(" ")
    return Retval(name=name, type=type_str, modifier=modifier)


def parse_returns(text: str) -> tuple[Retval, ...]:
    text = text.strip()
    if text == "()":
        return ()
    if text.startswith("(") and text.endswith(")"):
        return tuple(parse_retval(raw) for raw in split_top_level(text[1:-1]))
    return (parse_retval(text),)


def parse_variants(raw: object, index: int, name: str) -> frozenset[str]:
    if raw is None:
        return frozenset({"function"})
    if isinstance(raw, str):
        entries = [entry.strip() for entry in raw.split(",")]
    elif isinstance(raw, list) and all(isinstance(entry, str) for entry in raw):
        entries = [entry.strip() for entry in raw]
    else:
        raise _invalid_descriptor(
            index, "variants", f"must be a string or list, got {raw!r}", name
        )

    entries = [entry for entry in entries if entry]
    if not entries:
        raise _invalid_descriptor(
            index, "variants", "must name at least one of: function, method", name
        )

    unknown = sorted(entry for entry in entries if entry not in VALID_VARIANTS)
    if unknown:
        raise _invalid_descriptor(
            index, "variants", f"has unknown variants: {', '.join(unknown)}", name
        )
    return frozenset(entries)


def parse_function(record: object, index: int = 0) -> Function:
    """Parse one native_functions.yaml record into a Function.

    Type strings are kept verbatim; the type mapper validates them when the
    function is emitted, so records removed by skip_functions never fail.

    Raises:
        GenerationError: INVALID_DESCRIPTOR naming the record index and the
            offending field.
    """
    if not isinstance(record, dict):
        raise GenerationError(
            "INVALID_DESCRIPTOR",
            f"Record {index}: expected a mapping, got {type(record).__name__}",
        )

    func = record.get("func")
    if not isinstance(func, str) or not func.strip():
        raise _invalid_descriptor(index, "func", "must be a non-empty string")
    func = func.strip()

    match = _SIGNATURE_RE.match(func)
    if match is None:
        raise _invalid_descriptor(index, "func", f"is not a valid schema: {func!r}")
    name = match.group("name")
    base_name = name.split(".", 1)[0]

    python_module = record.get("python_module")
    if python_module is not None and not isinstance(python_module, str):
        raise _invalid_descriptor(
            index, "python_module", f"must be a string, got {python_module!r}", name
        )

    no_default_args = record.get("cpp_no_default_args") or []
    if not isinstance(no_default_args, list):
        raise _invalid_descriptor(
            index, "cpp_no_default_args", f"must be a list, got {no_default_args!r}", name
        )

    function = Function(
        name=name,
        func=func,
        params=parse_params(
            match.group("params"),
            base_name=base_name,
            no_default_args=frozenset(no_default_args),
            index=index,
            name=name,
        ),
        retvals=parse_returns(match.group("returns")),
        variants=parse_variants(record.get("variants"), index, name),
        python_module=python_module,
    )

    if function.is_out and len(function.out_params) != len(function.retvals):
        raise _invalid_descriptor(
            index,
            "func",
            f"declares {len(function.retvals)} returns but only "
            f"{len(function.out_params)} out parameters",
            name,
        )
    return function


def parse_functions(records: object) -> list[Function]:
    """Parse all records and return them sorted by name."""
    if not isinstance(records, list):
        raise GenerationError(
            "INVALID_DESCRIPTOR",
            f"Expected a list of function records, got {type(records).__name__}",
        )

    functions: list[Function] = []
    seen: dict[str, int] = {}
    for index, record in enumerate(records):
        function = parse_function(record, index)
        if function.name in seen:
            raise GenerationError(
                "DUPLICATE_FUNCTION",
                f"Record {index}: {function.name} already defined by record "
                f"{seen[function.name]}",
                function.name,
            )
        seen[function.name] = index
        functions.append(function)
    return sorted(functions, key=lambda f: f.name)


def load_functions(path: Path) -> list[Function]:
    loader = getattr(yaml, "CSafeLoader", yaml.SafeLoader)
    with open(path, encoding="utf-8") as f:
        records = yaml.load(f, Loader=loader)
    return parse_functions(records)


# ===--- Filter & partition ---=== #


def is_skipped(function: Function) -> bool:
    base_name = function.base_name
    return (
        base_name.startswith("_")
        or any(fragment in base_name for fragment in SKIPPED_NAME_FRAGMENTS)
        or base_name in SKIPPED_FUNCTIONS
        or any(token in function.func for token in UNSUPPORTED_TYPE_TOKENS)
    )


def skip_functions(functions: list[Function]) -> list[Function]:
    return [f for f in functions if not is_skipped(f)]


def group_functions(functions: list[Function]) -> dict[str, list[Function]]:
    """Partition functions into per-surface lists.

    python_module wins over variants: nn and linalg functions go to their own
    surface, fft and special are recognized but not emitted. Everything else
    lands on torch (function variant) and/or tensor (method variant).

    Raises:
        GenerationError: UNEXPECTED_MODULE when any python_module is outside
            KNOWN_MODULES.
    """
    unexpected = sorted(
        {
            f.python_module
            for f in functions
            if f.python_module is not None and f.python_module not in KNOWN_MODULES
        }
    )
    if unexpected:
        offenders = [f.name for f in functions if f.python_module in unexpected]
        raise GenerationError(
            "UNEXPECTED_MODULE",
            f"Unexpected modules: {', '.join(unexpected)} "
            f"(used by {', '.join(offenders)})",
            offenders[0],
        )

    grouped: dict[str, list[Function]] = {name: [] for name in SURFACE_NAMES}
    for function in functions:
        module = function.python_module
        if module is not None:
            if module in MODULE_SURFACES:
                grouped[MODULE_SURFACES[module]].append(function)
            continue
        if "function" in function.variants:
            grouped[TORCH_SURFACE.name].append(function)
        if "method" in function.variants:
            grouped[TENSOR_SURFACE.name].append(function)
    return grouped


def group_by_base_name(functions: list[Function]) -> dict[str, list[Function]]:
    grouped: dict[str, list[Function]] = defaultdict(list)
    for function in sorted(functions, key=lambda f: f.name):
        grouped[function.base_name].append(function)
    return {name: grouped[name] for name in sorted(grouped)}


# ===--- Type mapper ---=== #


class TypeKind(enum.Enum):
    TENSOR = "Tensor"
    TENSOR_LIST = "Tensor[]"
    SCALAR = "Scalar"
    SCALAR_LIST = "Scalar[]"
    INT = "int"
    INT_LIST = "int[]"
    FLOAT = "float"
    FLOAT_LIST = "float[]"
    STRING = "str"
    BOOL = "bool"
    SCALAR_TYPE = "ScalarType"
    LAYOUT = "Layout"
    DEVICE = "Device"
    STORAGE = "Storage"
    GENERATOR = "Generator"
    MEMORY_FORMAT = "MemoryFormat"


class TypeInfo(NamedTuple):
    native_type: str
    signature_type: str
    accessor: str


TYPE_TABLE: dict[TypeKind, TypeInfo] = {
    TypeKind.TENSOR: TypeInfo("const Tensor &", "Tensor", "tensor"),
    TypeKind.TENSOR_LIST: TypeInfo("TensorList", "TensorList", "tensorlist"),
    TypeKind.SCALAR: TypeInfo("Scalar", "Scalar", "scalar"),
    TypeKind.SCALAR_LIST: TypeInfo("ScalarList", "ScalarList", "scalarlist"),
    TypeKind.INT: TypeInfo("int64_t", "int64_t", "toInt64"),
    TypeKind.INT_LIST: TypeInfo("IntArrayRef", "IntArrayRef", "intlist"),
    TypeKind.FLOAT: TypeInfo("double", "double", "toDouble"),
    TypeKind.FLOAT_LIST: TypeInfo("ArrayRef<double>", "ArrayRef<double>", "doublelist"),
    TypeKind.STRING: TypeInfo("std::string", "std::string", "string"),
    TypeKind.BOOL: TypeInfo("bool", "bool", "toBool"),
    TypeKind.SCALAR_TYPE: TypeInfo("ScalarType", "ScalarType", "scalartype"),
    TypeKind.LAYOUT: TypeInfo("Layout", "Layout", "layout"),
    TypeKind.DEVICE: TypeInfo("Device", "Device", "device"),
    TypeKind.STORAGE: TypeInfo("Storage", "Storage", "storage"),
    TypeKind.GENERATOR: TypeInfo("Generator", "Generator", "generator"),
    TypeKind.MEMORY_FORMAT: TypeInfo("MemoryFormat", "MemoryFormat", "memoryformat"),
}
if set(TYPE_TABLE) != set(TypeKind):
    raise RuntimeError("TYPE_TABLE must cover every TypeKind")

_KIND_BY_TYPE: dict[str, TypeKind] = {kind.value: kind for kind in TypeKind}
_FIXED_INT_LIST_RE = re.compile(r"^int\[\d+\]$")

# Optional forms of these kinds are already nullable at runtime.
PASSTHROUGH_OPTIONAL_KINDS = frozenset(
    {TypeKind.GENERATOR, TypeKind.TENSOR_LIST, TypeKind.INT_LIST}
)

RETURN_TYPES: dict[tuple[str, ...], str] = {
    (): "void",
    ("bool",): "bool",
    ("int",): "int64_t",
    ("float",): "double",
    ("Scalar",): "Scalar",
    ("ScalarType",): "ScalarType",
    ("QScheme",): "QScheme",
    ("Tensor",): "Tensor",
    ("Tensor[]",): "std::vector<Tensor>",
    ("Tensor", "Tensor"): "std::tuple<Tensor,Tensor>",
    ("Tensor", "Tensor", "Tensor"): "std::tuple<Tensor,Tensor,Tensor>",
    ("Tensor", "Tensor", "Tensor", "Tensor"): "std::tuple<Tensor,Tensor,Tensor,Tensor>",
    (
        "Tensor",
        "Tensor",
        "Tensor",
        "Tensor",
        "Tensor",
    ): "std::tuple<Tensor,Tensor,Tensor,Tensor,Tensor>",
    ("Tensor", "Tensor", "float", "int"): "std::tuple<Tensor,Tensor,double,int64_t>",
    ("float", "float"): "std::tuple<double,double>",
}


def type_kind(type_str: str, function_name: str) -> TypeKind:
    kind = _KIND_BY_TYPE.get(type_str)
    if kind is not None:
        return kind
    if _FIXED_INT_LIST_RE.match(type_str):
        return TypeKind.INT_LIST
    raise GenerationError(
        "UNKNOWN_TYPE", f"Unknown type: {type_str} ({function_name})", function_name
    )


def native_param_type(param: Param, function: Function) -> str:
    kind = type_kind(param.type, function.name)
    if kind is TypeKind.TENSOR:
        if param.optional:
            return "const Tensor &" if function.is_out else "const OptionalTensor &"
        if param.modifier:
            if param.is_write and len(function.retvals) > 1:
                return "Tensor &"
            return "Tensor"
        return "const Tensor &"

    native_type = TYPE_TABLE[kind].native_type
    if param.optional:
        return f"c10::optional<{native_type}>"
    return native_type


def parser_accessor(param: Param, function: Function) -> str:
    kind = type_kind(param.type, function.name)
    accessor = TYPE_TABLE[kind].accessor
    if not param.optional:
        return accessor
    if kind is TypeKind.TENSOR:
        return "tensor" if function.is_out else "optionalTensor"
    if kind in PASSTHROUGH_OPTIONAL_KINDS:
        return accessor
    return f"{accessor}Optional"


def signature_type(param: Param, function_name: str) -> str:
    sig_type = TYPE_TABLE[type_kind(param.type, function_name)].signature_type
    if param.list_size:
        sig_type += f"[{param.list_size}]"
    if param.optional:
        sig_type += "?"
    return sig_type


def native_return_type(function: Function) -> str:
    shape = tuple(retval.type for retval in function.retvals)
    native = RETURN_TYPES.get(shape)
    if native is None:
        raise GenerationError(
            "UNSUPPORTED_RETURN",
            f"Unknown retvals: ({', '.join(shape)}) ({function.name})",
            function.name,
        )
    return native


def check_types(functions: list[Function]) -> None:
    """Map every parameter and return shape of functions that passed the filter.

    Runs over all kept functions, including those on modules without a
    surface and surfaces not selected for this run.

    Raises:
        GenerationError: UNKNOWN_TYPE or UNSUPPORTED_RETURN for the first
            offending function in name order.
    """
    for function in sorted(functions, key=lambda f: f.name):
        for param in function.params:
            type_kind(param.type, function.name)
        native_return_type(function)


# ===--- Signature generator ---=== #


def signature_params(function: Function, skip_out: bool = False) -> list[Param]:
    params = list(function.params)
    if not function.is_out:
        return params

    start = function.out_index
    stop = start + len(function.retvals)
    if skip_out:
        del params[start:stop]
    elif function.collapses_out:
        params[start:stop] = [
            Param(
                name="out",
                type="Tensor[]",
                keyword_only=True,
                list_size=str(len(function.retvals)),
            )
        ]
    return params


def signature_param(param: Param, function_name: str) -> str:
    name = "input" if param.name == "self" else param.name
    sig = f"{signature_type(param, function_name)} {name}"

    if param.default is None:
        if param.name == "out":
            sig += "=None"
    elif param.default == "[]":
        sig += "=None"
    elif param.default == "Mean":
        sig += "=at::Reduction::Mean"
    else:
        sig += f"={param.default}"
    return sig


def visible_signature_params(
    function: Function, surface: Surface, skip_out: bool = False
) -> tuple[list[Param], list[Param]]:
    params = signature_params(function, skip_out)
    positional = [
        p
        for p in params
        if not p.keyword_only and not (surface.remove_self and p.name == "self")
    ]
    keyword_only = [p for p in params if p.keyword_only]
    return positional, keyword_only


def generate_signature(
    function: Function, surface: Surface, skip_out: bool = False
) -> str:
    """Render the parser signature, e.g. `add(Tensor input, Tensor other, *, Scalar alpha=1)`.

    With skip_out=True the out parameters are elided; the result is the key
    used to merge a plain overload with its out variant.
    """
    positional, keyword_only = visible_signature_params(function, surface, skip_out)
    parts = [signature_param(p, function.name) for p in positional]
    if keyword_only:
        parts.append("*")
        parts.extend(signature_param(p, function.name) for p in keyword_only)
    return f"{function.base_name}({', '.join(parts)})"


def signature_arg_count(function: Function, surface: Surface) -> int:
    positional, keyword_only = visible_signature_params(function, surface)
    return len(positional) + len(keyword_only)


# ===--- Overload grouper ---=== #


@dataclass(frozen=True)
class OverloadGroup:
    """Plain and out variants of one operator sharing an elided-out signature.

    Attributes:
        key: Signature with out parameters elided.
        signature: Signature given to the runtime parser. The out variant's
            full signature when one exists, otherwise the key.
        base: Plain function, or the out function when base_is_fallback.
        out: Out variant, if any.
        base_is_fallback: True when no plain overload was found and the out
            variant stands in as base.
    """

    key: str
    signature: str
    base: Function | None
    out: Function | None = None
    base_is_fallback: bool = False

    @property
    def has_out_branch(self) -> bool:
        return self.out is not None and not self.base_is_fallback


def group_overloads(
    functions: list[Function], surface: Surface, strict: bool = False
) -> tuple[OverloadGroup, ...]:
    """Merge one base name's functions into ordered overload groups.

    The first plain function for a key is its base; the first out function
    is its out member and fills base until a plain function shows up. Groups
    without an out member come first. The position in the returned tuple is
    the parser's overload index.

    Raises:
        GenerationError: MISSING_BASE under strict when an out variant has no
            plain counterpart.
    """
    groups: dict[str, OverloadGroup] = {}
    for function in sorted(functions, key=lambda f: f.name):
        key = generate_signature(function, surface, skip_out=True)
        group = groups.get(key) or OverloadGroup(key=key, signature=key, base=None)

        if function.is_out:
            if group.out is not None:
                warn(f"Duplicate out overload: {function.name} (keeping {group.out.name})")
                continue
            group = replace(
                group, out=function, signature=generate_signature(function, surface)
            )
            if group.base is None:
                group = replace(group, base=function, base_is_fallback=True)
        else:
            if group.base is not None and not group.base_is_fallback:
                warn(f"Duplicate overload: {function.name} (keeping {group.base.name})")
                continue
            group = replace(group, base=function, base_is_fallback=False)

        groups[key] = group

    ordered = tuple(sorted(groups.values(), key=lambda g: g.out is not None))

    for group in ordered:
        if group.base_is_fallback:
            message = f"Missing base: {group.out.name} has no plain overload"
            if strict:
                raise GenerationError("MISSING_BASE", message, group.out.name)
            warn(message)

    return ordered


# ===--- Emission plan ---=== #


@dataclass(frozen=True)
class PlannedParam:
    param: Param
    position: int | None


@dataclass(frozen=True)
class TensorOptionsPlan:
    position: int
    setters: tuple[str, ...]


@dataclass(frozen=True)
class DispatchPlan:
    """Everything needed to render one native call site.

    Attributes:
        function: Function being dispatched.
        cpp_name: Native name, with `_out` for out variants.
        lambda_params: Typed parameters of the dispatch lambda.
        return_type: Native return type; "void" for no returns.
        call: Native call expression inside the lambda.
        arg_exprs: Arguments passed to the lambda, parallel to lambda_params.
        tensor_options: Aggregated TensorOptions builder, if any.
        out_list: (size, parser position) of a collapsed tensor-list output.
    """

    function: Function
    cpp_name: str
    lambda_params: tuple[str, ...]
    return_type: str
    call: str
    arg_exprs: tuple[str, ...]
    tensor_options: TensorOptionsPlan | None = None
    out_list: tuple[int, int] | None = None

    @property
    def returns_void(self) -> bool:
        return self.return_type == "void"

    @property
    def reads_parsed_args(self) -> bool:
        return (
            self.tensor_options is not None
            or self.out_list is not None
            or any(expr.startswith("_r.") for expr in self.arg_exprs)
        )


@dataclass(frozen=True)
class OverloadPlan:
    signature: str
    base: DispatchPlan
    out: DispatchPlan | None = None
    out_position: int | None = None


@dataclass(frozen=True)
class MethodPlan:
    name: str
    surface: Surface
    function_name: str
    overloads: tuple[OverloadPlan, ...]
    max_args: int

    @property
    def signatures(self) -> tuple[str, ...]:
        return tuple(overload.signature for overload in self.overloads)

    @property
    def uses_parsed_result(self) -> bool:
        if len(self.overloads) > 1:
            return True
        return any(
            overload.out is not None or overload.base.reads_parsed_args
            for overload in self.overloads
        )


def assign_positions(params: tuple[Param, ...], remove_self: bool) -> list[PlannedParam]:
    planned: list[PlannedParam] = []
    position = 0
    for param in params:
        if remove_self and param.name == "self":
            planned.append(PlannedParam(param, None))
            continue
        planned.append(PlannedParam(param, position))
        position += 1
    return planned


def split_tensor_options(
    planned: list[PlannedParam],
) -> tuple[list[PlannedParam], list[PlannedParam]]:
    options = [
        p
        for p in planned
        if p.param.name in TENSOR_OPTION_NAMES and p.position is not None
    ]
    if len(options) < TENSOR_OPTIONS_MIN_PARAMS:
        return planned, []
    return [p for p in planned if p not in options], options


def tensor_options_setter(function: Function, planned: PlannedParam) -> str:
    position = planned.position
    name = planned.param.name
    if name == "dtype":
        accessor = "scalartypeOptional" if function.base_name == "arange" else "scalartype"
        return f"dtype(_r.{accessor}({position}))"
    if name == "device":
        return f"device(_r.device({position}))"
    if name == "layout":
        return f"layout(_r.layoutOptional({position}))"
    if name == "requires_grad":
        return f"requires_grad(_r.toBool({position}))"
    return f"pinned_memory(_r.toBool({position}))"


def plan_tensor_options(
    function: Function, options: list[PlannedParam]
) -> TensorOptionsPlan:
    ordered = sorted(options, key=lambda p: TENSOR_OPTION_NAMES.index(p.param.name))
    return TensorOptionsPlan(
        position=min(p.position for p in options),
        setters=tuple(tensor_options_setter(function, p) for p in ordered),
    )


def out_argument_position(function: Function, surface: Surface) -> int | None:
    if function.out_index is None:
        return None
    planned = assign_positions(function.params, surface.remove_self)
    return planned[function.out_index].position


def plan_dispatch(function: Function, surface: Surface) -> DispatchPlan:
    """Decide the call site for one function on one surface.

    Positions are assigned after the method receiver is removed. Four or
    more tensor option parameters collapse into one TensorOptions value
    inserted where the earliest of them stood. Out variants call
    `<name>_out` with the out arguments first.
    """
    cpp_name = f"{function.base_name}_out" if function.is_out else function.base_name
    planned, options = split_tensor_options(
        assign_positions(function.params, surface.remove_self)
    )
    tensor_options = plan_tensor_options(function, options) if options else None

    out_names = [param.name for param in function.out_params]
    collapsed = set(out_names) if function.collapses_out else set()

    lambda_params: list[str] = []
    arg_exprs: list[str] = []
    call_args: list[str] = []
    options_inserted = False
    for p in planned:
        if (
            tensor_options is not None
            and not options_inserted
            and p.position is not None
            and p.position > tensor_options.position
        ):
            lambda_params.append("const TensorOptions & options")
            arg_exprs.append("options")
            call_args.append("options")
            options_inserted = True

        param = p.param
        lambda_params.append(f"{native_param_type(param, function)} {param.name}")
        if p.position is None:
            arg_exprs.append("self")
        elif param.name in collapsed:
            arg_exprs.append(f"out[{out_names.index(param.name)}]")
        else:
            arg_exprs.append(f"_r.{parser_accessor(param, function)}({p.position})")
        if p.position is not None:
            call_args.append(param.name)

    if tensor_options is not None and not options_inserted:
        lambda_params.append("const TensorOptions & options")
        arg_exprs.append("options")
        call_args.append("options")

    if out_names:
        call_args = out_names + [name for name in call_args if name not in out_names]

    if surface.remove_self:
        prefix = "self."
    elif tensor_options is not None:
        # torch:: honors requires_grad, at:: ignores it
        prefix = "torch::"
    else:
        prefix = "at::"

    out_list = None
    if function.collapses_out:
        out_list = (len(function.retvals), out_argument_position(function, surface))

    return DispatchPlan(
        function=function,
        cpp_name=cpp_name,
        lambda_params=tuple(lambda_params),
        return_type=native_return_type(function),
        call=f"{prefix}{cpp_name}({', '.join(call_args)})",
        arg_exprs=tuple(arg_exprs),
        tensor_options=tensor_options,
        out_list=out_list,
    )


def plan_overload(group: OverloadGroup, surface: Surface) -> OverloadPlan:
    base = plan_dispatch(group.base, surface)
    if not group.has_out_branch:
        return OverloadPlan(signature=group.signature, base=base)
    return OverloadPlan(
        signature=group.signature,
        base=base,
        out=plan_dispatch(group.out, surface),
        out_position=out_argument_position(group.out, surface),
    )


def plan_method(
    name: str, functions: list[Function], surface: Surface, strict: bool = False
) -> MethodPlan:
    groups = group_overloads(functions, surface, strict)
    arg_counts = [
        signature_arg_count(group.out or group.base, surface) for group in groups
    ]
    return MethodPlan(
        name=name,
        surface=surface,
        function_name=generated_function_name(name, surface),
        overloads=tuple(plan_overload(group, surface) for group in groups),
        max_args=max([1, *arg_counts]),
    )


# ===--- Dispatch rendering ---=== #

_INDENT = "  "


def indent_lines(lines: list[str], depth: int = 1) -> list[str]:
    prefix = _INDENT * depth
    return [f"{prefix}{line}" if line else line for line in lines]


def c_string_literal(text: str) -> str:
    escaped = text.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def render_dispatch(plan: DispatchPlan) -> list[str]:
    lines = [f"// {plan.function.func}"]

    if plan.tensor_options is not None:
        lines.append("const auto options = TensorOptions()")
        lines.extend(f"    .{setter}" for setter in plan.tensor_options.setters)
        lines[-1] += ";"

    if plan.out_list is not None:
        size, position = plan.out_list
        lines.append(f"auto out = _r.tensorlist_n<{size}>({position});")

    lines.append(
        f"auto dispatch_{plan.cpp_name} = []({', '.join(plan.lambda_params)})"
        f" -> {plan.return_type} {{"
    )
    if plan.returns_void:
        lines.append(f"  {plan.call};")
    else:
        lines.append(f"  return {plan.call};")
    lines.append("};")

    invocation = f"dispatch_{plan.cpp_name}({', '.join(plan.arg_exprs)})"
    if plan.returns_void:
        lines.append(f"{invocation};")
        lines.append("RETURN_NIL")
    else:
        lines.append(f"return wrap({invocation});")
    return lines


def render_overload(plan: OverloadPlan) -> list[str]:
    if plan.out is None:
        return render_dispatch(plan.base)
    return [
        f"if (_r.isNone({plan.out_position})) {{",
        *indent_lines(render_dispatch(plan.base)),
        "} else {",
        *indent_lines(render_dispatch(plan.out)),
        "}",
    ]


def render_dispatches(plan: MethodPlan) -> list[str]:
    if len(plan.overloads) == 1:
        return render_overload(plan.overloads[0])

    lines = ["switch (_r.idx) {"]
    for index, overload in enumerate(plan.overloads):
        lines.append(f"  case {index}: {{")
        lines.extend(indent_lines(render_overload(overload), 2))
        lines.append("  }")
    lines.append("}")
    lines.append("RETURN_NIL")
    return lines


def render_method_def(plan: MethodPlan) -> list[str]:
    """Render the C++ entry point for one Ruby method.

    Output shape:
        // add
        static VALUE torch_add(int argc, VALUE* argv, VALUE self_)
        {
          HANDLE_TH_ERRORS
          static RubyArgParser parser({
            "add(Tensor input, Tensor other, *, Scalar alpha=1, Tensor out=None)"
          });
          ParsedArgs<4> parsed_args;
          auto _r = parser.parse(self_, argc, argv, parsed_args);
          <dispatch body>
          END_HANDLE_TH_ERRORS
        }
    """
    lines = [
        f"// {plan.name}",
        f"static VALUE {plan.function_name}(int argc, VALUE* argv, VALUE self_)",
        "{",
        "  HANDLE_TH_ERRORS",
    ]
    if plan.surface.remove_self:
        lines.append("  Tensor& self = Rice::detail::From_Ruby<Tensor&>().convert(self_);")

    lines.append("  static RubyArgParser parser({")
    quoted = [c_string_literal(signature) for signature in plan.signatures]
    for index, literal in enumerate(quoted):
        separator = "," if index < len(quoted) - 1 else ""
        lines.append(f"    {literal}{separator}")
    lines.append("  });")
    lines.append(f"  ParsedArgs<{plan.max_args}> parsed_args;")

    assign = "auto _r = " if plan.uses_parsed_result else ""
    lines.append(f"  {assign}parser.parse(self_, argc, argv, parsed_args);")
    lines.extend(indent_lines(render_dispatches(plan)))
    lines.append("  END_HANDLE_TH_ERRORS")
    lines.append("}")
    return lines


# ===--- Surface emitter ---=== #


def ruby_method_name(name: str, surface: Surface) -> str:
    if name.endswith("_"):
        ruby_name = f"{name[:-1]}!"
    elif name.startswith("is_"):
        ruby_name = f"{name[3:]}?"
    else:
        ruby_name = name

    if ruby_name in RUBY_RESERVED_NAMES:
        ruby_name = f"_{ruby_name}"
    if surface.name == LINALG_SURFACE.name:
        ruby_name = ruby_name.removeprefix("linalg_")
    return ruby_name


def generated_function_name(name: str, surface: Surface) -> str:
    if surface.name == LINALG_SURFACE.name and name.startswith("linalg_"):
        return name
    return f"{surface.name}_{name}"


def generate_attach_def(name: str, surface: Surface) -> str:
    ruby_name = ruby_method_name(name, surface)
    function_name = generated_function_name(name, surface)
    return f'rb_{surface.def_method}(m, "{ruby_name}", {function_name}, -1);'


def registration_function_name(surface: Surface) -> str:
    return f"add_{surface.name}_functions"


@dataclass(frozen=True)
class UnitSpec:
    """One generated C++ file, without its generated-by header.

    Attributes:
        filename: Output filename, e.g. "torch_functions.cpp".
        content_lines: Source lines without trailing newlines.
    """

    filename: str
    content_lines: tuple[str, ...]


@dataclass(frozen=True)
class SurfaceUnits:
    surface: Surface
    methods: tuple[MethodPlan, ...]
    header: UnitSpec
    body: UnitSpec


BODY_INCLUDES: tuple[str, ...] = (
    "#include <torch/torch.h>",
    "#include <rice/rice.hpp>",
    "",
    '#include "ruby_arg_parser.h"',
    '#include "templates.h"',
    '#include "wrap_outputs.h"',
)


def build_surface_units(
    surface: Surface, functions: list[Function], strict: bool = False
) -> SurfaceUnits:
    """Plan and render the declaration and definition units for one surface.

    Base names are emitted alphabetically. Rendering is pure; nothing is
    written here.
    """
    methods = tuple(
        plan_method(name, grouped, surface, strict)
        for name, grouped in group_by_base_name(functions).items()
    )
    registration = registration_function_name(surface)

    header_lines = (
        "#pragma once",
        "",
        f"void {registration}(Rice::Module& m);",
    )

    body_lines: list[str] = [*BODY_INCLUDES, ""]
    for method in methods:
        body_lines.extend(render_method_def(method))
        body_lines.append("")
    body_lines.append(f"void {registration}(Rice::Module& m) {{")
    body_lines.extend(
        f"  {generate_attach_def(method.name, surface)}" for method in methods
    )
    body_lines.append("}")

    return SurfaceUnits(
        surface=surface,
        methods=methods,
        header=UnitSpec(f"{surface.name}_functions.h", header_lines),
        body=UnitSpec(f"{surface.name}_functions.cpp", tuple(body_lines)),
    )


def prepare_surfaces(
    functions: list[Function], surfaces: tuple[str, ...], strict: bool = False
) -> tuple[SurfaceUnits, ...]:
    """Filter, type-check, partition and render requested surfaces in memory.

    Types are checked for every kept function, so --surface only limits
    which units are rendered.
    """
    kept = skip_functions(functions)
    check_types(kept)
    grouped = group_functions(kept)
    return tuple(
        build_surface_units(SURFACE_BY_NAME[name], grouped[name], strict)
        for name in surfaces
    )


# ===--- Writer ---=== #


@dataclass(frozen=True)
class WriteConfig:
    """Shared generation metadata embedded in every file preamble.

    Attributes:
        source_label: Name of the descriptor table the run read, e.g.
            "native_functions.yaml".
    """

    source_label: str


@dataclass(frozen=True)
class FileWriteResult:
    """Result of writing a single generated file.

    Attributes:
        filename: Filename written, e.g. "torch_functions.cpp".
        path: Absolute path of the written file.
        line_count: Number of newline characters in the written content.
        byte_count: Number of bytes written (UTF-8 encoded).
    """

    filename: str
    path: Path
    line_count: int
    byte_count: int


@dataclass(frozen=True)
class PackageWriteResult:
    output_dir: Path
    files: tuple[FileWriteResult, ...]

    @property
    def total_lines(self) -> int:
        """Sum of line_count across all written files."""
        return sum(f.line_count for f in self.files)


GENERATED_EXTENSIONS: tuple[str, ...] = (".h", ".cpp")


def format_file_header(config: WriteConfig) -> list[str]:
    """Return the comment lines at the top of every generated file.

    Raises:
        ValueError: If config.source_label is empty.
    """
    if not config.source_label:
        raise ValueError("source_label must not be empty")
    return [
        f"// generated by {GENERATOR_NAME} from {config.source_label}",
        "// do not edit by hand",
    ]


def assemble_unit_source(config: WriteConfig, spec: UnitSpec) -> str:
    """Assemble header, blank line and content into the file's text.

    Raises:
        ValueError: If spec.filename is not a .h or .cpp filename.
    """
    if not spec.filename or not spec.filename.endswith(GENERATED_EXTENSIONS):
        raise ValueError(
            f"spec.filename must end with '.h' or '.cpp', got {spec.filename!r}"
        )

    parts: list[str] = list(format_file_header(config))
    if spec.content_lines:
        parts.append("")
        parts.extend(spec.content_lines)
    return "\n".join(parts) + "\n"


def write_unit(output_dir: Path, config: WriteConfig, spec: UnitSpec) -> FileWriteResult:
    """Write one generated unit, creating output_dir if needed.

    Raises:
        ValueError: Propagated from assemble_unit_source.
        OSError: Propagated if the filesystem write fails.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    content = assemble_unit_source(config, spec)
    file_path = output_dir / spec.filename
    file_path.write_text(content, encoding="utf-8")
    resolved = file_path.resolve()
    return FileWriteResult(
        filename=spec.filename,
        path=resolved,
        line_count=content.count("\n"),
        byte_count=len(resolved.read_bytes()),
    )


def write_package(
    output_dir: Path, config: WriteConfig, specs: tuple[UnitSpec, ...]
) -> PackageWriteResult:
    """Write every unit in order.

    All units are assembled before the first write, so an invalid spec
    leaves output_dir untouched.
    """
    for spec in specs:
        assemble_unit_source(config, spec)
    files = tuple(write_unit(output_dir, config, spec) for spec in specs)
    return PackageWriteResult(output_dir=Path(output_dir), files=files)


# ===--- Summary report ---=== #


@dataclass(frozen=True)
class SurfaceCount:
    """Per-surface totals for the console report.

    Attributes:
        surface: Surface name.
        names: Ruby methods registered (one per base name).
        overloads: Overload groups across all names.
        out_pairs: Groups dispatching on whether `out` was passed.
    """

    surface: str
    names: int
    overloads: int
    out_pairs: int


@dataclass(frozen=True)
class GenerationSummary:
    source_label: str
    output_dir: str
    loaded: int
    skipped: int
    counts: tuple[SurfaceCount, ...]
    files: tuple[FileWriteResult, ...]


def count_surface(units: SurfaceUnits) -> SurfaceCount:
    overloads = [o for method in units.methods for o in method.overloads]
    return SurfaceCount(
        surface=units.surface.name,
        names=len(units.methods),
        overloads=len(overloads),
        out_pairs=sum(1 for o in overloads if o.out is not None),
    )


def build_generation_summary(
    write_config: WriteConfig,
    loaded: int,
    skipped: int,
    surface_units: tuple[SurfaceUnits, ...],
    write_result: PackageWriteResult,
) -> GenerationSummary:
    return GenerationSummary(
        source_label=write_config.source_label,
        output_dir=str(write_result.output_dir),
        loaded=loaded,
        skipped=skipped,
        counts=tuple(count_surface(units) for units in surface_units),
        files=write_result.files,
    )


def format_generation_summary(summary: GenerationSummary) -> str:
    """Render the post-generation report with exactly one trailing newline."""
    lines: list[str] = []
    lines.append("LibTorch bindings generated:")
    lines.append("")
    lines.append(f"  Source:     {summary.source_label}")
    lines.append(f"  Output:     {summary.output_dir}")
    lines.append(
        f"  Functions:  {summary.loaded:,} loaded, {summary.skipped:,} skipped"
    )
    lines.append("")
    lines.append("  Surfaces:")
    for count in summary.counts:
        row = f"    {count.surface + ':':<8}{count.names:>6} names {count.overloads:>6} overloads"
        if count.out_pairs > 0:
            row += f"  ({count.out_pairs} with out=)"
        lines.append(row)

    lines.append("")
    lines.append("  Files written:")
    for file_result in summary.files:
        lines.append(f"    {file_result.filename:<24} {file_result.line_count:>7,} lines")

    total_lines = sum(f.line_count for f in summary.files)
    lines.append("")
    lines.append(f"  Total: {total_lines:,} lines across {len(summary.files)} files")
    lines.append("")
    return "\n".join(lines)


def print_generation_summary(summary: GenerationSummary) -> None:
    print(format_generation_summary(summary), end="")


# ===--- Pipeline ---=== #


def run_generate(config: GenerateConfig) -> PackageWriteResult:
    """Execute the complete generation pipeline for a GenerateConfig.

    load -> skip -> partition -> group/plan/render per surface -> write ->
    report. Every surface is rendered before the first file is written.

    Raises:
        GenerationError: Any descriptor-table defect.
        OSError: YAML file not readable or filesystem write failure.
        yaml.YAMLError: Malformed native_functions.yaml.
    """
    print(f"Loading: {config.native_functions}")
    functions = load_functions(config.native_functions)
    kept = skip_functions(functions)
    skipped = len(functions) - len(kept)
    print(f"  Loaded: {len(functions)} functions ({skipped} skipped)")

    unemitted = sum(1 for f in kept if f.python_module in UNEMITTED_MODULES)
    if unemitted:
        print(
            f"  Not emitted: {unemitted} functions from "
            f"{', '.join(sorted(UNEMITTED_MODULES))}"
        )

    surface_units = prepare_surfaces(functions, config.surfaces, config.strict)
    for units in surface_units:
        count = count_surface(units)
        print(f"  {count.surface}: {count.names} names, {count.overloads} overloads")

    write_config = WriteConfig(source_label=config.native_functions.name)
    specs = tuple(spec for units in surface_units for spec in (units.header, units.body))
    result = write_package(config.output_dir, write_config, specs)
    print(f"  Written: {len(result.files)} files to {result.output_dir}")

    summary = build_generation_summary(
        write_config, len(functions), skipped, surface_units, result
    )
    print_generation_summary(summary)
    return result


# ===--- Discovery ---=== #


@dataclass(frozen=True)
class SurfaceSummary:
    surface: str
    function_count: int
    name_count: int
    overload_count: int


@dataclass(frozen=True)
class OverloadDetail:
    index: int
    signature: str
    base: str
    out: str | None
    base_is_fallback: bool


@dataclass(frozen=True)
class SurfaceDetail:
    surface: str
    function_name: str
    ruby_name: str
    overloads: tuple[OverloadDetail, ...]


def gather_surface_summaries(functions: list[Function]) -> list[SurfaceSummary]:
    grouped = group_functions(skip_functions(functions))
    summaries = []
    for surface in SURFACES:
        surface_functions = grouped[surface.name]
        by_name = group_by_base_name(surface_functions)
        overload_count = sum(
            len(group_overloads(named, surface)) for named in by_name.values()
        )
        summaries.append(
            SurfaceSummary(
                surface=surface.name,
                function_count=len(surface_functions),
                name_count=len(by_name),
                overload_count=overload_count,
            )
        )
    return summaries


def format_surfaces_table(summaries: list[SurfaceSummary], unemitted: int) -> str:
    lines = [
        f"{'Surface':<10}{'Functions':>10}{'Names':>8}{'Overloads':>11}",
    ]
    for summary in summaries:
        lines.append(
            f"{summary.surface:<10}{summary.function_count:>10}"
            f"{summary.name_count:>8}{summary.overload_count:>11}"
        )
    lines.append("")
    lines.append(
        f"{unemitted} functions in {', '.join(sorted(UNEMITTED_MODULES))} are not emitted"
    )
    return "\n".join(lines) + "\n"


def gather_function_detail(
    functions: list[Function], name: str
) -> tuple[SurfaceDetail, ...]:
    """Describe how one base name is bound on every surface it lands on.

    Returns an empty tuple when the name is unknown or skipped.
    """
    grouped = group_functions(skip_functions(functions))
    details = []
    for surface in SURFACES:
        named = [f for f in grouped[surface.name] if f.base_name == name]
        if not named:
            continue
        groups = group_overloads(named, surface)
        details.append(
            SurfaceDetail(
                surface=surface.name,
                function_name=generated_function_name(name, surface),
                ruby_name=ruby_method_name(name, surface),
                overloads=tuple(
                    OverloadDetail(
                        index=index,
                        signature=group.signature,
                        base=group.base.name,
                        out=group.out.name if group.out is not None else None,
                        base_is_fallback=group.base_is_fallback,
                    )
                    for index, group in enumerate(groups)
                ),
            )
        )
    return tuple(details)


def format_function_detail(name: str, details: tuple[SurfaceDetail, ...]) -> str:
    lines = [name, ""]
    for detail in details:
        lines.append(
            f"  {detail.surface}: {detail.ruby_name} -> {detail.function_name}"
        )
        for overload in detail.overloads:
            lines.append(f"    [{overload.index}] {overload.signature}")
            base_label = "out only" if overload.base_is_fallback else overload.base
            members = f"base: {base_label}"
            if overload.out is not None:
                members += f", out: {overload.out}"
            lines.append(f"        {members}")
        lines.append("")
    return "\n".join(lines)


def run_discovery(config: DiscoveryConfig) -> None:
    """Execute the discovery command specified in config.

    "list-surfaces" prints per-surface counts. "info" prints the overload
    groups of one base name, or an error on stderr and exit code 1 when the
    name is not bound anywhere.
    """
    functions = load_functions(config.native_functions)

    if config.command == "list-surfaces":
        kept = skip_functions(functions)
        unemitted = sum(1 for f in kept if f.python_module in UNEMITTED_MODULES)
        print(format_surfaces_table(gather_surface_summaries(functions), unemitted), end="")

    elif config.command == "info":
        assert config.function_name is not None
        details = gather_function_detail(functions, config.function_name)
        if not details:
            print(
                f"Error: function '{config.function_name}' is not bound on any surface",
                file=sys.stderr,
            )
            raise SystemExit(1)
        print(format_function_detail(config.function_name, details), end="")


# ===--- Main generation ---=== #


def main(argv: list[str] | None = None):
    try:
        config = build_config(argv)
    except ConfigError as err:
        print(f"Config error [{err.code}]: {err.message}", file=sys.stderr)
        if err.suggestion:
            print(f"Hint: {err.suggestion}", file=sys.stderr)
        raise SystemExit(1) from err

    try:
        if isinstance(config, DiscoveryConfig):
            run_discovery(config)
        else:
            run_generate(config)
    except GenerationError as err:
        print(f"Generation error [{err.code}]: {err.message}", file=sys.stderr)
        raise SystemExit(1) from err
    except (OSError, yaml.YAMLError) as err:
        print(f"Error: {err}", file=sys.stderr)
        raise SystemExit(1) from err


if __name__ == "__main__":
    main()
