from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

import gen


def _assert_generation_code(
    exc_info: pytest.ExceptionInfo[Exception], code: str
) -> None:
    err = exc_info.value
    assert getattr(err, "code") == code
    assert getattr(err, "code") in gen.VALID_GENERATION_ERROR_CODES


def _param(function: gen.Function, name: str) -> gen.Param:
    matches = [p for p in function.params if p.name == name]
    assert len(matches) == 1, f"expected one param named {name}"
    return matches[0]


def test_parse_function_splits_name_params_and_returns(
    make_function: Callable[..., gen.Function],
) -> None:
    function = make_function(
        "add.Tensor(Tensor self, Tensor other, *, Scalar alpha=1) -> Tensor",
        variants="function, method",
    )

    assert function.name == "add.Tensor"
    assert function.base_name == "add"
    assert [p.name for p in function.params] == ["self", "other", "alpha"]
    assert [p.keyword_only for p in function.params] == [False, False, True]
    assert _param(function, "alpha").default == "1"
    assert function.retvals == (gen.Retval(name=None, type="Tensor"),)
    assert function.variants == frozenset({"function", "method"})
    assert function.python_module is None
    assert function.is_out is False


def test_parse_function_variants_default_to_function(
    make_function: Callable[..., gen.Function],
) -> None:
    function = make_function("abs(Tensor self) -> Tensor")

    assert function.variants == frozenset({"function"})


def test_parse_function_keeps_bracketed_defaults_intact(
    make_function: Callable[..., gen.Function],
) -> None:
    function = make_function(
        "flip_all(Tensor self, int[] dims=[0, 1], int[2] pad=[1,1]) -> Tensor"
    )

    dims = _param(function, "dims")
    pad = _param(function, "pad")
    assert dims.default == "[0, 1]"
    assert dims.list_size is None
    assert pad.type == "int[2]"
    assert pad.list_size == "2"


def test_parse_function_lifts_alias_modifiers(
    make_function: Callable[..., gen.Function],
) -> None:
    function = make_function(
        "abs.out(Tensor self, *, Tensor(a!) out) -> Tensor(a!)"
    )

    out = _param(function, "out")
    assert out.type == "Tensor"
    assert out.modifier == "a!"
    assert out.is_write is True
    assert function.retvals == (gen.Retval(name=None, type="Tensor", modifier="a!"),)
    assert function.out_index == 1
    assert function.is_out is True


def test_parse_function_lifts_modifier_before_list_suffix(
    make_function: Callable[..., gen.Function],
) -> None:
    function = make_function("unbind.int(Tensor(a -> *) self, int dim=0) -> Tensor(a)[]")

    self_param = _param(function, "self")
    assert self_param.type == "Tensor"
    assert self_param.modifier == "a -> *"
    assert function.retvals[0].type == "Tensor[]"
    assert function.retvals[0].modifier == "a"


def test_parse_function_marks_optional_types(
    make_function: Callable[..., gen.Function],
) -> None:
    function = make_function(
        "layer_norm(Tensor input, int[] normalized_shape, Tensor? weight=None, float eps=1e-05) -> Tensor"
    )

    weight = _param(function, "weight")
    assert weight.type == "Tensor"
    assert weight.optional is True
    assert weight.default == "None"
    assert _param(function, "eps").optional is False


def test_parse_function_tensor_option_names_drop_optional_and_add_requires_grad(
    make_function: Callable[..., gen.Function],
) -> None:
    function = make_function(
        "ones(int[] size, *, ScalarType? dtype=None, Layout? layout=None, "
        "Device? device=None, bool? pin_memory=None) -> Tensor"
    )

    for name in ("dtype", "layout", "device", "pin_memory"):
        param = _param(function, name)
        assert param.optional is False
        assert "?" not in param.type

    requires_grad = function.params[-1]
    assert requires_grad == gen.Param(
        name="requires_grad", type="bool", default="False", keyword_only=True
    )


def test_parse_function_no_requires_grad_without_all_option_params(
    make_function: Callable[..., gen.Function],
) -> None:
    function = make_function(
        "zeros_like(Tensor self, *, ScalarType? dtype=None, Layout? layout=None) -> Tensor"
    )

    assert "requires_grad" not in [p.name for p in function.params]


@pytest.mark.parametrize("name", ["randperm", "randperm.generator", "tril_indices"])
def test_parse_function_int64_dtype_default(
    make_function: Callable[..., gen.Function], name: str
) -> None:
    function = make_function(f"{name}(int n, *, ScalarType? dtype=None) -> Tensor")

    assert _param(function, "dtype").default == "torch.int64"


def test_parse_function_cpp_no_default_args_clears_default(
    make_function: Callable[..., gen.Function],
) -> None:
    function = make_function(
        "diff(Tensor self, int n=1, int dim=-1) -> Tensor", cpp_no_default_args=["n"]
    )

    assert _param(function, "n").default is None
    assert _param(function, "dim").default == "-1"


def test_parse_function_parses_tuple_and_empty_returns(
    make_function: Callable[..., gen.Function],
) -> None:
    pair = make_function("sort(Tensor self, int dim=-1) -> (Tensor values, Tensor indices)")
    nothing = make_function("set_flag(Tensor self, bool flag) -> ()")

    assert pair.retvals == (
        gen.Retval(name="values", type="Tensor"),
        gen.Retval(name="indices", type="Tensor"),
    )
    assert nothing.retvals == ()


def test_in_place_mutator_is_not_out_variant(
    make_function: Callable[..., gen.Function],
) -> None:
    function = make_function(
        "add_.Tensor(Tensor(a!) self, Tensor other, *, Scalar alpha=1) -> Tensor(a!)",
        variants="method",
    )

    assert function.out_index is None
    assert function.is_out is False


def test_multi_output_out_variant_collapses(
    make_function: Callable[..., gen.Function],
) -> None:
    function = make_function(
        "sort.values(Tensor self, int dim=-1, *, Tensor(a!) values, Tensor(b!) indices)"
        " -> (Tensor(a!) values, Tensor(b!) indices)"
    )

    assert function.out_index == 2
    assert [p.name for p in function.out_params] == ["values", "indices"]
    assert function.collapses_out is True


@pytest.mark.parametrize(
    ("record", "field"),
    [
        ({"variants": "function"}, "func"),
        ({"func": ""}, "func"),
        ({"func": "not a signature"}, "func"),
        ({"func": "abs(Tensor self) -> Tensor", "python_module": 3}, "python_module"),
        ({"func": "abs(Tensor self) -> Tensor", "variants": "function, static"}, "variants"),
        ({"func": "abs(Tensor self) -> Tensor", "variants": {"a": 1}}, "variants"),
        ({"func": "abs(Tensor) -> Tensor"}, "func"),
    ],
)
def test_parse_function_rejects_malformed_records(
    record: dict[str, object], field: str
) -> None:
    with pytest.raises(gen.GenerationError) as exc_info:
        gen.parse_function(record, 7)

    _assert_generation_code(exc_info, "INVALID_DESCRIPTOR")
    assert "Record 7" in exc_info.value.message
    assert f"'{field}'" in exc_info.value.message


def test_parse_function_rejects_non_mapping_record() -> None:
    with pytest.raises(gen.GenerationError) as exc_info:
        gen.parse_function(["func"], 3)

    _assert_generation_code(exc_info, "INVALID_DESCRIPTOR")
    assert "Record 3" in exc_info.value.message


def test_parse_function_does_not_validate_type_names(
    make_function: Callable[..., gen.Function],
) -> None:
    function = make_function("rename(Tensor self, Dimname[]? names) -> Tensor")

    assert _param(function, "names").type == "Dimname[]"


def test_parse_functions_rejects_duplicate_names() -> None:
    records = [
        {"func": "abs(Tensor self) -> Tensor"},
        {"func": "abs(Tensor self) -> Tensor"},
    ]

    with pytest.raises(gen.GenerationError) as exc_info:
        gen.parse_functions(records)

    _assert_generation_code(exc_info, "DUPLICATE_FUNCTION")
    assert exc_info.value.function == "abs"
    assert "record 0" in exc_info.value.message


def test_parse_functions_rejects_non_list_document() -> None:
    with pytest.raises(gen.GenerationError) as exc_info:
        gen.parse_functions({"func": "abs(Tensor self) -> Tensor"})

    _assert_generation_code(exc_info, "INVALID_DESCRIPTOR")


def test_load_functions_reads_yaml_sorted_by_name(
    write_native_functions: Callable[..., Path],
) -> None:
    path = write_native_functions(
        [
            {"func": "sub.Tensor(Tensor self, Tensor other) -> Tensor"},
            {"func": "abs(Tensor self) -> Tensor", "variants": "function, method"},
            {"func": "abs.out(Tensor self, *, Tensor(a!) out) -> Tensor(a!)"},
        ]
    )

    functions = gen.load_functions(path)

    assert [f.name for f in functions] == ["abs", "abs.out", "sub.Tensor"]


def test_generation_error_rejects_unknown_code() -> None:
    with pytest.raises(ValueError):
        gen.GenerationError("NOT_A_CODE", "message")


def test_parse_function_return_alias_set_with_spaces(
    make_function: Callable[..., gen.Function],
) -> None:
    function = make_function("split.Tensor(Tensor(a -> *) self, int dim=0) -> Tensor(a -> *)[]")

    assert function.retvals == (gen.Retval(name=None, type="Tensor[]", modifier="a -> *"),)
    assert gen.native_return_type(function) == "std::vector<Tensor>"


def test_parse_function_named_return_keeps_modifier(
    make_function: Callable[..., gen.Function],
) -> None:
    function = make_function(
        "kthvalue.values(Tensor self, int k, *, Tensor(a!) values, Tensor(b!) indices)"
        " -> (Tensor(a!) values, Tensor(b!) indices)"
    )

    assert function.retvals == (
        gen.Retval(name="values", type="Tensor", modifier="a!"),
        gen.Retval(name="indices", type="Tensor", modifier="b!"),
    )


@pytest.mark.parametrize("variants", [[], "", " , "])
def test_parse_function_rejects_empty_variants(variants: object) -> None:
    record = {"func": "abs(Tensor self) -> Tensor", "variants": variants}

    with pytest.raises(gen.GenerationError) as exc_info:
        gen.parse_function(record, 4)

    _assert_generation_code(exc_info, "INVALID_DESCRIPTOR")
    assert "Record 4" in exc_info.value.message
    assert "'variants'" in exc_info.value.message
