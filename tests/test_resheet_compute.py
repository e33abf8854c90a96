import asyncio

import pytest

from resheet.resheet_compute import (
    CompiledUnit, cleanup_env, compile_expr, compile_expr_safe, compile_script,
    compile_script_safe, compute_expr, compute_expr_unsafe, compute_script,
    free_vars_expr, free_vars_script, is_valid_name, source_context,
)
from resheet.resheet_datatypes import Environment, Pending


def test_compute_expr_reads_environment():
    assert compute_expr("a * 3", {"a": 2}) == 6


def test_compute_script_value_is_last_expression():
    assert compute_script("b = a + 1\nb * 10", {"a": 1}) == 20


def test_empty_source_evaluates_to_none():
    assert compute_script("", {}) is None
    assert compute_script("   \n", {"a": 1}) is None
    assert compile_script("").free_variables == frozenset()


def test_unbound_name_is_an_error_value():
    result = compute_expr("a * 3", {"x": 1})
    assert isinstance(result, NameError)


def test_runtime_error_is_returned_not_raised():
    result = compute_expr("1 / a", {"a": 0})
    assert isinstance(result, ZeroDivisionError)


def test_compute_expr_unsafe_raises():
    with pytest.raises(ZeroDivisionError):
        compute_expr_unsafe("1 / a", {"a": 0})


def test_syntax_error_carries_code_frame():
    with pytest.raises(SyntaxError) as exc_info:
        compile_script("x = (1 +\n")
    assert hasattr(exc_info.value, "frame")

    unit = compile_script_safe("a +* 2", ["a"])
    assert isinstance(unit.error, SyntaxError)
    result = unit.run({"a": 1})
    assert result is unit.error
    assert "^" in result.frame


def test_expression_mode_rejects_statements():
    unit = compile_expr_safe("x = 1")
    assert isinstance(unit.error, SyntaxError)


def test_free_variables_and_dependencies():
    unit = compile_script("c = a + b\nc", ["a", "z"])
    assert unit.free_variables == {"a", "b"}
    assert unit.dependencies == {"a"}
    assert free_vars_script("c = a + b\nc") == {"a", "b"}
    assert free_vars_expr("a(") == frozenset()


def test_unit_runs_against_a_different_environment():
    unit = compile_expr("a + b", ["a"])
    assert isinstance(unit.run({"a": 1}), NameError)
    assert unit.run({"a": 1, "b": 2}) == 3
    assert unit.run(Environment({"a": 10, "b": 5})) == 15


def test_pending_input_short_circuits():
    unit = compile_expr("a + 1", ["a"])
    assert unit.run({"a": Pending}) is Pending


def test_pending_in_unused_name_is_ignored():
    unit = compile_expr("a + 1", ["a", "b"])
    assert unit.run({"a": 1, "b": Pending}) == 2


def test_library_names_are_globals():
    library = {"double": lambda x: 2 * x}
    assert compute_expr("double(a)", {"a": 4}, library) == 8


def test_environment_shadows_library():
    library = {"k": 1}
    assert compute_expr("k", {"k": 2}, library) == 2
    assert compute_expr("k", {}, library) == 1


def test_ref_reaches_non_identifier_names():
    env = {"$3": 7, "$before": Environment({"$3": 7})}
    assert compute_expr('ref("$3") * 2', env) == 14
    assert compute_expr('ref("$before")["$3"]', env) == 7
    assert isinstance(compute_expr('ref("$9")', env), NameError)


def test_cleanup_env_drops_non_identifiers():
    clean = cleanup_env({"$0": 1, "a": 2, "class": 3})
    assert "a" in clean and "ref" in clean
    assert "$0" not in clean and "class" not in clean
    assert is_valid_name("abc") and not is_valid_name("for") and not is_valid_name("$1")


def test_toplevel_return_ends_the_cell():
    source = "if a:\n    return 'early'\n'late'"
    assert compute_script(source, {"a": True}) == "early"
    assert compute_script(source, {"a": False}) == "late"


def test_trailing_function_definition_is_the_value():
    func = compute_script("def inc(x):\n    return x + step", {"step": 2})
    assert func(1) == 3


@pytest.mark.asyncio
async def test_toplevel_await_returns_awaitable():
    unit = compile_script("await sleep(0)\na + 1", ["a"], {"sleep": asyncio.sleep})
    assert unit.is_async
    value = unit.run({"a": 1})
    assert await value == 2


def test_source_context_marks_line_and_column():
    text = source_context("a = 1\nb = oops\nc = 3", 2, 5)
    lines = text.splitlines()
    assert lines[1].startswith("> 2 | b = oops")
    assert lines[2].endswith("^")


def test_repr_mentions_mode_and_error():
    assert "expr" in repr(compile_expr("a", ["a"]))
    assert "SyntaxError" in repr(compile_script_safe("(("))
    assert isinstance(compile_script_safe("(("), CompiledUnit)


def test_depends_on_change_sets():
    unit = compile_expr("ref('$0') + b", ["b"])
    assert unit.depends_on(None)
    assert unit.depends_on(frozenset({"$0"}))
    assert not unit.depends_on(frozenset({"c"}))
    assert not unit.reads_any_name


def test_computed_ref_depends_on_every_change():
    unit = compile_expr("ref(key)", ["key"])
    assert unit.reads_any_name
    assert unit.depends_on(frozenset({"anything"}))
    assert unit.run({"key": "a", "a": 3}) == 3
