# tests/test_expressions.py

import pytest

from jobgraph.errors import ExpressionError
from jobgraph.expressions import (
    evaluate,
    evaluate_condition,
    interpolate,
    interpolate_mapping,
    uses_status_function,
)

CTX = {
    "github": {"ref": "refs/heads/main", "event_name": "push", "actor": "octo"},
    "needs": {"versioning": {"result": "success", "outputs": {"version": "v1.2.3"}}},
    "steps": {"build": {"outputs": {"tags": "app:1,app:latest"}, "outcome": "success"}},
    "matrix": {"language": "csharp", "build-mode": "autobuild"},
    "vars": {"DOCKERHUB_REPOSITORY": "acme/todo"},
    "env": {"version": "v1.2.3"},
}


def test_branch_condition():
    assert evaluate_condition("github.ref == 'refs/heads/main'", CTX)
    assert not evaluate_condition("github.ref == 'refs/heads/develop'", CTX)


def test_string_comparison_is_case_insensitive():
    assert evaluate_condition("github.event_name == 'PUSH'", CTX)


def test_missing_property_is_null():
    assert evaluate("github.nope.deeper", CTX) is None
    assert evaluate_condition("github.nope == null", CTX)
    assert interpolate("[${{ github.nope }}]", CTX) == "[]"


def test_hyphenated_and_indexed_properties():
    assert evaluate("matrix.build-mode", CTX) == "autobuild"
    assert evaluate("matrix['language']", CTX) == "csharp"
    assert evaluate("needs['versioning'].outputs.version", CTX) == "v1.2.3"


def test_logical_operators_return_operands():
    assert evaluate("github.nope || 'fallback'", CTX) == "fallback"
    assert evaluate("github.actor && 'yes'", CTX) == "yes"
    assert evaluate("!github.nope", CTX) is True


def test_literals_and_comparisons():
    assert evaluate("true", CTX) is True
    assert evaluate("3 > 2 && 1 <= 1", CTX) is True
    assert evaluate("'it''s'", CTX) == "it's"
    assert evaluate("'10' == 10", CTX) is True


def test_functions():
    assert evaluate("contains(github.ref, 'main')", CTX) is True
    assert evaluate("startsWith(github.ref, 'refs/heads/')", CTX) is True
    assert evaluate("endsWith(github.ref, 'develop')", CTX) is False
    assert evaluate("format('{0}:{1}', vars.DOCKERHUB_REPOSITORY, env.version)", CTX) == "acme/todo:v1.2.3"
    assert evaluate("fromJSON('[1, 2]')", CTX) == [1, 2]
    assert evaluate("join(fromJSON('[\"a\",\"b\"]'), '-')", CTX) == "a-b"


def test_interpolation():
    cmd = "docker build -t ${{ vars.DOCKERHUB_REPOSITORY }}:${{ env.version }} ."
    assert interpolate(cmd, CTX) == "docker build -t acme/todo:v1.2.3 ."
    assert interpolate("no expressions", CTX) == "no expressions"
    assert interpolate("${{ 1 == 1 }}", CTX) == "true"


def test_interpolate_mapping():
    out = interpolate_mapping({"version": "${{ needs.versioning.outputs.version }}", "plain": "x"}, CTX)
    assert out == {"version": "v1.2.3", "plain": "x"}


def test_wrapper_is_accepted_in_conditions():
    assert evaluate_condition("${{ github.ref == 'refs/heads/main' }}", CTX)


def test_status_functions_need_a_provider():
    with pytest.raises(ExpressionError):
        evaluate("always()", CTX)
    assert evaluate("always()", CTX, {"always": lambda: True}) is True


def test_uses_status_function():
    assert uses_status_function("always()")
    assert uses_status_function("failure() && github.ref == 'refs/heads/main'")
    assert uses_status_function("${{ !cancelled() }}")
    assert not uses_status_function("github.ref == 'refs/heads/main'")
    assert not uses_status_function("contains(github.ref, 'main')")


@pytest.mark.parametrize("text", ["github.ref ==", "(true", "a b", "unknownfn()", "'unterminated", "@"])
def test_invalid_expressions_raise(text):
    with pytest.raises(ExpressionError):
        evaluate(text, CTX)


def test_function_value_errors_become_expression_errors():
    with pytest.raises(ExpressionError):
        evaluate("fromJSON('not json')", CTX)


def test_object_or_array_index_is_null():
    assert evaluate("github[needs]", CTX) is None
    assert evaluate("matrix[fromJSON('[1, 2]')]", CTX) is None
