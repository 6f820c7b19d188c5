import sys
import os
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../..")))

import pytest

from engine_errors import TransformError
from safe_transform import MAX_EXPRESSION_LENGTH, apply_transform


@pytest.mark.parametrize("value, expression, expected", [
    (3, "value * 100", 300),
    ("abc", "value.upper()", "ABC"),
    ("a, b ,c", "value.split(',')[1].strip()", "b"),
    ("", "int(value) if value else 0", 0),
    ("42", "int(value) if value else 0", 42),
    ([1, 2, 3], "len(value) > 2", True),
    ({"a": 1}, "value.get('b', 'none')", "none"),
    ({"b": 2, "a": 1}, "sorted(value.keys())", ["a", "b"]),
    ("Bearer xyz", "value[7:]", "xyz"),
    (7, "value % 2 == 1 and value > 5", True),
    (None, "value is None", True),
    ("x", "'prefix-' + value", "prefix-x"),
    (2.5, "round(value * 2)", 5),
    ("a", "lower(value) in ['a', 'b']", True),
    ("7", "value.zfill(3)", "007"),
])
def test_allowed_expressions(value, expression, expected):
    assert apply_transform(value, expression) == expected


@pytest.mark.parametrize("expression", [
    "value.__class__",
    "value.__class__.__mro__",
    "__import__('os')",
    "open('/etc/passwd')",
    "(lambda: 1)()",
    "[x for x in value]",
    "getattr(value, 'upper')",
    "value.format",
    "globals()",
    "(y := 1)",
    "f'{value}'",
    "exec('1')",
])
def test_rejected_expressions(expression):
    with pytest.raises(TransformError):
        apply_transform("text", expression)


def test_method_not_in_whitelist_is_rejected():
    with pytest.raises(TransformError, match="not allowed"):
        apply_transform("text", "value.encode()")


def test_runtime_errors_become_transform_errors():
    with pytest.raises(TransformError, match="ZeroDivisionError"):
        apply_transform(1, "value / 0")
    with pytest.raises(TransformError):
        apply_transform("abc", "int(value)")


def test_unknown_names_are_rejected():
    with pytest.raises(TransformError, match="Unknown name"):
        apply_transform(1, "other + 1")


def test_expression_length_is_limited():
    with pytest.raises(TransformError):
        apply_transform(1, "value + " + "1 + " * MAX_EXPRESSION_LENGTH + "1")


def test_large_repetition_is_rejected():
    with pytest.raises(TransformError, match="too large"):
        apply_transform("x", "value * 1000000")


@pytest.mark.parametrize("value, expression", [
    ("7", "value.zfill(10000000000)"),
    (1, "'%0999999999d' % value"),
    (1.5, "'%.999999999f' % value"),
    (1, "'%*d' % (5, value)"),
    ("abc", "value.replace('', 'x' * 99999)"),
    ("a" * 1000, "value.replace('a', 'b' * 200)"),
    ("x" * 60000, "value.join(['ab', 'cd', 'ef'])"),
])
def test_oversized_string_results_are_rejected(value, expression):
    with pytest.raises(TransformError):
        apply_transform(value, expression)


def test_bounded_formatting_and_padding_still_work():
    assert apply_transform("7", "value.zfill(3)") == "007"
    assert apply_transform(5, "'%03d%%' % value") == "005%"
    assert apply_transform("a-b", "value.replace('-', '_')") == "a_b"


def test_empty_or_invalid_syntax():
    with pytest.raises(TransformError):
        apply_transform(1, "   ")
    with pytest.raises(TransformError, match="syntax"):
        apply_transform(1, "value +")
