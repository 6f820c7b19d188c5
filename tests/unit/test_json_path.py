import sys
import os
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../..")))

import pytest

from engine_errors import JsonPathError
from json_path import compile_path, evaluate, json_equals


STORE = {
    "store": {
        "book": [
            {"title": "A", "price": 8.95, "tags": ["x"]},
            {"title": "B", "price": 12.99},
            {"title": "C", "price": 8.99, "isbn": "123"},
            {"title": "D", "price": 22.99, "isbn": "456"},
        ],
        "bicycle": {"color": "red", "price": 19.95},
    },
    "count": 4,
}


def test_root_member_and_index():
    assert evaluate("$.count", STORE) == [4]
    assert evaluate("$.store.book[0].title", STORE) == ["A"]
    assert evaluate("$.store.book[-1].title", STORE) == ["D"]
    assert evaluate("$['store']['bicycle'][\"color\"]", STORE) == ["red"]


def test_bare_leading_member_is_relative_to_root():
    assert evaluate("store.bicycle.color", STORE) == ["red"]


def test_wildcards_and_unions():
    assert evaluate("$.store.book[*].title", STORE) == ["A", "B", "C", "D"]
    assert evaluate("$.store.bicycle.*", STORE) == ["red", 19.95]
    assert evaluate("$.store.book[0,2].title", STORE) == ["A", "C"]
    assert evaluate("$.store.bicycle['color','price']", STORE) == ["red", 19.95]


def test_slices():
    assert evaluate("$.store.book[1:3].title", STORE) == ["B", "C"]
    assert evaluate("$.store.book[::2].title", STORE) == ["A", "C"]
    assert evaluate("$.store.book[-2:].title", STORE) == ["C", "D"]


def test_recursive_descent():
    assert evaluate("$..price", STORE) == [8.95, 12.99, 8.99, 22.99, 19.95]
    assert evaluate("$..book[1].title", STORE) == ["B"]


def test_filters():
    assert evaluate("$.store.book[?(@.price < 10)].title", STORE) == ["A", "C"]
    assert evaluate("$.store.book[?(@.isbn)].title", STORE) == ["C", "D"]
    assert evaluate("$.store.book[?(@.title == 'B')].price", STORE) == [12.99]
    assert evaluate("$.store.book[?(@.title === \"D\")].isbn", STORE) == ["456"]


def test_filter_comparison_does_not_coerce_types():
    doc = {"items": [{"id": 1}, {"id": "1"}]}
    assert evaluate("$.items[?(@.id == 1)]", doc) == [{"id": 1}]
    assert evaluate("$.items[?(@.id > 0)]", doc) == [{"id": 1}]


def test_missing_paths_yield_no_matches():
    assert evaluate("$.missing", STORE) == []
    assert evaluate("$.store.book[10]", STORE) == []
    assert evaluate("$.count.deeper", STORE) == []


def test_root_alone_returns_document():
    assert evaluate("$", {"a": 1}) == [{"a": 1}]


@pytest.mark.parametrize("path", ["", "$.", "$[", "$.a[?(@.b ~ 1)]", "$[1:2:0]", "$..", "$['a]", "]oops"])
def test_malformed_paths_raise(path):
    with pytest.raises(JsonPathError):
        compile_path(path)


def test_json_equals_is_strict():
    assert json_equals(1, 1.0)
    assert not json_equals("1", 1)
    assert not json_equals(True, 1)
    assert not json_equals(0, False)
    assert json_equals(None, None)
    assert json_equals({"a": [1, 2]}, {"a": [1, 2]})
    assert not json_equals({"a": [1, 2]}, {"a": [1, "2"]})
