import sys
import os
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../..")))

import json

import pytest
from pydantic import ValidationError

from data_extractor import DataExtractor
from journey_models import Extraction, StepResponse


@pytest.fixture
def extractor() -> DataExtractor:
    return DataExtractor()


def make_response(body=None, status=200, headers=None) -> StepResponse:
    return StepResponse(statusCode=status, headers=headers or {}, body=body)


def test_json_path_scalar_and_missing(extractor):
    ok = extractor.extract_json_path({"a": {"b": 1}}, "$.a.b")
    assert ok.success is True
    assert ok.value == 1

    missing = extractor.extract_json_path({"a": 1}, "$.missing")
    assert missing.success is False
    assert "matched nothing" in missing.error


def test_json_path_multiple_matches_stay_a_list(extractor):
    result = extractor.extract_json_path({"items": [{"id": 1}, {"id": 2}]}, "$.items[*].id")
    assert result.success
    assert result.value == [1, 2]


def test_json_path_parses_string_bodies(extractor):
    result = extractor.extract_json_path(json.dumps({"token": "abc"}), "$.token")
    assert result.value == "abc"

    bad = extractor.extract_json_path("<html>", "$.token")
    assert bad.success is False
    assert "not valid JSON" in bad.error

    empty = extractor.extract_json_path(None, "$.token")
    assert empty.success is False


@pytest.mark.parametrize("path", ["$[", "]oops"])
def test_json_path_invalid_expression_is_a_failure(extractor, path):
    result = extractor.extract_json_path({"a": 1}, path)
    assert result.success is False
    assert "Invalid JSONPath" in result.error

    extraction = Extraction.model_validate({"path": path, "as": "x"})
    assert extractor.extract(extraction, make_response({"a": 1})).success is False


def test_header_lookup_is_case_insensitive(extractor):
    headers = {"X-Request-Id": "r-1"}
    assert extractor.extract_header(headers, "x-request-id").value == "r-1"
    assert extractor.extract_header(headers, "X-Other").success is False


def test_regex_with_group_suffix(extractor):
    result = extractor.extract_regex("token=XYZ123", "token=([^&]+)|1")
    assert result.success
    assert result.value == "XYZ123"


def test_regex_defaults_to_whole_match(extractor):
    assert extractor.extract_regex("id: 42", r"\d+").value == "42"
    # group 3 does not exist, fall back to the whole match
    assert extractor.extract_regex("id: 42", r"id: (\d+)|3").value == "id: 42"


def test_regex_alternation_is_not_read_as_group(extractor):
    result = extractor.extract_regex("status=ok", "status=(ok|fail)")
    assert result.success
    assert result.value == "status=ok"


def test_regex_against_structured_body_uses_compact_json(extractor):
    result = extractor.extract_regex({"id": 7}, r'"id":(\d+)|1')
    assert result.value == "7"


def test_regex_failures(extractor):
    assert extractor.extract_regex("abc", r"\d+").success is False
    invalid = extractor.extract_regex("abc", "([a-")
    assert invalid.success is False
    assert "Invalid regex" in invalid.error


def test_extract_status(extractor):
    extraction = Extraction(type="status", **{"as": "code"})
    result = extractor.extract(extraction, make_response(status=201))
    assert result.success
    assert result.value == 201


def test_default_applies_on_failure_even_when_null(extractor):
    with_default = Extraction.model_validate({"path": "$.missing", "as": "x", "default": None})
    without_default = Extraction.model_validate({"path": "$.missing", "as": "x"})
    response = make_response({"a": 1})

    result = extractor.extract(with_default, response)
    assert result.success is True
    assert result.value is None
    assert extractor.extract(without_default, response).success is False


def test_transform_applies_after_default(extractor):
    extraction = Extraction.model_validate({"path": "$.missing", "as": "x", "default": "abc", "transform": "value.upper()"})
    result = extractor.extract(extraction, make_response({}))
    assert result.value == "ABC"


def test_transform_failure_turns_into_failure(extractor):
    extraction = Extraction.model_validate({"path": "$.n", "as": "x", "transform": "value / 0"})
    result = extractor.extract(extraction, make_response({"n": 1}))
    assert result.success is False
    assert "Transform failed" in result.error


def test_extract_all_collects_variables_and_errors(extractor):
    extractions = [
        Extraction.model_validate({"path": "$.user.id", "as": "userId"}),
        Extraction.model_validate({"type": "header", "path": "Location", "as": "location"}),
        Extraction.model_validate({"type": "regex", "path": r"sess=(\w+)|1", "as": "session"}),
        Extraction.model_validate({"path": "$.nope", "as": "nope"}),
        Extraction.model_validate({"type": "status", "as": "status"}),
    ]
    response = make_response(
        body='{"user": {"id": 5}, "cookie": "sess=abc123"}',
        status=302,
        headers={"location": "/home"},
    )
    result = extractor.extract_all(extractions, response)
    assert result.variables == {"userId": 5, "location": "/home", "session": "abc123", "status": 302}
    assert result.errors == ["Failed to extract 'nope': JSONPath '$.nope' matched nothing"]


def test_extraction_requires_path_unless_status():
    with pytest.raises(ValidationError):
        Extraction.model_validate({"type": "header", "as": "x"})
    with pytest.raises(ValidationError):
        Extraction.model_validate({"type": "xpath", "path": "/a", "as": "x"})
