# data_extractor.py
"""
Pulls values out of step responses and binds them to journey variables.

Each `Extraction` names a strategy (jsonpath, header, regex, status), a path,
the variable it binds (`as`), an optional `default` used when the lookup
fails and an optional `transform` expression applied to a successful value.
Failures never raise: they come back as ExtractionResult(success=False).
"""

import json
import re
from typing import Any, Dict, List

from engine_errors import JsonPathError, TransformError
from engine_logging import get_logger
from journey_models import (
    ExtractAllResult,
    Extraction,
    ExtractionResult,
    ExtractionType,
    StepResponse,
)
import json_path
import safe_transform

logger = get_logger("extractor")

__all__ = ["DataExtractor", "parse_body", "lookup_header", "body_as_text"]

_group_suffix_regex = re.compile(r"^(?P<pattern>.*)\|(?P<group>\d+)$", re.DOTALL)


def parse_body(body: Any) -> Any:
    """
    Returns the body as a JSON value. Strings are parsed as JSON;
    raises ValueError if a string body is not valid JSON.
    """
    if isinstance(body, (bytes, bytearray)):
        body = body.decode("utf-8", errors="replace")
    if isinstance(body, str):
        return json.loads(body)
    return body


def body_as_text(body: Any) -> str:
    """String form of a body for regex matching (compact JSON for structured bodies)."""
    if body is None:
        return ""
    if isinstance(body, (bytes, bytearray)):
        return body.decode("utf-8", errors="replace")
    if isinstance(body, str):
        return body
    return json.dumps(body, separators=(",", ":"), ensure_ascii=False)


def lookup_header(headers: Dict[str, Any], name: str) -> Any:
    """Case-insensitive header lookup; returns None when absent."""
    if not headers or not name:
        return None
    wanted = name.lower()
    for key, value in headers.items():
        if str(key).lower() == wanted:
            return value
    return None


class DataExtractor:
    """Stateless extraction engine; one instance can be shared by all virtual users."""

    def extract(self, extraction: Extraction, response: StepResponse) -> ExtractionResult:
        kind = extraction.type
        if kind == ExtractionType.JSONPATH:
            result = self.extract_json_path(response.body, extraction.path)
        elif kind == ExtractionType.HEADER:
            result = self.extract_header(response.headers, extraction.path)
        elif kind == ExtractionType.REGEX:
            result = self.extract_regex(response.body, extraction.path)
        elif kind == ExtractionType.STATUS:
            result = ExtractionResult(success=True, value=response.status_code)
        else:
            result = ExtractionResult(success=False, error=f"Unknown extraction type: {kind}")

        if not result.success and extraction.has_default:
            logger.debug(f"Extraction '{extraction.as_}' failed ({result.error}); using default {extraction.default!r}")
            result = ExtractionResult(success=True, value=extraction.default)

        if result.success and extraction.transform:
            result = self.apply_transform(result.value, extraction.transform)
        return result

    def extract_all(self, extractions: List[Extraction], response: StepResponse) -> ExtractAllResult:
        """Runs every extraction in order. Failed ones are reported, not bound."""
        variables: Dict[str, Any] = {}
        errors: List[str] = []
        for extraction in extractions:
            result = self.extract(extraction, response)
            if result.success:
                variables[extraction.as_] = result.value
                log_value_repr = repr(result.value)[:100] + ('...' if len(repr(result.value)) > 100 else '')
                logger.debug(f"Extracted '{extraction.as_}' = {log_value_repr}")
            else:
                message = f"Failed to extract '{extraction.as_}': {result.error}"
                logger.warning(message)
                errors.append(message)
        return ExtractAllResult(variables=variables, errors=errors)

    def extract_json_path(self, body: Any, path: str) -> ExtractionResult:
        if body is None:
            return ExtractionResult(success=False, error="Response body is empty")
        try:
            document = parse_body(body)
        except ValueError:
            return ExtractionResult(success=False, error="Response body is not valid JSON")
        try:
            matches = json_path.evaluate(path, document)
        except JsonPathError as e:
            return ExtractionResult(success=False, error=f"Invalid JSONPath '{path}': {e}")
        if not matches:
            return ExtractionResult(success=False, error=f"JSONPath '{path}' matched nothing")
        return ExtractionResult(success=True, value=matches[0] if len(matches) == 1 else matches)

    def extract_header(self, headers: Dict[str, Any], name: str) -> ExtractionResult:
        value = lookup_header(headers, name)
        if value is None:
            return ExtractionResult(success=False, error=f"Header '{name}' not found")
        return ExtractionResult(success=True, value=value)

    def extract_regex(self, body: Any, path: str) -> ExtractionResult:
        """
        `path` is `<pattern>` or `<pattern>|<group>`. Only an all-digit suffix
        after the last '|' is read as a group index, so alternations such as
        `(a|b)` are left alone. A missing or non-participating group yields
        the whole match.
        """
        pattern, group = path, 0
        suffix = _group_suffix_regex.match(path)
        if suffix:
            pattern, group = suffix.group("pattern"), int(suffix.group("group"))
        try:
            compiled = re.compile(pattern)
        except re.error as e:
            return ExtractionResult(success=False, error=f"Invalid regex '{pattern}': {e}")

        match = compiled.search(body_as_text(body))
        if not match:
            return ExtractionResult(success=False, error=f"Regex '{pattern}' did not match")
        if group <= compiled.groups and match.group(group) is not None:
            return ExtractionResult(success=True, value=match.group(group))
        return ExtractionResult(success=True, value=match.group(0))

    def apply_transform(self, value: Any, expression: str) -> ExtractionResult:
        try:
            return ExtractionResult(success=True, value=safe_transform.apply_transform(value, expression))
        except TransformError as e:
            return ExtractionResult(success=False, error=f"Transform failed: {e}")
