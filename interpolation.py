# interpolation.py
"""
Variable namespace and template filling for request templates.

The namespace a virtual user sees is merged from, lowest precedence first:

    journey `variables`
    `env`            environment variables, as a nested namespace
    profile `variables`
    generated values (uuid, sequence, faker, ...)
    `user`           the sampled data row, plus `profile` (the profile name)
    flow variables   values extracted from earlier responses

Templates use `{{path}}` (always a string substitution) and, for JSON bodies,
whole-string tokens `##VAR:unquoted:path##` (raw typed value) and
`##VAR:string:path##` (string form).
"""

import json
import logging
import re
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from urllib.parse import urljoin

from pydantic import Field

from engine_logging import get_logger
from journey_models import Journey, RuntimeModel, Step, UserContext

logger = get_logger("interpolation")

__all__ = [
    "MISSING", "get_value_from_context", "build_interpolation_context",
    "build_user_variables", "interpolate", "interpolate_object",
    "render_request", "RenderedRequest", "deep_merge",
]

# --- Sentinel Object for Missing Keys ---
MISSING = object()

_path_part_regex = re.compile(r'\[(\d+)\]|\.?([^.\[\]]+)')
_placeholder_regex = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")
_absolute_url_regex = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")


class RenderedRequest(RuntimeModel):
    """A request template with every placeholder filled, ready for the host to send."""
    step_id: str
    method: str
    url: str
    headers: Dict[str, str] = Field(default_factory=dict)
    json_body: Any = Field(None, alias="json")
    body: Optional[str] = None
    query_params: Dict[str, str] = Field(default_factory=dict)
    timeout: Optional[float] = None


def get_value_from_context(context: Any, key: str) -> Any:
    """
    Retrieve a value from a nested context using dot notation for keys and
    bracket notation for list indices (e.g. 'user.addresses[0].city').
    Returns the MISSING sentinel when any part of the path does not exist,
    so a stored None stays distinguishable from an absent key.
    """
    if not key or not isinstance(context, (dict, list)):
        return MISSING

    current = context
    for match in _path_part_regex.finditer(key):
        index_str, part_name = match.group(1), match.group(2)
        if index_str is not None:
            index = int(index_str)
            if not isinstance(current, list) or index >= len(current):
                return MISSING
            current = current[index]
        else:
            if not isinstance(current, dict) or part_name not in current:
                return MISSING
            current = current[part_name]
    return current


def deep_merge(target: Dict[str, Any], source: Dict[str, Any]) -> Dict[str, Any]:
    """Merges `source` into `target` in place; nested dicts merge, everything else is replaced."""
    for key, value in source.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            deep_merge(target[key], value)
        elif isinstance(value, dict):
            target[key] = deep_merge({}, value)
        else:
            target[key] = value
    return target


def build_interpolation_context(*sources: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Deep-merges `sources` left to right (later wins), drops internal keys
    starting with '__' and adds fresh built-ins: $uuid, $timestamp (epoch ms)
    and $isoTimestamp.
    """
    context: Dict[str, Any] = {}
    for source in sources:
        if source:
            deep_merge(context, source)
    for key in [k for k in context if k.startswith("__")]:
        del context[key]

    context["$uuid"] = str(uuid.uuid4())
    context["$timestamp"] = int(time.time() * 1000)
    context["$isoTimestamp"] = datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return context


def build_user_variables(
    user: Optional[UserContext],
    journey_variables: Optional[Dict[str, Any]] = None,
    environment: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Variables of one virtual user before any step has run."""
    layers = [dict(journey_variables or {}), {"env": dict(environment or {})}]
    if user is not None:
        layers.append(user.variables)
        layers.append(user.generated_values)
        layers.append({"user": user.user_data, "profile": user.profile_name})
    merged: Dict[str, Any] = {}
    for layer in layers:
        deep_merge(merged, layer)
    return merged


def _to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    return str(value)


def interpolate(template: Any, context: Dict[str, Any]) -> Any:
    """
    Fills one string. Unknown `{{placeholders}}` are left as they are. A string
    that is exactly a `##VAR:type:path##` token is replaced by the value itself
    (`unquoted`) or its string form (`string`). Non-strings are returned as is.
    """
    if not isinstance(template, str):
        return template

    if template.startswith("##VAR:") and template.endswith("##") and len(template) > len("##VAR:##"):
        parts = template[len("##VAR:"):-len("##")].split(":", 1)
        if len(parts) != 2:
            logger.warning(f"Malformed ##VAR token: {template}. Leaving it unchanged.")
            return template
        var_type, var_path = parts
        value = get_value_from_context(context, var_path)
        if value is MISSING:
            logger.warning(f"Variable path '{var_path}' in ##VAR token '{template}' not found in context.")
            return None if var_type == "unquoted" else ""
        if var_type == "unquoted":
            return value
        if var_type != "string":
            logger.warning(f"Unsupported ##VAR type: '{var_type}' in token '{template}'. Treating as string.")
        return _to_text(value)

    def replace(match: re.Match) -> str:
        value = get_value_from_context(context, match.group(1))
        if value is MISSING:
            logger.debug(f"Variable '{match.group(1)}' not found in context; placeholder left as is.")
            return match.group(0)
        return _to_text(value)

    result = _placeholder_regex.sub(replace, template)
    if logger.isEnabledFor(logging.DEBUG) and result != template:
        logger.debug(f"Substituted: '{template[:100]}' -> '{result[:100]}'")
    return result


def interpolate_object(obj: Any, context: Dict[str, Any]) -> Any:
    """Recursively fills strings in dict keys and values and in list items."""
    if isinstance(obj, str):
        return interpolate(obj, context)
    if isinstance(obj, dict):
        return {interpolate(key, context): interpolate_object(value, context) for key, value in obj.items()}
    if isinstance(obj, list):
        return [interpolate_object(item, context) for item in obj]
    return obj


def _join_url(base_url: Optional[str], url: str) -> str:
    if not base_url or _absolute_url_regex.match(url):
        return url
    return urljoin(base_url.rstrip("/") + "/", url.lstrip("/"))


def render_request(
    step: Step,
    journey: Journey,
    context: Dict[str, Any],
    base_url: Optional[str] = None,
) -> RenderedRequest:
    """
    Fills a step's request template. Relative URLs are joined to the journey's
    baseUrl (or `base_url` when the journey has none); journey default headers
    apply first and step headers override them.
    """
    request = step.request
    root = interpolate(journey.base_url or base_url, context) if (journey.base_url or base_url) else None
    headers = dict(journey.defaults.headers)
    headers.update(request.headers)
    body = interpolate(request.body, context)
    return RenderedRequest(
        step_id=step.id,
        method=request.method,
        url=_join_url(root, interpolate(request.url, context)),
        headers={key: _to_text(value) for key, value in interpolate_object(headers, context).items()},
        json_body=interpolate_object(request.json_body, context),
        body=_to_text(body) if body is not None else None,
        query_params={key: _to_text(value) for key, value in interpolate_object(request.query_params, context).items()},
        timeout=request.timeout or journey.defaults.timeout,
    )
