# json_path.py
"""
JSONPath evaluation for response bodies.

Supported syntax (a practical subset of Goessner JSONPath):

    $                     root (optional; "a.b" is read as "$.a.b")
    .name  ['name']       child member
    [0]  [-1]             array index (negative counts from the end)
    [0,2]  ['a','b']      unions of indices or member names
    [1:3]  [::2]          array slices
    *  [*]                wildcard over object values / array items
    ..name  ..*  ..[0]    recursive descent
    [?(@.price < 10)]     filter on children: ==, !=, >, >=, <, <=
    [?(@.id)]             filter on existence

`evaluate` always returns a list of matches (possibly empty). Malformed
expressions raise JsonPathError.
"""

import json
import re
from functools import lru_cache
from typing import Any, List, Tuple

from engine_errors import JsonPathError
from engine_logging import get_logger

logger = get_logger("jsonpath")

__all__ = ["evaluate", "compile_path", "json_equals", "is_number"]

_name_regex = re.compile(r"[^.\[\]]+")
_int_regex = re.compile(r"^-?\d+$")
_filter_compare_regex = re.compile(
    r"""^\s*@(?P<path>[^=!<>\s]*?)\s*(?P<op>===|!==|==|!=|>=|<=|>|<)\s*(?P<value>.+?)\s*$""",
    re.DOTALL,
)
_filter_exists_regex = re.compile(r"^\s*@(?P<path>[^=!<>\s]*?)\s*$", re.DOTALL)

Selector = Tuple[Any, ...]


def is_number(value: Any) -> bool:
    """True for int/float values; bools are not numbers here."""
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def json_equals(left: Any, right: Any) -> bool:
    """
    Equality without type coercion, as JSON values are compared in a journey:
    "1" != 1, True != 1, but 1 == 1.0. Lists and objects compare structurally.
    """
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left is right
    if is_number(left) and is_number(right):
        return left == right
    if isinstance(left, list) and isinstance(right, list):
        return len(left) == len(right) and all(json_equals(a, b) for a, b in zip(left, right))
    if isinstance(left, dict) and isinstance(right, dict):
        return left.keys() == right.keys() and all(json_equals(left[k], right[k]) for k in left)
    if type(left) is not type(right):
        return False
    return left == right


# ---------------------------
# Parsing
# ---------------------------

def _split_outside_quotes(text: str, separator: str) -> List[str]:
    parts = []
    current = []
    quote = None
    for ch in text:
        if quote:
            current.append(ch)
            if ch == quote:
                quote = None
        elif ch in ("'", '"'):
            quote = ch
            current.append(ch)
        elif ch == separator:
            parts.append("".join(current))
            current = []
        else:
            current.append(ch)
    if quote:
        raise JsonPathError(f"Unterminated string literal in '{text}'")
    parts.append("".join(current))
    return parts


def _read_bracket(path: str, start: int) -> Tuple[str, int]:
    """Returns the text between path[start] == '[' and its matching ']', plus the index after it."""
    depth = 0
    quote = None
    i = start
    while i < len(path):
        ch = path[i]
        if quote:
            if ch == quote:
                quote = None
        elif ch in ("'", '"'):
            quote = ch
        elif ch in "[(":
            depth += 1
        elif ch in "])":
            depth -= 1
            if depth == 0:
                if ch != "]":
                    raise JsonPathError(f"Unbalanced parentheses in '{path}'")
                return path[start + 1:i], i + 1
        i += 1
    raise JsonPathError(f"Unclosed '[' at position {start} in '{path}'")


def _unquote(token: str) -> str:
    token = token.strip()
    if len(token) >= 2 and token[0] == token[-1] and token[0] in ("'", '"'):
        return token[1:-1]
    return token


def _parse_literal(text: str) -> Any:
    text = text.strip()
    if len(text) >= 2 and text[0] == "'" and text[-1] == "'":
        return text[1:-1]
    try:
        return json.loads(text)
    except ValueError:
        raise JsonPathError(f"Invalid literal '{text}' in filter expression")


def _parse_bracket(content: str, path: str) -> Selector:
    content = content.strip()
    if not content:
        raise JsonPathError(f"Empty brackets in '{path}'")
    if content == "*":
        return ("wildcard",)
    if content.startswith("?"):
        expr = content[1:].strip()
        if not (expr.startswith("(") and expr.endswith(")")):
            raise JsonPathError(f"Filter must be written as [?(...)] in '{path}'")
        return _parse_filter(expr[1:-1], path)

    parts = _split_outside_quotes(content, ",")
    if len(parts) == 1 and ":" in content and content[0] not in ("'", '"'):
        pieces = content.split(":")
        if len(pieces) > 3:
            raise JsonPathError(f"Invalid slice '[{content}]' in '{path}'")
        bounds = []
        for piece in pieces:
            piece = piece.strip()
            if piece and not _int_regex.match(piece):
                raise JsonPathError(f"Invalid slice bound '{piece}' in '{path}'")
            bounds.append(int(piece) if piece else None)
        while len(bounds) < 3:
            bounds.append(None)
        if bounds[2] == 0:
            raise JsonPathError(f"Slice step cannot be zero in '{path}'")
        return ("slice", bounds[0], bounds[1], bounds[2])

    members = []
    for part in parts:
        part = part.strip()
        if not part:
            raise JsonPathError(f"Empty member in '[{content}]' in '{path}'")
        if part[0] in ("'", '"'):
            members.append(("name", _unquote(part)))
        elif _int_regex.match(part):
            members.append(("index", int(part)))
        else:
            members.append(("name", part))
    return ("members", tuple(members))


def _parse_filter(expr: str, path: str) -> Selector:
    match = _filter_compare_regex.match(expr)
    if match:
        op = {"===": "==", "!==": "!="}.get(match.group("op"), match.group("op"))
        relative = compile_path("$" + match.group("path").strip())
        return ("filter", relative, op, _parse_literal(match.group("value")))
    match = _filter_exists_regex.match(expr)
    if match:
        relative = compile_path("$" + match.group("path").strip())
        return ("filter", relative, "exists", None)
    raise JsonPathError(f"Unsupported filter expression '{expr}' in '{path}'")


@lru_cache(maxsize=512)
def compile_path(path: str) -> Tuple[Selector, ...]:
    """Parses a JSONPath expression into a tuple of selectors."""
    if not isinstance(path, str) or not path.strip():
        raise JsonPathError("JSONPath expression is empty")
    path = path.strip()
    selectors: List[Selector] = []
    i = 0
    if path[0] == "$":
        i = 1
    elif path[0] not in ".[":
        # Bare leading member, e.g. "data.items[0]"
        match = _name_regex.match(path)
        if not match:
            raise JsonPathError(f"Unexpected character '{path[0]}' at position 0 in '{path}'")
        selectors.append(("members", (("name", match.group(0)),)))
        i = match.end()

    while i < len(path):
        if path.startswith("..", i):
            i += 2
            if i >= len(path):
                raise JsonPathError(f"Recursive descent without a selector in '{path}'")
            if path[i] == "[":
                content, i = _read_bracket(path, i)
                selectors.append(("descend", _parse_bracket(content, path)))
            elif path[i] == "*":
                selectors.append(("descend", ("wildcard",)))
                i += 1
            else:
                match = _name_regex.match(path, i)
                if not match:
                    raise JsonPathError(f"Expected a member name after '..' at position {i} in '{path}'")
                selectors.append(("descend", ("members", (("name", match.group(0)),))))
                i = match.end()
        elif path[i] == ".":
            i += 1
            if i < len(path) and path[i] == "*":
                selectors.append(("wildcard",))
                i += 1
                continue
            match = _name_regex.match(path, i)
            if not match:
                raise JsonPathError(f"Expected a member name at position {i} in '{path}'")
            selectors.append(("members", (("name", match.group(0)),)))
            i = match.end()
        elif path[i] == "[":
            content, i = _read_bracket(path, i)
            selectors.append(_parse_bracket(content, path))
        else:
            raise JsonPathError(f"Unexpected character '{path[i]}' at position {i} in '{path}'")
    return tuple(selectors)


# ---------------------------
# Evaluation
# ---------------------------

def _children(node: Any) -> List[Any]:
    if isinstance(node, dict):
        return list(node.values())
    if isinstance(node, list):
        return list(node)
    return []


def _descendants_or_self(node: Any) -> List[Any]:
    result = [node]
    stack = list(reversed(_children(node)))
    while stack:
        current = stack.pop()
        result.append(current)
        stack.extend(reversed(_children(current)))
    return result


def _filter_matches(child: Any, relative: Tuple[Selector, ...], op: str, literal: Any) -> bool:
    found = _apply_all(relative, [child])
    if op == "exists":
        return bool(found)
    if not found:
        return False
    value = found[0]
    if op == "==":
        return json_equals(value, literal)
    if op == "!=":
        return not json_equals(value, literal)
    comparable = (is_number(value) and is_number(literal)) or (isinstance(value, str) and isinstance(literal, str))
    if not comparable:
        return False
    if op == ">":
        return value > literal
    if op == ">=":
        return value >= literal
    if op == "<":
        return value < literal
    return value <= literal


def _apply(selector: Selector, nodes: List[Any]) -> List[Any]:
    kind = selector[0]
    out: List[Any] = []
    if kind == "members":
        for node in nodes:
            for member_kind, key in selector[1]:
                if isinstance(node, dict):
                    lookup = key if member_kind == "name" else str(key)
                    if lookup in node:
                        out.append(node[lookup])
                elif isinstance(node, list):
                    if member_kind == "index":
                        index = key
                    elif _int_regex.match(key):
                        index = int(key)
                    else:
                        continue
                    if -len(node) <= index < len(node):
                        out.append(node[index])
    elif kind == "wildcard":
        for node in nodes:
            out.extend(_children(node))
    elif kind == "slice":
        for node in nodes:
            if isinstance(node, list):
                out.extend(node[slice(selector[1], selector[2], selector[3])])
    elif kind == "filter":
        _, relative, op, literal = selector
        for node in nodes:
            out.extend(child for child in _children(node) if _filter_matches(child, relative, op, literal))
    elif kind == "descend":
        expanded: List[Any] = []
        for node in nodes:
            expanded.extend(_descendants_or_self(node))
        out = _apply(selector[1], expanded)
    else:
        raise JsonPathError(f"Unknown selector kind '{kind}'")
    return out


def _apply_all(selectors: Tuple[Selector, ...], nodes: List[Any]) -> List[Any]:
    for selector in selectors:
        nodes = _apply(selector, nodes)
        if not nodes:
            break
    return nodes


def evaluate(path: str, document: Any) -> List[Any]:
    """Evaluates `path` against an already-parsed JSON document and returns all matches."""
    selectors = compile_path(path)
    matches = _apply_all(selectors, [document])
    logger.debug(f"JSONPath '{path}' matched {len(matches)} value(s)")
    return matches
