# safe_transform.py
"""
Sandboxed evaluation of extraction `transform` expressions.

A transform is a single Python expression over the extracted `value`, e.g.

    value * 100
    value.upper()
    value.split(',')[0].strip()
    int(value) if value else 0
    len(value) > 3

The expression is parsed with `ast` and evaluated by a small interpreter that
only understands whitelisted node types. The only free name is `value`; the
only callables are the builtins in SAFE_FUNCTIONS and the methods in
SAFE_METHODS. Anything else (attribute access to other members, dunder names,
lambdas, comprehensions, f-strings, walrus, imports) raises
TransformError before or during evaluation. No Python `eval` is involved.
"""

import ast
import operator
import re
from functools import lru_cache
from typing import Any, Callable, Dict

from engine_errors import TransformError

__all__ = ["compile_transform", "apply_transform", "MAX_EXPRESSION_LENGTH"]

MAX_EXPRESSION_LENGTH = 500
# Upper bound on the length of a string or list built inside a transform
MAX_SEQUENCE_RESULT = 100_000

SAFE_FUNCTIONS: Dict[str, Callable] = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "round": round,
    "abs": abs,
    "min": min,
    "max": max,
    "sorted": sorted,
    "lower": lambda s: str(s).lower(),
    "upper": lambda s: str(s).upper(),
}

SAFE_METHODS = {
    str: {
        "lower", "upper", "strip", "lstrip", "rstrip", "split", "rsplit", "replace",
        "startswith", "endswith", "title", "capitalize", "join", "find", "count",
        "zfill", "isdigit", "isalpha", "isalnum",
    },
    list: {"index", "count"},
    dict: {"get", "keys", "values", "items"},
}

_BINARY_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
}

_UNARY_OPS = {
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
    ast.Not: operator.not_,
}

_COMPARE_OPS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

_CONSTANT_NAMES = {"True": True, "False": False, "None": None}

_ALLOWED_NODES = (
    ast.Expression, ast.Constant, ast.Name, ast.Load, ast.BinOp, ast.UnaryOp,
    ast.BoolOp, ast.And, ast.Or, ast.Compare, ast.IfExp, ast.Subscript, ast.Slice,
    ast.Call, ast.keyword, ast.Attribute, ast.List, ast.Tuple, ast.Dict,
) + tuple(_BINARY_OPS) + tuple(_UNARY_OPS) + tuple(_COMPARE_OPS)

# printf-style conversion: optional mapping key, flags, width, precision
_FORMAT_SPEC = re.compile(r"%(?:\([^)]*\))?[-+ #0]*(\*|\d+)?(?:\.(\*|\d+))?")


def _check_format_widths(template: str):
    for match in _FORMAT_SPEC.finditer(template):
        for size in match.groups():
            if size == "*":
                raise TransformError("Star width or precision is not allowed in '%' formatting")
            if size and int(size) > MAX_SEQUENCE_RESULT:
                raise TransformError("Format width too large")


def _check_method_args(target: Any, name: str, args: list):
    """Rejects string method calls whose result would outgrow MAX_SEQUENCE_RESULT."""
    if not isinstance(target, str) or not args:
        return
    if name == "zfill" and isinstance(args[0], int) and args[0] > MAX_SEQUENCE_RESULT:
        raise TransformError("zfill width too large")
    if name == "replace" and len(args) >= 2 and isinstance(args[0], str) and isinstance(args[1], str):
        occurrences = target.count(args[0])
        if len(args) > 2 and isinstance(args[2], int) and args[2] >= 0:
            occurrences = min(occurrences, args[2])
        if len(target) + occurrences * (len(args[1]) - len(args[0])) > MAX_SEQUENCE_RESULT:
            raise TransformError("Replace result too large")


class _Evaluator:
    def __init__(self, value: Any):
        self.value = value

    def eval(self, node: ast.AST) -> Any:
        method = getattr(self, f"_eval_{type(node).__name__}", None)
        if method is None:
            raise TransformError(f"Expression element '{type(node).__name__}' is not allowed")
        return method(node)

    def _eval_Expression(self, node):
        return self.eval(node.body)

    def _eval_Constant(self, node):
        return node.value

    def _eval_Name(self, node):
        if node.id == "value":
            return self.value
        if node.id in _CONSTANT_NAMES:
            return _CONSTANT_NAMES[node.id]
        raise TransformError(f"Unknown name '{node.id}' (only 'value' is available)")

    def _eval_BinOp(self, node):
        left = self.eval(node.left)
        right = self.eval(node.right)
        if isinstance(node.op, ast.Mult):
            for seq, count in ((left, right), (right, left)):
                if isinstance(seq, (str, list, tuple)) and isinstance(count, int):
                    if len(seq) * max(count, 0) > MAX_SEQUENCE_RESULT:
                        raise TransformError("Repetition result too large")
        if isinstance(node.op, ast.Mod) and isinstance(left, str):
            _check_format_widths(left)
        return _BINARY_OPS[type(node.op)](left, right)

    def _eval_UnaryOp(self, node):
        return _UNARY_OPS[type(node.op)](self.eval(node.operand))

    def _eval_BoolOp(self, node):
        if isinstance(node.op, ast.And):
            result = True
            for item in node.values:
                result = self.eval(item)
                if not result:
                    return result
            return result
        result = False
        for item in node.values:
            result = self.eval(item)
            if result:
                return result
        return result

    def _eval_Compare(self, node):
        left = self.eval(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            right = self.eval(comparator)
            if not _COMPARE_OPS[type(op)](left, right):
                return False
            left = right
        return True

    def _eval_IfExp(self, node):
        return self.eval(node.body) if self.eval(node.test) else self.eval(node.orelse)

    def _eval_Subscript(self, node):
        target = self.eval(node.value)
        if isinstance(node.slice, ast.Slice):
            bounds = [self.eval(part) if part is not None else None
                      for part in (node.slice.lower, node.slice.upper, node.slice.step)]
            return target[slice(*bounds)]
        return target[self.eval(node.slice)]

    def _eval_List(self, node):
        return [self.eval(item) for item in node.elts]

    def _eval_Tuple(self, node):
        return tuple(self.eval(item) for item in node.elts)

    def _eval_Dict(self, node):
        if any(key is None for key in node.keys):
            raise TransformError("Dictionary unpacking is not allowed")
        return {self.eval(k): self.eval(v) for k, v in zip(node.keys, node.values)}

    def _eval_Attribute(self, node):
        raise TransformError(f"Attribute access '.{node.attr}' is only allowed as a method call")

    def _eval_Call(self, node):
        if any(isinstance(arg, ast.Starred) for arg in node.args) or any(kw.arg is None for kw in node.keywords):
            raise TransformError("Argument unpacking is not allowed")
        args = [self.eval(arg) for arg in node.args]
        kwargs = {kw.arg: self.eval(kw.value) for kw in node.keywords}

        if isinstance(node.func, ast.Name):
            func = SAFE_FUNCTIONS.get(node.func.id)
            if func is None:
                raise TransformError(f"Function '{node.func.id}' is not allowed")
            return func(*args, **kwargs)

        if isinstance(node.func, ast.Attribute):
            target = self.eval(node.func.value)
            name = node.func.attr
            allowed = next((methods for kind, methods in SAFE_METHODS.items() if isinstance(target, kind)), set())
            if name not in allowed:
                raise TransformError(f"Method '{name}' is not allowed on {type(target).__name__}")
            _check_method_args(target, name, args)
            result = getattr(target, name)(*args, **kwargs)
            # dict views are not JSON-friendly
            if name in ("keys", "values", "items"):
                result = list(result)
            if isinstance(result, (str, list)) and len(result) > MAX_SEQUENCE_RESULT:
                raise TransformError(f"Result of '{name}' too large")
            return result

        raise TransformError("Only named functions and methods may be called")


@lru_cache(maxsize=256)
def compile_transform(expression: str) -> ast.Expression:
    """Parses and checks an expression; raises TransformError if it is not allowed."""
    if not isinstance(expression, str) or not expression.strip():
        raise TransformError("Transform expression is empty")
    if len(expression) > MAX_EXPRESSION_LENGTH:
        raise TransformError(f"Transform expression longer than {MAX_EXPRESSION_LENGTH} characters")
    try:
        tree = ast.parse(expression.strip(), mode="eval")
    except SyntaxError as e:
        raise TransformError(f"Invalid transform syntax: {e.msg}") from e

    for node in ast.walk(tree):
        if not isinstance(node, _ALLOWED_NODES):
            raise TransformError(f"Expression element '{type(node).__name__}' is not allowed")
        if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
            raise TransformError(f"Access to '{node.attr}' is not allowed")
        if isinstance(node, ast.Name) and node.id.startswith("_"):
            raise TransformError(f"Access to '{node.id}' is not allowed")
    return tree


def apply_transform(value: Any, expression: str) -> Any:
    """Evaluates `expression` with `value` bound; every failure surfaces as TransformError."""
    tree = compile_transform(expression)
    try:
        return _Evaluator(value).eval(tree)
    except TransformError:
        raise
    except Exception as e:
        raise TransformError(f"{type(e).__name__}: {e}") from e
