"""Variable substitution for node configs and boolean expressions for branches.

Templates use ``{{name}}`` with optional dotted / indexed paths
(``{{user.email}}``, ``{{rows[0].id}}``). A string that consists of a single
placeholder resolves to the raw value so lists, numbers and booleans keep their
type; placeholders embedded in longer strings are interpolated as text.
Unresolved references are never defaulted.
"""

from __future__ import annotations

import ast
import operator
import re
from typing import Any, Callable, Dict, Mapping

from .errors import ValidationError

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z_][\w]*(?:\.[A-Za-z_]\w*|\[\d+\])*)\s*\}\}")
_PATH_TOKEN = re.compile(r"[A-Za-z_]\w*|\[\d+\]")

_MISSING = object()


def lookup_path(variables: Mapping[str, Any], path: str) -> Any:
    """Resolve ``a.b[0].c`` against ``variables``; return a sentinel when absent."""

    current: Any = variables
    for token in _PATH_TOKEN.findall(path):
        if token.startswith("["):
            index = int(token[1:-1])
            if isinstance(current, (list, tuple)) and -len(current) <= index < len(current):
                current = current[index]
            else:
                return _MISSING
        elif isinstance(current, Mapping) and token in current:
            current = current[token]
        else:
            return _MISSING
    return current


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def render_string(template: str, variables: Mapping[str, Any]) -> Any:
    whole = _PLACEHOLDER.fullmatch(template.strip())
    if whole and template.strip() == template:
        value = lookup_path(variables, whole.group(1))
        if value is _MISSING:
            raise ValidationError(
                f"Unresolved variable '{whole.group(1)}'",
                code="UNRESOLVED_VARIABLE",
                details={"variable": whole.group(1)},
            )
        return value

    def _replace(match: re.Match[str]) -> str:
        value = lookup_path(variables, match.group(1))
        if value is _MISSING:
            raise ValidationError(
                f"Unresolved variable '{match.group(1)}'",
                code="UNRESOLVED_VARIABLE",
                details={"variable": match.group(1)},
            )
        return _stringify(value)

    return _PLACEHOLDER.sub(_replace, template)


def render(value: Any, variables: Mapping[str, Any]) -> Any:
    """Recursively substitute placeholders in strings, dict values and lists."""

    if isinstance(value, str):
        return render_string(value, variables)
    if isinstance(value, dict):
        return {key: render(item, variables) for key, item in value.items()}
    if isinstance(value, list):
        return [render(item, variables) for item in value]
    return value


# ---------------------------------------------------------------------------
# conditions

_JS_LITERALS = {"true": True, "false": False, "null": None, "undefined": None, "True": True, "False": False, "None": None}

_COMPARE_OPS: Dict[type, Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
}
_BIN_OPS: Dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
}
_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "len": len,
    "int": int,
    "float": float,
    "str": str,
    "bool": bool,
    "lower": lambda value: str(value).lower(),
}


def _normalise_expression(expression: str) -> str:
    text = expression.strip()
    # "{{count}} > 5" is accepted as well as "count > 5".
    text = _PLACEHOLDER.sub(lambda match: match.group(1), text)
    text = text.replace("!==", "!=").replace("===", "==")
    text = text.replace("&&", " and ").replace("||", " or ")
    text = re.sub(r"!(?!=)", " not ", text)
    return text.strip()


class _Evaluator:
    def __init__(self, variables: Mapping[str, Any], expression: str) -> None:
        self.variables = variables
        self.expression = expression

    def fail(self, message: str) -> ValidationError:
        return ValidationError(
            f"{message} in condition '{self.expression}'",
            code="INVALID_CONDITION",
            details={"condition": self.expression},
        )

    def visit(self, node: ast.AST) -> Any:
        if isinstance(node, ast.Expression):
            return self.visit(node.body)
        if isinstance(node, ast.Constant):
            return node.value
        if isinstance(node, ast.Name):
            if node.id in self.variables:
                return self.variables[node.id]
            if node.id in _JS_LITERALS:
                return _JS_LITERALS[node.id]
            raise ValidationError(
                f"Unresolved variable '{node.id}' in condition '{self.expression}'",
                code="UNRESOLVED_VARIABLE",
                details={"variable": node.id, "condition": self.expression},
            )
        if isinstance(node, ast.Attribute):
            base = self.visit(node.value)
            if isinstance(base, Mapping) and node.attr in base:
                return base[node.attr]
            raise self.fail(f"Unknown field '{node.attr}'")
        if isinstance(node, ast.Subscript):
            base = self.visit(node.value)
            key = self.visit(node.slice)
            try:
                return base[key]
            except (KeyError, IndexError, TypeError) as exc:
                raise self.fail(f"Cannot index with {key!r}") from exc
        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                result: Any = True
                for value in node.values:
                    result = self.visit(value)
                    if not result:
                        return result
                return result
            result = False
            for value in node.values:
                result = self.visit(value)
                if result:
                    return result
            return result
        if isinstance(node, ast.UnaryOp):
            operand = self.visit(node.operand)
            if isinstance(node.op, ast.Not):
                return not operand
            if isinstance(node.op, ast.USub):
                return -operand
            raise self.fail("Unsupported unary operator")
        if isinstance(node, ast.BinOp):
            op = _BIN_OPS.get(type(node.op))
            if op is None:
                raise self.fail("Unsupported operator")
            try:
                return op(self.visit(node.left), self.visit(node.right))
            except (TypeError, ZeroDivisionError) as exc:
                raise self.fail(str(exc)) from exc
        if isinstance(node, ast.Compare):
            left = self.visit(node.left)
            for op_node, comparator in zip(node.ops, node.comparators):
                op = _COMPARE_OPS.get(type(op_node))
                if op is None:
                    raise self.fail("Unsupported comparison")
                right = self.visit(comparator)
                try:
                    if not op(left, right):
                        return False
                except TypeError as exc:
                    raise self.fail(str(exc)) from exc
                left = right
            return True
        if isinstance(node, (ast.List, ast.Tuple)):
            return [self.visit(element) for element in node.elts]
        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in _FUNCTIONS or node.keywords:
                raise self.fail("Unsupported function call")
            args = [self.visit(arg) for arg in node.args]
            try:
                return _FUNCTIONS[node.func.id](*args)
            except (TypeError, ValueError) as exc:
                raise self.fail(str(exc)) from exc
        raise self.fail(f"Unsupported syntax '{type(node).__name__}'")


def evaluate_condition(expression: str, variables: Mapping[str, Any]) -> bool:
    """Evaluate a boolean expression such as ``count > 5 && status == "ok"``."""

    if not expression or not expression.strip():
        raise ValidationError("Condition must not be empty", code="INVALID_CONDITION")
    source = _normalise_expression(expression)
    try:
        tree = ast.parse(source, mode="eval")
    except SyntaxError as exc:
        raise ValidationError(
            f"Invalid condition '{expression}': {exc.msg}",
            code="INVALID_CONDITION",
            details={"condition": expression},
        ) from exc
    return bool(_Evaluator(variables, expression).visit(tree))
