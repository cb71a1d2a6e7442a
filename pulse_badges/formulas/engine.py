"""
Safe validation and evaluation of user-supplied recommendation formulas.

Formulas are parsed with ``ast.parse(mode="eval")`` and accepted only if every
node belongs to a small arithmetic grammar:

    expr    := number | variable | expr (+ | - | * | /) expr
             | (+ | -) expr | function "(" [expr ("," expr)*] ")"
    function:= min | max | avg | clamp

Anything else (comparisons, boolean logic, conditionals, ``**``, attribute
access, subscripts, keyword arguments, strings ...) is rejected at validation
time. A valid expression is compiled once into a tree of closures, and the
result is a pure function of its variable context that can be reused for
every instrument in a run.

Evaluation never raises: it returns ``None`` when a referenced variable is
missing, when arithmetic fails (division by zero), or when the result is not
a finite number.
"""

from __future__ import annotations

import ast
import logging
import math
import operator
from collections.abc import Callable, Mapping
from functools import lru_cache
from typing import Optional, Union

from pulse_badges.formulas.constants import (
    ALLOWED_FUNCTIONS,
    ALLOWED_VARIABLES,
    DEFAULT_FORMULA,
    DEFAULT_FORMULA_ID,
    FORMULA_MAX_LENGTH,
    GROWTH_VARIABLES,
    VARIABLE_FIELDS,
)
from pulse_badges.models.formula import Formula, ValidationResult
from pulse_badges.models.instrument import InstrumentSnapshot

logger = logging.getLogger(__name__)

Context = Mapping[str, Optional[float]]
_Node = Callable[[Context], float]


class FormulaSyntaxError(ValueError):
    """Raised by ``compile_expression`` for an expression that fails validation."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors))
        self.errors = errors


class _MissingVariable(LookupError):
    """A referenced variable has no value for this instrument."""


# ── Whitelisted functions ─────────────────────────────────────────────────────

def _min(*values: float) -> float:
    if not values:
        return math.inf
    if any(math.isnan(v) for v in values):
        return math.nan
    return min(values)


def _max(*values: float) -> float:
    if not values:
        return -math.inf
    if any(math.isnan(v) for v in values):
        return math.nan
    return max(values)


def _avg(*values: float) -> float:
    if not values:
        return math.nan
    return sum(values) / len(values)


def _clamp(*args: float) -> float:
    if len(args) != 3:
        return math.nan
    value, lo, hi = args
    if not all(math.isfinite(a) for a in args):
        return math.nan
    if lo > hi:
        return math.nan
    return min(max(value, lo), hi)


_FUNCTIONS: dict[str, Callable[..., float]] = {
    "min":   _min,
    "max":   _max,
    "avg":   _avg,
    "clamp": _clamp,
}

_BINARY_OPS: dict[type, Callable[[float, float], float]] = {
    ast.Add:  operator.add,
    ast.Sub:  operator.sub,
    ast.Mult: operator.mul,
    ast.Div:  operator.truediv,
}

_UNARY_OPS: dict[type, Callable[[float], float]] = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}


# ── Validation ────────────────────────────────────────────────────────────────

def _finite_literal(value: Union[int, float]) -> bool:
    try:
        return math.isfinite(float(value))
    except OverflowError:
        return False


class _Inspector:
    """Single depth-first pass collecting syntax errors, names and calls."""

    def __init__(self) -> None:
        self.syntax_errors: list[str] = []
        self.variables: list[str] = []
        self.functions: list[str] = []
        self.has_zero_literal = False

    def visit(self, node: ast.AST) -> None:
        if isinstance(node, ast.Expression):
            self.visit(node.body)
        elif isinstance(node, ast.Constant):
            if isinstance(node.value, bool) or not isinstance(node.value, (int, float)):
                self._unsupported(f"literal {node.value!r}")
            elif not _finite_literal(node.value):
                message = "Numeric literal is out of range"
                if message not in self.syntax_errors:
                    self.syntax_errors.append(message)
            elif node.value == 0:
                self.has_zero_literal = True
        elif isinstance(node, ast.Name):
            if node.id not in self.variables:
                self.variables.append(node.id)
        elif isinstance(node, ast.BinOp):
            if type(node.op) not in _BINARY_OPS:
                self._unsupported(f"operator '{_op_symbol(node.op)}'")
            self.visit(node.left)
            self.visit(node.right)
        elif isinstance(node, ast.UnaryOp):
            if type(node.op) not in _UNARY_OPS:
                self._unsupported(f"operator '{_op_symbol(node.op)}'")
            self.visit(node.operand)
        elif isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name):
                self._unsupported("call target")
            elif node.func.id not in self.functions:
                self.functions.append(node.func.id)
            if node.keywords:
                self._unsupported("keyword arguments")
            for arg in node.args:
                if isinstance(arg, ast.Starred):
                    self._unsupported("argument unpacking")
                else:
                    self.visit(arg)
        else:
            self._unsupported(type(node).__name__)

    def _unsupported(self, what: str) -> None:
        message = f"Unsupported syntax: {what}"
        if message not in self.syntax_errors:
            self.syntax_errors.append(message)


def _op_symbol(op: ast.AST) -> str:
    symbols = {
        ast.Pow: "**", ast.Mod: "%", ast.FloorDiv: "//", ast.MatMult: "@",
        ast.BitXor: "^", ast.BitAnd: "&", ast.BitOr: "|",
        ast.LShift: "<<", ast.RShift: ">>", ast.Not: "not", ast.Invert: "~",
    }
    return symbols.get(type(op), type(op).__name__)


def _parse(expression: str) -> ast.Expression:
    return ast.parse(expression, mode="eval")


def validate_expression(expression: object) -> ValidationResult:
    """Validate a formula expression against the grammar and whitelists.

    Never raises. Invalid expressions always carry at least one error.

    Args:
        expression: Candidate expression. Non-string input is invalid.

    Returns:
        ``ValidationResult`` with errors, warnings and referenced variables.
    """
    if not isinstance(expression, str) or not expression.strip():
        return ValidationResult(valid=False, errors=["Expression is required"])

    trimmed = expression.strip()
    errors: list[str] = []
    warnings: list[str] = []

    if len(trimmed) > FORMULA_MAX_LENGTH:
        errors.append(f"Expression exceeds {FORMULA_MAX_LENGTH} characters")

    inspector = _Inspector()
    try:
        inspector.visit(_parse(trimmed))
    except RecursionError:
        errors.append("Expression is too deeply nested")
        return ValidationResult(valid=False, errors=errors)
    except (SyntaxError, ValueError, MemoryError):
        errors.append("Expression could not be parsed")
        return ValidationResult(valid=False, errors=errors)

    errors.extend(inspector.syntax_errors)

    unknown_vars = [v for v in inspector.variables if v not in ALLOWED_VARIABLES]
    if unknown_vars:
        errors.append(f"Unknown variables: {', '.join(unknown_vars)}")

    unknown_fns = [f for f in inspector.functions if f not in ALLOWED_FUNCTIONS]
    if unknown_fns:
        errors.append(f"Unknown functions: {', '.join(unknown_fns)}")

    if not any(v in GROWTH_VARIABLES for v in inspector.variables):
        errors.append("Formula must reference at least one growth metric")

    if inspector.has_zero_literal:
        warnings.append(
            "Contains literal zero; ensure denominators are not zero at runtime"
        )

    return ValidationResult(
        valid=not errors,
        errors=errors,
        warnings=warnings,
        variables=inspector.variables,
    )


# ── Compilation ───────────────────────────────────────────────────────────────

class CompiledExpression:
    """A validated expression compiled to a pure callable.

    Attributes:
        expression: The trimmed source expression.
        variables: Distinct variables referenced, in order of appearance.
    """

    def __init__(self, expression: str, root: _Node, variables: list[str]) -> None:
        self.expression = expression
        self.variables = tuple(variables)
        self._root = root

    def evaluate(self, context: Context) -> Optional[float]:
        """Evaluate against ``context``; ``None`` on any evaluation failure."""
        try:
            result = self._root(context)
        except (_MissingVariable, ArithmeticError, TypeError, ValueError):
            return None
        if not isinstance(result, (int, float)) or not math.isfinite(result):
            return None
        return float(result)

    def __repr__(self) -> str:
        return f"CompiledExpression({self.expression!r})"


def _compile_node(node: ast.AST) -> _Node:
    if isinstance(node, ast.Expression):
        return _compile_node(node.body)

    if isinstance(node, ast.Constant):
        value = float(node.value)
        return lambda ctx: value

    if isinstance(node, ast.Name):
        name = node.id

        def lookup(ctx: Context) -> float:
            value = ctx.get(name)
            if value is None:
                raise _MissingVariable(name)
            return value

        return lookup

    if isinstance(node, ast.BinOp):
        bin_op = _BINARY_OPS[type(node.op)]
        left = _compile_node(node.left)
        right = _compile_node(node.right)
        return lambda ctx: bin_op(left(ctx), right(ctx))

    if isinstance(node, ast.UnaryOp):
        unary_op = _UNARY_OPS[type(node.op)]
        operand = _compile_node(node.operand)
        return lambda ctx: unary_op(operand(ctx))

    if isinstance(node, ast.Call):
        assert isinstance(node.func, ast.Name)
        fn = _FUNCTIONS[node.func.id]
        args = [_compile_node(a) for a in node.args]
        return lambda ctx: fn(*(a(ctx) for a in args))

    raise FormulaSyntaxError([f"Unsupported syntax: {type(node).__name__}"])


def compile_expression(expression: str) -> CompiledExpression:
    """Validate and compile an expression.

    Raises:
        FormulaSyntaxError: If ``validate_expression`` reports any error.
    """
    result = validate_expression(expression)
    if not result.valid:
        raise FormulaSyntaxError(result.errors)
    return _compile_cached(expression.strip())


@lru_cache(maxsize=256)
def _compile_cached(trimmed: str) -> CompiledExpression:
    try:
        root = _compile_node(_parse(trimmed))
    except RecursionError as exc:
        raise FormulaSyntaxError(["Expression is too deeply nested"]) from exc
    except OverflowError as exc:
        raise FormulaSyntaxError(["Numeric literal is out of range"]) from exc
    return CompiledExpression(trimmed, root, validate_expression(trimmed).variables)


def evaluate(
    expression: Union[str, CompiledExpression],
    context: Context,
) -> Optional[float]:
    """Evaluate an expression string or compiled expression.

    Returns ``None`` for invalid expressions as well as evaluation failures.
    """
    if isinstance(expression, str):
        try:
            expression = compile_expression(expression)
        except FormulaSyntaxError:
            return None
    return expression.evaluate(context)


# ── Instrument context ────────────────────────────────────────────────────────

_REQUIRED_GROWTH = ("growth_1m", "growth_3m", "growth_6m", "growth_12m")


def build_context(snapshot: InstrumentSnapshot) -> Optional[dict[str, Optional[float]]]:
    """Map a snapshot onto formula variables.

    Returns ``None`` when any of the 1M, 3M (after derivation), 6M or 12M
    growth values is absent. Optional inputs (1D, 5D, price, market cap) may
    be ``None``; formulas that reference them then fail to evaluate.
    """
    snap = snapshot.with_derived_growth_3m()
    if any(getattr(snap, field) is None for field in _REQUIRED_GROWTH):
        return None
    return {name: getattr(snap, field) for name, field in VARIABLE_FIELDS.items()}


def normalize_formula(formula: Optional[Formula]) -> Formula:
    """Fill unset parts of ``formula`` from the built-in default.

    ``None`` resolves to the default formula itself.
    """
    if formula is None:
        return DEFAULT_FORMULA
    return formula.model_copy(
        update={
            "formula_id": formula.formula_id or DEFAULT_FORMULA_ID,
            "name": formula.name or DEFAULT_FORMULA.name,
            "expression": (formula.expression or "").strip() or DEFAULT_FORMULA.expression,
            "version": formula.version or DEFAULT_FORMULA.version,
        }
    )


def calculate_score(
    snapshot: InstrumentSnapshot,
    formula: Optional[Formula] = None,
) -> Optional[float]:
    """Score one snapshot; ``None`` when it cannot be scored."""
    context = build_context(snapshot)
    if context is None:
        return None
    return evaluate(normalize_formula(formula).expression, context)
