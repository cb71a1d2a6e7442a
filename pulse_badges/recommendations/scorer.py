"""
Formula scoring: annotate every snapshot with the score a formula gives it.

``score_all`` is total. A snapshot missing required growth data, a formula
that fails validation, or an evaluation that is non-finite all yield
``score=None``; nothing raises and no NaN or infinity reaches the output.

The formula is normalized (blank parts fall back to the built-in default)
and compiled once per call, then evaluated against each snapshot.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Optional

from pulse_badges.formulas.engine import (
    CompiledExpression,
    FormulaSyntaxError,
    build_context,
    compile_expression,
    normalize_formula,
)
from pulse_badges.models.formula import Formula
from pulse_badges.models.instrument import InstrumentSnapshot, ScoredSnapshot

logger = logging.getLogger(__name__)


def _compile_or_none(formula: Formula) -> Optional[CompiledExpression]:
    try:
        return compile_expression(formula.expression)
    except FormulaSyntaxError as exc:
        logger.warning(
            "Formula %s v%d is invalid; no instrument will be scored: %s",
            formula.formula_id, formula.version, exc,
        )
        return None


def score_snapshot(
    snapshot: InstrumentSnapshot,
    compiled: Optional[CompiledExpression],
) -> Optional[float]:
    """Score one snapshot with an already compiled expression."""
    if compiled is None:
        return None
    context = build_context(snapshot)
    if context is None:
        return None
    return compiled.evaluate(context)


def score_all(
    snapshots: Iterable[InstrumentSnapshot],
    formula: Optional[Formula],
) -> list[ScoredSnapshot]:
    """Score every snapshot with ``formula``.

    Args:
        snapshots: Snapshots to score (3M growth is derived on the fly when
            missing).
        formula: Formula to apply; ``None`` means the built-in default.

    Returns:
        One ``ScoredSnapshot`` per input, in input order.
    """
    resolved = normalize_formula(formula)
    compiled = _compile_or_none(resolved)
    return [
        ScoredSnapshot(
            snapshot=snap,
            score=score_snapshot(snap, compiled),
            formula_id=resolved.formula_id,
            formula_version=resolved.version,
        )
        for snap in snapshots
    ]
