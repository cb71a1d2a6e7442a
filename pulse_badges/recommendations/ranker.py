"""
Recommendation selector: keep positively scored snapshots and rank them.

Usage flow
----------
1. score_all(snapshots, formula)           (scorer.py)
2. select_recommended(snapshots, formula)  -> scored, filtered, sorted
3. top_symbols(snapshots, formula, omit_rules, market, limit=20)
   -> the daily top-N symbol list, after omit rules

Ties keep their input order: ``sorted`` is stable and the key is the score
alone, so equal scores never reshuffle between runs on identical input.

``is_ascending_growth`` is a separate, simpler policy (strictly rising growth
across 5D < 1M < 6M < 12M, each at least 1%). It can disagree with the
formula on the same instrument and is not used to build badges.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Optional

from pulse_badges.models.formula import Formula
from pulse_badges.models.instrument import (
    InstrumentSnapshot,
    ScoredSnapshot,
    normalize_symbol,
)
from pulse_badges.models.omit_rules import OmitRuleSet
from pulse_badges.recommendations.omit_rules import apply_omit_rules
from pulse_badges.recommendations.scorer import score_all

logger = logging.getLogger(__name__)

DEFAULT_TOP_N = 20

_ASCENDING_MIN_GROWTH = 1.0


def select_recommended(
    snapshots: Iterable[InstrumentSnapshot],
    formula: Optional[Formula],
) -> list[ScoredSnapshot]:
    """Score, keep finite scores > 0, sort descending (stable).

    Args:
        snapshots: Candidate snapshots.
        formula: Formula to apply; ``None`` means the built-in default.

    Returns:
        Recommended snapshots, best first.
    """
    scored = score_all(snapshots, formula)
    recommended = [s for s in scored if s.is_recommended]
    return sorted(recommended, key=lambda s: -s.score)  # type: ignore[operator]


def top_symbols(
    snapshots: Iterable[InstrumentSnapshot],
    formula: Optional[Formula],
    omit_rules: Optional[OmitRuleSet],
    market: str,
    limit: int = DEFAULT_TOP_N,
) -> list[str]:
    """The top-``limit`` recommended symbols of ``market``.

    3M growth is derived where missing, omit rules are applied, the rest are
    scored and ranked. Symbols are normalized and unique, best first.
    """
    prepared = [s.with_derived_growth_3m() for s in snapshots]
    kept = apply_omit_rules(prepared, omit_rules, market)
    ranked = select_recommended(kept, formula)

    symbols: list[str] = []
    seen: set[str] = set()
    for scored in ranked:
        symbol = normalize_symbol(scored.symbol)
        if symbol in seen:
            continue
        seen.add(symbol)
        symbols.append(symbol)
        if len(symbols) >= limit:
            break

    logger.debug(
        "%s: %d snapshots, %d after omit rules, %d recommended, top %d",
        market, len(prepared), len(kept), len(ranked), len(symbols),
    )
    return symbols


def is_ascending_growth(snapshot: InstrumentSnapshot) -> bool:
    """True if 5D < 1M < 6M < 12M growth and every value is at least 1%."""
    sequence = (
        snapshot.growth_5d,
        snapshot.growth_1m,
        snapshot.growth_6m,
        snapshot.growth_12m,
    )
    if any(v is None or v < _ASCENDING_MIN_GROWTH for v in sequence):
        return False
    return all(a < b for a, b in zip(sequence, sequence[1:]))  # type: ignore[operator]
