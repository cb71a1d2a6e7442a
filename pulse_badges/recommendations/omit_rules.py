"""
Omit-rule filter: drop instruments whose raw fields fall outside configured
per-market bounds.

A rule excludes an instrument only when the ruled field is present and lies
outside ``[min, max]``. An absent field never excludes: the rule simply does
not apply to that instrument.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Optional

from pulse_badges.models.instrument import InstrumentSnapshot
from pulse_badges.models.omit_rules import OMIT_RULE_FIELDS, OmitRule, OmitRuleSet

logger = logging.getLogger(__name__)


def violates(snapshot: InstrumentSnapshot, rule: OmitRule) -> bool:
    """True if ``snapshot`` has the ruled field and it is out of bounds."""
    value = getattr(snapshot, OMIT_RULE_FIELDS[rule.field])
    if value is None:
        return False
    if rule.min is not None and value < rule.min:
        return True
    if rule.max is not None and value > rule.max:
        return True
    return False


def apply_omit_rules(
    snapshots: Iterable[InstrumentSnapshot],
    rule_set: Optional[OmitRuleSet],
    market: str,
) -> list[InstrumentSnapshot]:
    """Filter ``snapshots`` through the rules configured for ``market``.

    A ``None`` or disabled rule set, or a market with no rules, passes every
    snapshot through unchanged. Order is preserved.

    Args:
        snapshots: Candidate snapshots.
        rule_set: Effective omit-rule configuration.
        market: Market whose rules apply.

    Returns:
        Snapshots that satisfy every applicable rule.
    """
    snapshots = list(snapshots)
    if rule_set is None or not rule_set.enabled:
        return snapshots
    rules = rule_set.rules_for(market)
    if not rules:
        return snapshots

    kept = [s for s in snapshots if not any(violates(s, r) for r in rules)]
    if len(kept) != len(snapshots):
        logger.debug(
            "Omit rules for %s excluded %d of %d instruments",
            market, len(snapshots) - len(kept), len(snapshots),
        )
    return kept
