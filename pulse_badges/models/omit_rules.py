"""
Omit-rule configuration models.

An ``OmitRuleSet`` holds, per market, a list of ``{field, min?, max?}`` gates
on raw snapshot fields. Rules are applied as a conjunction; a rule whose
field is absent on an instrument does not apply to it.

Field names use the camelCase keys stored in settings (``marketCap``,
``growth1m`` ...) and map onto ``InstrumentSnapshot`` attributes through
``OMIT_RULE_FIELDS``.
"""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, model_validator

OmitRuleField = Literal[
    "price", "marketCap", "growth1d", "growth5d", "growth1m", "growth6m", "growth12m"
]

OMIT_RULE_FIELDS: dict[str, str] = {
    "price":     "price",
    "marketCap": "market_cap",
    "growth1d":  "growth_1d",
    "growth5d":  "growth_5d",
    "growth1m":  "growth_1m",
    "growth6m":  "growth_6m",
    "growth12m": "growth_12m",
}


class OmitRule(BaseModel):
    """A single min/max gate. Either bound may be omitted."""

    model_config = ConfigDict(frozen=True)

    field: OmitRuleField
    min: Optional[float] = None
    max: Optional[float] = None


class OmitRuleSet(BaseModel):
    """Effective omit-rule configuration across markets."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    rules: dict[str, list[OmitRule]] = {}

    @model_validator(mode="after")
    def normalize_markets(self) -> "OmitRuleSet":
        lowered = {market.strip().lower(): rules for market, rules in self.rules.items()}
        object.__setattr__(self, "rules", lowered)
        return self

    def rules_for(self, market: str) -> list[OmitRule]:
        return self.rules.get(market.strip().lower(), [])
