"""
Instrument snapshot models.

``InstrumentSnapshot`` is one row of the market-data cache: price, market
capitalization and growth percentages over several lookback windows for a
single symbol. The cache is produced by an ingestion job outside this
package; everything here only reads it.

``ScoredSnapshot`` couples a snapshot with the score a formula assigned it.
It is a transient view and is never persisted.

Growth values that are missing or non-finite (NaN / Infinity) are stored as
``None`` so downstream code has a single "absent" representation.
"""

from __future__ import annotations

import math
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, field_validator

GROWTH_FIELDS: tuple[str, ...] = (
    "growth_1d",
    "growth_5d",
    "growth_1m",
    "growth_3m",
    "growth_6m",
    "growth_12m",
)


def normalize_symbol(symbol: str) -> str:
    """Canonical symbol form: stripped, upper case."""
    return symbol.strip().upper()


class InstrumentSnapshot(BaseModel):
    """Point-in-time market data for one symbol.

    Attributes:
        symbol: Ticker, unique within a market (normalized to upper case).
        market: Market identifier, e.g. ``"nasdaq"`` or ``"tlv"``.
        name: Company name, used in generated analyses.
        price: Last price.
        market_cap: Market capitalization, or ``None`` if unknown.
        growth_1d .. growth_12m: Growth percentages per lookback window.
        sector, industry, description: Optional profile data.
    """

    model_config = ConfigDict(frozen=True)

    symbol: str
    market: str
    name: Optional[str] = None
    price: Optional[float] = None
    market_cap: Optional[float] = None
    growth_1d: Optional[float] = None
    growth_5d: Optional[float] = None
    growth_1m: Optional[float] = None
    growth_3m: Optional[float] = None
    growth_6m: Optional[float] = None
    growth_12m: Optional[float] = None
    sector: Optional[str] = None
    industry: Optional[str] = None
    description: Optional[str] = None

    @field_validator("symbol")
    @classmethod
    def validate_symbol(cls, v: str) -> str:
        v = normalize_symbol(v)
        if not v:
            raise ValueError("symbol must be non-empty.")
        return v

    @field_validator("market")
    @classmethod
    def validate_market(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator(
        "price", "market_cap", *GROWTH_FIELDS, mode="before"
    )
    @classmethod
    def finite_or_none(cls, v: object) -> Optional[float]:
        if v is None:
            return None
        try:
            value = float(v)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return None
        return value if math.isfinite(value) else None

    def with_derived_growth_3m(self) -> "InstrumentSnapshot":
        """Return a copy whose missing 3-month growth is derived from 1M and 6M.

        The derived value is the mean of ``growth_1m`` and ``growth_6m``. The
        snapshot is returned unchanged if 3M growth is already present or if
        either input is missing.
        """
        if self.growth_3m is not None:
            return self
        if self.growth_1m is None or self.growth_6m is None:
            return self
        return self.model_copy(
            update={"growth_3m": (self.growth_1m + self.growth_6m) / 2}
        )

    def metrics(self) -> dict[str, Any]:
        """Fields handed to the analysis generator, keyed by attribute name."""
        return self.model_dump(exclude={"symbol", "name"})


class ScoredSnapshot(BaseModel):
    """A snapshot annotated with a formula score.

    ``score`` is ``None`` when the snapshot could not be scored (missing
    growth data, an invalid formula, or a non-finite result).
    """

    model_config = ConfigDict(frozen=True)

    snapshot: InstrumentSnapshot
    score: Optional[float] = None
    formula_id: str
    formula_version: int

    @property
    def symbol(self) -> str:
        return self.snapshot.symbol

    @property
    def is_recommended(self) -> bool:
        return self.score is not None and math.isfinite(self.score) and self.score > 0
