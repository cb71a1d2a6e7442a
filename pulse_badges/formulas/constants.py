"""
Constants for recommendation formulas: the built-in default formula and the
variable / function whitelist shared by the validator and the evaluator.
"""

from __future__ import annotations

from pulse_badges.models.formula import Formula

DEFAULT_FORMULA_ID = "00000000-0000-0000-0000-000000000001"

DEFAULT_FORMULA = Formula(
    formula_id=DEFAULT_FORMULA_ID,
    name="Acceleration v1",
    description=(
        "Weighted acceleration of growth across 5D/1M/6M/12M "
        "with average growth multiplier."
    ),
    expression=(
        "(3*(g1m-g5d)/25 + 2*(g6m-g1m)/150 + (g12m-g6m)/182) * avg(g5d,g1m,g6m,g12m)"
    ),
    status="published",
    version=1,
    notes={"seeded": True},
)

# Identifier → InstrumentSnapshot attribute. g3m is deliberately not exposed.
VARIABLE_FIELDS: dict[str, str] = {
    "g1d":       "growth_1d",
    "growth1d":  "growth_1d",
    "g5d":       "growth_5d",
    "growth5d":  "growth_5d",
    "g1m":       "growth_1m",
    "growth1m":  "growth_1m",
    "g6m":       "growth_6m",
    "growth6m":  "growth_6m",
    "g12m":      "growth_12m",
    "growth12m": "growth_12m",
    "price":     "price",
    "marketCap": "market_cap",
}

ALLOWED_VARIABLES: frozenset[str] = frozenset(VARIABLE_FIELDS)

GROWTH_VARIABLES: frozenset[str] = ALLOWED_VARIABLES - {"price", "marketCap"}

ALLOWED_FUNCTIONS: frozenset[str] = frozenset({"min", "max", "avg", "clamp"})

FORMULA_MAX_LENGTH = 2000
