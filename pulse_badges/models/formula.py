"""
Recommendation formula models.

A ``Formula`` is a user-editable arithmetic expression over growth, price and
market-cap variables. Its lifecycle is ``draft → published → archived``; only
published formulas may be set active for a market, and a published formula's
expression has always passed validation.

``version`` increases monotonically each time the expression changes.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

FormulaStatus = Literal["draft", "published", "archived"]
VALID_FORMULA_STATUSES: frozenset[str] = frozenset({"draft", "published", "archived"})


class Formula(BaseModel):
    """A named scoring expression.

    Attributes:
        formula_id: UUID string primary key.
        name: Display name.
        description: Optional longer description.
        expression: The arithmetic expression (see ``formulas.engine``).
        status: Lifecycle status.
        version: Monotonic version, starting at 1.
        notes: Free-form metadata.
        created_by / updated_by: Actor identifiers, if known.
        created_at / updated_at: UTC timestamps.
    """

    model_config = ConfigDict(frozen=True)

    formula_id: str
    name: str
    description: Optional[str] = None
    expression: str
    status: FormulaStatus = "draft"
    version: int = Field(default=1, ge=1)
    notes: Optional[dict[str, Any]] = None
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_published(self) -> bool:
        return self.status == "published"


class ValidationResult(BaseModel):
    """Outcome of validating a formula expression.

    ``valid`` is ``True`` iff ``errors`` is empty. ``variables`` lists the
    distinct identifiers referenced, in order of first appearance.
    """

    model_config = ConfigDict(frozen=True)

    valid: bool
    errors: list[str] = []
    warnings: list[str] = []
    variables: list[str] = []
