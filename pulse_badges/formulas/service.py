"""
Formula lifecycle: create, edit, publish, archive and activate formulas.

Rules enforced here:
  - Every stored expression has passed ``validate_expression``.
  - ``version`` increases by one whenever the expression text changes.
  - Only published formulas may be set active for a market, and an active
    formula cannot be archived.
  - A market without an active formula (or whose active formula vanished)
    scores with the built-in default.

``ActiveFormulaCache`` keeps each market's active formula for ``ttl_s``
seconds. It is an explicit object owned by the service, and every write
through the service invalidates it, so the only staleness left is writes
made by another process.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Optional
from uuid import uuid4

from pulse_badges.db.repositories.formula_repo import (
    FormulaRepository,
    MarketSettingsRepository,
)
from pulse_badges.formulas.constants import DEFAULT_FORMULA
from pulse_badges.formulas.engine import normalize_formula, validate_expression
from pulse_badges.models.formula import Formula, ValidationResult
from pulse_badges.utils.time_utils import utcnow

logger = logging.getLogger(__name__)


class FormulaValidationError(ValueError):
    """A formula write was rejected; ``errors`` holds the reasons."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors))
        self.errors = errors


# ── Active-formula cache ──────────────────────────────────────────────────────

@dataclass
class _CacheEntry:
    formula: Formula
    stored_at: float


class ActiveFormulaCache:
    """Per-market active formula with a time-to-live.

    Args:
        ttl_s: Seconds an entry stays fresh. ``0`` disables caching.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        ttl_s: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_s = ttl_s
        self._clock = clock
        self._entries: dict[str, _CacheEntry] = {}

    def get(self, market: str) -> Optional[Formula]:
        entry = self._entries.get(market)
        if entry is None:
            return None
        if self._clock() - entry.stored_at >= self.ttl_s:
            del self._entries[market]
            return None
        return entry.formula

    def put(self, market: str, formula: Formula) -> None:
        if self.ttl_s > 0:
            self._entries[market] = _CacheEntry(formula, self._clock())

    def invalidate(self, market: Optional[str] = None) -> None:
        """Drop one market's entry, or every entry when ``market`` is None."""
        if market is None:
            self._entries.clear()
        else:
            self._entries.pop(market, None)


# ── Service ───────────────────────────────────────────────────────────────────

class FormulaService:
    """Formula CRUD and activation on top of the SQLite repositories.

    Args:
        conn: Open SQLite connection.
        cache: Active-formula cache; a fresh 5-minute cache when omitted.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        cache: Optional[ActiveFormulaCache] = None,
    ) -> None:
        self.formulas = FormulaRepository(conn)
        self.settings = MarketSettingsRepository(conn)
        self.cache = cache if cache is not None else ActiveFormulaCache()

    @staticmethod
    def validate(expression: object) -> ValidationResult:
        return validate_expression(expression)

    def get(self, formula_id: str) -> Optional[Formula]:
        return self.formulas.get(formula_id)

    def require(self, formula_id: str) -> Formula:
        formula = self.formulas.get(formula_id)
        if formula is None:
            raise KeyError(f"Unknown formula: {formula_id}")
        return formula

    def list_formulas(self, status: Optional[str] = None) -> list[Formula]:
        return self.formulas.list_formulas(status)

    def create(
        self,
        name: str,
        expression: str,
        description: Optional[str] = None,
        notes: Optional[dict[str, Any]] = None,
        publish: bool = False,
        created_by: Optional[str] = None,
    ) -> Formula:
        """Validate and store a new formula (draft unless ``publish``).

        Raises:
            FormulaValidationError: Blank name or invalid expression.
        """
        self._check(name, expression)
        formula = Formula(
            formula_id=str(uuid4()),
            name=name.strip(),
            description=description,
            expression=expression.strip(),
            status="published" if publish else "draft",
            version=1,
            notes=notes,
            created_by=created_by,
            updated_by=created_by,
        )
        stored = self.formulas.insert(formula)
        logger.info(
            "Created formula %s (%s) status=%s", stored.formula_id, stored.name, stored.status
        )
        return stored

    def update(
        self,
        formula_id: str,
        name: Optional[str] = None,
        expression: Optional[str] = None,
        description: Optional[str] = None,
        notes: Optional[dict[str, Any]] = None,
        updated_by: Optional[str] = None,
    ) -> Formula:
        """Edit a formula; a changed expression bumps ``version``.

        Raises:
            KeyError: Unknown ``formula_id``.
            FormulaValidationError: Archived formula, blank name or invalid
                expression.
        """
        current = self.require(formula_id)
        if current.status == "archived":
            raise FormulaValidationError(["Archived formulas cannot be edited"])

        new_name = name if name is not None else current.name
        new_expression = expression.strip() if expression is not None else current.expression
        self._check(new_name, new_expression)

        changed = new_expression != current.expression
        updated = current.model_copy(
            update={
                "name": new_name.strip(),
                "expression": new_expression,
                "description": description if description is not None else current.description,
                "notes": notes if notes is not None else current.notes,
                "version": current.version + 1 if changed else current.version,
                "updated_by": updated_by,
                "updated_at": utcnow(),
            }
        )
        stored = self.formulas.update(updated)
        self.cache.invalidate()
        logger.info("Updated formula %s -> v%d", formula_id, stored.version)
        return stored

    def publish(self, formula_id: str, updated_by: Optional[str] = None) -> Formula:
        """Re-validate and publish a draft or archived formula."""
        current = self.require(formula_id)
        self._check(current.name, current.expression)
        stored = self.formulas.update(
            current.model_copy(
                update={"status": "published", "updated_by": updated_by, "updated_at": utcnow()}
            )
        )
        self.cache.invalidate()
        logger.info("Published formula %s v%d", formula_id, stored.version)
        return stored

    def archive(self, formula_id: str, updated_by: Optional[str] = None) -> Formula:
        """Archive a formula that no market uses.

        Raises:
            FormulaValidationError: The formula is active for some market.
        """
        current = self.require(formula_id)
        in_use = sorted(
            market for market, active_id in self.settings.list_active().items()
            if active_id == formula_id
        )
        if in_use:
            raise FormulaValidationError(
                [f"Formula is active for: {', '.join(in_use)}"]
            )
        stored = self.formulas.update(
            current.model_copy(
                update={"status": "archived", "updated_by": updated_by, "updated_at": utcnow()}
            )
        )
        self.cache.invalidate()
        logger.info("Archived formula %s", formula_id)
        return stored

    def set_active(
        self,
        market: str,
        formula_id: str,
        updated_by: Optional[str] = None,
    ) -> Formula:
        """Make a published formula the active one for ``market``.

        Returns:
            The newly active formula.
        """
        market = market.strip().lower()
        formula = self.require(formula_id)
        if not formula.is_published:
            raise FormulaValidationError(
                [f"Only published formulas can be active (status={formula.status})"]
            )
        self.settings.set_active_formula_id(market, formula_id, updated_by)
        self.cache.invalidate(market)
        logger.info("Market %s now uses formula %s v%d", market, formula_id, formula.version)
        return formula

    def active_formula_id(self, market: str) -> Optional[str]:
        return self.settings.get_active_formula_id(market.strip().lower())

    def get_active(self, market: str) -> Formula:
        """Active formula of ``market``, falling back to the built-in default.

        Served from the cache while fresh.
        """
        market = market.strip().lower()
        cached = self.cache.get(market)
        if cached is not None:
            return cached

        formula: Optional[Formula] = None
        active_id = self.settings.get_active_formula_id(market)
        if active_id:
            formula = self.formulas.get(active_id)
            if formula is None:
                logger.warning(
                    "Active formula %s for %s not found; using default.", active_id, market
                )
        resolved = normalize_formula(formula) if formula is not None else DEFAULT_FORMULA
        self.cache.put(market, resolved)
        return resolved

    @staticmethod
    def _check(name: str, expression: str) -> None:
        errors: list[str] = []
        if not name or not name.strip():
            errors.append("Name is required")
        result = validate_expression(expression)
        errors.extend(result.errors)
        if errors:
            raise FormulaValidationError(errors)
