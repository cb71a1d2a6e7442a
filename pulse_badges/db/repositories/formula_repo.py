"""
Repositories for recommendation formulas and the settings that reference them.

  - ``FormulaRepository``: ``recommendation_formulas`` rows.
  - ``MarketSettingsRepository``: the active formula per market.
  - ``OmitRuleSettingsRepository``: the single omit-rule settings row.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime
from typing import Optional

from pulse_badges.db.repositories.base import BaseRepository
from pulse_badges.models.formula import Formula
from pulse_badges.models.omit_rules import OmitRuleSet
from pulse_badges.utils.time_utils import format_timestamp, parse_timestamp, utcnow

logger = logging.getLogger(__name__)


def _row_to_formula(row: sqlite3.Row) -> Formula:
    return Formula(
        formula_id=row["formula_id"],
        name=row["name"],
        description=row["description"],
        expression=row["expression"],
        status=row["status"],
        version=row["version"],
        notes=json.loads(row["notes"]) if row["notes"] else None,
        created_by=row["created_by"],
        updated_by=row["updated_by"],
        created_at=parse_timestamp(row["created_at"]),
        updated_at=parse_timestamp(row["updated_at"]),
    )


class FormulaRepository(BaseRepository):
    """Read/write access to ``recommendation_formulas``."""

    def insert(self, formula: Formula) -> Formula:
        """Insert ``formula`` and return it as stored (timestamps filled)."""
        now = utcnow()
        created_at = formula.created_at or now
        updated_at = formula.updated_at or now
        self.execute(
            """
            INSERT INTO recommendation_formulas (
                formula_id, name, description, expression, status, version,
                notes, created_by, updated_by, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                formula.formula_id,
                formula.name,
                formula.description,
                formula.expression,
                formula.status,
                formula.version,
                json.dumps(formula.notes) if formula.notes is not None else None,
                formula.created_by,
                formula.updated_by,
                format_timestamp(created_at),
                format_timestamp(updated_at),
            ),
        )
        self.commit()
        return formula.model_copy(update={"created_at": created_at, "updated_at": updated_at})

    def update(self, formula: Formula) -> Formula:
        """Overwrite every mutable column of an existing formula.

        Raises:
            KeyError: If no row has ``formula.formula_id``.
        """
        updated_at = formula.updated_at or utcnow()
        cursor = self.execute(
            """
            UPDATE recommendation_formulas
               SET name = ?, description = ?, expression = ?, status = ?,
                   version = ?, notes = ?, updated_by = ?, updated_at = ?
             WHERE formula_id = ?;
            """,
            (
                formula.name,
                formula.description,
                formula.expression,
                formula.status,
                formula.version,
                json.dumps(formula.notes) if formula.notes is not None else None,
                formula.updated_by,
                format_timestamp(updated_at),
                formula.formula_id,
            ),
        )
        if cursor.rowcount == 0:
            raise KeyError(formula.formula_id)
        self.commit()
        return formula.model_copy(update={"updated_at": updated_at})

    def get(self, formula_id: str) -> Optional[Formula]:
        row = self.fetchone(
            "SELECT * FROM recommendation_formulas WHERE formula_id = ?;",
            (formula_id,),
        )
        return _row_to_formula(row) if row else None

    def list_formulas(self, status: Optional[str] = None) -> list[Formula]:
        """List formulas, most recently updated first, optionally by status."""
        if status is None:
            rows = self.fetchall(
                "SELECT * FROM recommendation_formulas ORDER BY updated_at DESC, name;"
            )
        else:
            rows = self.fetchall(
                """
                SELECT * FROM recommendation_formulas
                 WHERE status = ?
                 ORDER BY updated_at DESC, name;
                """,
                (status,),
            )
        return [_row_to_formula(r) for r in rows]


class MarketSettingsRepository(BaseRepository):
    """Read/write access to ``market_settings``."""

    def get_active_formula_id(self, market: str) -> Optional[str]:
        row = self.fetchone(
            "SELECT active_formula_id FROM market_settings WHERE market = ?;",
            (market.strip().lower(),),
        )
        return row["active_formula_id"] if row else None

    def set_active_formula_id(
        self,
        market: str,
        formula_id: Optional[str],
        updated_by: Optional[str] = None,
    ) -> None:
        """Point ``market`` at ``formula_id`` (``None`` clears it)."""
        self.execute(
            """
            INSERT INTO market_settings (market, active_formula_id, updated_by, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(market) DO UPDATE SET
                active_formula_id = excluded.active_formula_id,
                updated_by        = excluded.updated_by,
                updated_at        = excluded.updated_at;
            """,
            (market.strip().lower(), formula_id, updated_by, format_timestamp(utcnow())),
        )
        self.commit()

    def list_active(self) -> dict[str, Optional[str]]:
        rows = self.fetchall(
            "SELECT market, active_formula_id FROM market_settings ORDER BY market;"
        )
        return {r["market"]: r["active_formula_id"] for r in rows}


class OmitRuleSettingsRepository(BaseRepository):
    """Read/write access to the single ``omit_rule_settings`` row."""

    def get(self) -> Optional[OmitRuleSet]:
        """Return the stored rule set, or ``None`` if never configured."""
        row = self.fetchone(
            "SELECT enabled, rules_json FROM omit_rule_settings WHERE settings_id = 1;"
        )
        if row is None:
            return None
        return OmitRuleSet(
            enabled=bool(row["enabled"]),
            rules=json.loads(row["rules_json"] or "{}"),
        )

    def save(
        self,
        rule_set: OmitRuleSet,
        updated_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        rules_json = json.dumps(
            {
                market: [r.model_dump(exclude_none=True) for r in rules]
                for market, rules in rule_set.rules.items()
            },
            sort_keys=True,
        )
        self.execute(
            """
            INSERT INTO omit_rule_settings (settings_id, enabled, rules_json, updated_by, updated_at)
            VALUES (1, ?, ?, ?, ?)
            ON CONFLICT(settings_id) DO UPDATE SET
                enabled    = excluded.enabled,
                rules_json = excluded.rules_json,
                updated_by = excluded.updated_by,
                updated_at = excluded.updated_at;
            """,
            (
                int(rule_set.enabled),
                rules_json,
                updated_by,
                format_timestamp(now or utcnow()),
            ),
        )
        self.commit()
        logger.info(
            "Saved omit rules | enabled=%s | markets=%s",
            rule_set.enabled, sorted(rule_set.rules),
        )
