"""
Tests for pulse_badges/formulas/service.py — lifecycle rules and the
active-formula cache.
"""

from __future__ import annotations

import pytest

from pulse_badges.formulas.constants import DEFAULT_FORMULA, DEFAULT_FORMULA_ID
from pulse_badges.formulas.service import (
    ActiveFormulaCache,
    FormulaService,
    FormulaValidationError,
)


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


# ── Lifecycle ──────────────────────────────────────────────────────────────────

class TestCreateAndUpdate:
    def test_create_defaults_to_draft(self, in_memory_db):
        formula = FormulaService(in_memory_db).create("Momentum", "  g6m - g1m ")
        assert formula.status == "draft"
        assert formula.version == 1
        assert formula.expression == "g6m - g1m"

    def test_create_published(self, in_memory_db):
        formula = FormulaService(in_memory_db).create("M", "g6m", publish=True)
        assert formula.is_published

    def test_create_rejects_invalid_expression(self, in_memory_db):
        with pytest.raises(FormulaValidationError) as exc_info:
            FormulaService(in_memory_db).create("Bad", "g1m ** 2")
        assert exc_info.value.errors

    def test_create_rejects_out_of_range_literal(self, in_memory_db):
        with pytest.raises(FormulaValidationError) as exc_info:
            FormulaService(in_memory_db).create("Big", "g1m + 1" + "0" * 320, publish=True)
        assert "Numeric literal is out of range" in exc_info.value.errors

    def test_create_requires_name(self, in_memory_db):
        with pytest.raises(FormulaValidationError) as exc_info:
            FormulaService(in_memory_db).create("  ", "g1m")
        assert "Name is required" in exc_info.value.errors

    def test_expression_change_bumps_version(self, in_memory_db):
        service = FormulaService(in_memory_db)
        formula = service.create("M", "g6m")
        updated = service.update(formula.formula_id, expression="g6m + g1m")
        assert updated.version == 2
        assert service.get(formula.formula_id).version == 2

    def test_rename_keeps_version(self, in_memory_db):
        service = FormulaService(in_memory_db)
        formula = service.create("M", "g6m")
        updated = service.update(formula.formula_id, name="Renamed", expression=" g6m ")
        assert updated.version == 1
        assert updated.name == "Renamed"

    def test_update_unknown_raises_key_error(self, in_memory_db):
        with pytest.raises(KeyError):
            FormulaService(in_memory_db).update("missing", name="x")

    def test_archived_formula_cannot_be_edited(self, in_memory_db):
        service = FormulaService(in_memory_db)
        formula = service.create("M", "g6m")
        service.archive(formula.formula_id)
        with pytest.raises(FormulaValidationError):
            service.update(formula.formula_id, name="Again")


class TestPublishArchiveActivate:
    def test_draft_cannot_be_active(self, in_memory_db):
        service = FormulaService(in_memory_db)
        formula = service.create("M", "g6m")
        with pytest.raises(FormulaValidationError):
            service.set_active("nasdaq", formula.formula_id)

    def test_publish_then_activate(self, in_memory_db):
        service = FormulaService(in_memory_db)
        formula = service.create("M", "g6m")
        service.publish(formula.formula_id)
        service.set_active("NASDAQ", formula.formula_id)
        assert service.active_formula_id("nasdaq") == formula.formula_id

    def test_active_formula_cannot_be_archived(self, in_memory_db):
        service = FormulaService(in_memory_db)
        formula = service.create("M", "g6m", publish=True)
        service.set_active("tlv", formula.formula_id)
        with pytest.raises(FormulaValidationError) as exc_info:
            service.archive(formula.formula_id)
        assert "tlv" in exc_info.value.errors[0]

    def test_list_by_status(self, in_memory_db):
        service = FormulaService(in_memory_db)
        service.create("Draft", "g6m")
        ids = [f.formula_id for f in service.list_formulas("published")]
        assert ids == [DEFAULT_FORMULA_ID]


class TestGetActive:
    def test_unset_market_uses_default(self, in_memory_db):
        assert FormulaService(in_memory_db).get_active("nasdaq") == DEFAULT_FORMULA

    def test_dangling_active_id_uses_default(self, in_memory_db):
        service = FormulaService(in_memory_db)
        service.settings.set_active_formula_id("nasdaq", "vanished")
        assert service.get_active("nasdaq").formula_id == DEFAULT_FORMULA_ID

    def test_set_active_invalidates_cache(self, in_memory_db):
        service = FormulaService(in_memory_db, ActiveFormulaCache(ttl_s=300))
        assert service.get_active("nasdaq").formula_id == DEFAULT_FORMULA_ID

        formula = service.create("M", "g6m", publish=True)
        service.set_active("nasdaq", formula.formula_id)
        assert service.get_active("nasdaq").formula_id == formula.formula_id

    def test_external_write_is_hidden_until_ttl_expires(self, in_memory_db):
        clock = _Clock()
        service = FormulaService(in_memory_db, ActiveFormulaCache(ttl_s=300, clock=clock))
        formula = service.create("M", "g6m", publish=True)
        assert service.get_active("nasdaq").formula_id == DEFAULT_FORMULA_ID

        # Another process switches the formula directly in the table.
        service.settings.set_active_formula_id("nasdaq", formula.formula_id)
        clock.now = 299.0
        assert service.get_active("nasdaq").formula_id == DEFAULT_FORMULA_ID
        clock.now = 300.0
        assert service.get_active("nasdaq").formula_id == formula.formula_id


class TestActiveFormulaCache:
    def test_zero_ttl_disables_caching(self):
        cache = ActiveFormulaCache(ttl_s=0)
        cache.put("nasdaq", DEFAULT_FORMULA)
        assert cache.get("nasdaq") is None

    def test_invalidate_single_market(self):
        cache = ActiveFormulaCache(ttl_s=60, clock=_Clock())
        cache.put("nasdaq", DEFAULT_FORMULA)
        cache.put("tlv", DEFAULT_FORMULA)
        cache.invalidate("nasdaq")
        assert cache.get("nasdaq") is None
        assert cache.get("tlv") is DEFAULT_FORMULA

    def test_invalidate_all(self):
        cache = ActiveFormulaCache(ttl_s=60, clock=_Clock())
        cache.put("nasdaq", DEFAULT_FORMULA)
        cache.invalidate()
        assert cache.get("nasdaq") is None
