"""Stock ledger: append-only entries, causation idempotency, projection upsert."""

import pytest

from procurement_kernel.exceptions import DuplicateCausationError
from procurement_kernel.services.stock_ledger_service import StockLedgerService


@pytest.fixture
def ledger(session):
    return StockLedgerService(session)


class TestAppend:

    def test_first_append_creates_projection(self, ledger):
        result = ledger.append("SKU-1", 10, "c-1")
        assert (result.previous_stock, result.new_stock) == (0, 10)
        assert ledger.current_stock("SKU-1") == 10

    def test_appends_accumulate(self, ledger):
        ledger.append("SKU-1", 10, "c-1")
        result = ledger.append("SKU-1", 5, "c-2")
        assert (result.previous_stock, result.new_stock) == (10, 15)
        assert ledger.current_stock("SKU-1") == 15

    def test_products_are_independent(self, ledger):
        ledger.append("SKU-1", 10, "c-1")
        ledger.append("SKU-2", 3, "c-2")
        assert ledger.current_stock("SKU-1") == 10
        assert ledger.current_stock("SKU-2") == 3

    def test_negative_delta_allowed(self, ledger):
        ledger.append("SKU-1", 10, "c-1")
        result = ledger.append("SKU-1", -4, "c-2", reason="adjustment")
        assert result.new_stock == 6

    def test_zero_delta_rejected(self, ledger):
        with pytest.raises(ValueError):
            ledger.append("SKU-1", 0, "c-1")

    def test_unknown_product_has_zero_stock(self, ledger):
        assert ledger.current_stock("SKU-NONE") == 0


class TestCausationIdempotency:

    def test_duplicate_causation_raises_with_original_figures(self, ledger):
        ledger.append("SKU-1", 10, "c-1")
        ledger.append("SKU-1", 2, "c-2")
        with pytest.raises(DuplicateCausationError) as exc_info:
            ledger.append("SKU-1", 10, "c-1")
        assert exc_info.value.previous_stock == 0
        assert exc_info.value.new_stock == 10
        assert ledger.current_stock("SKU-1") == 12

    def test_duplicate_writes_nothing(self, ledger):
        ledger.append("SKU-1", 10, "c-1")
        with pytest.raises(DuplicateCausationError):
            ledger.append("SKU-1", 10, "c-1")
        assert len(ledger.entries_for("SKU-1")) == 1

    def test_entries_for_lists_movements(self, ledger):
        ledger.append("SKU-1", 10, "c-1")
        ledger.append("SKU-1", 5, "c-2")
        entries = ledger.entries_for("SKU-1")
        assert [e.causation_id for e in entries] == ["c-1", "c-2"]
        assert all(e.new_stock == e.previous_stock + e.delta for e in entries)
