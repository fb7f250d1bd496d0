"""
End-to-end purchase order scenarios through ``PurchaseOrderService``.

Covers authoring, the full happy path, cancellation with open intents,
and the query surface.
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from procurement_kernel.domain.dtos import NewItem
from procurement_kernel.domain.lifecycle import OrderStatus, PaymentStatus
from procurement_kernel.exceptions import (
    InvalidOrderError,
    InvalidTransitionError,
    OrderNotFoundError,
)
from tests.conftest import STANDARD_ITEMS, TEST_ACTOR_ID


class TestCreateOrder:

    def test_draft_with_computed_totals(self, create_order):
        order = create_order(notes="rush")

        assert order.status is OrderStatus.DRAFT
        assert order.version == 1
        assert order.total_amount == Decimal("150.00")
        assert order.currency == "USD"
        assert order.created_by == TEST_ACTOR_ID
        assert order.notes == "rush"
        assert [i.line_number for i in order.items] == [1, 2]
        assert [i.total_price for i in order.items] == [Decimal("50.00"), Decimal("100.00")]
        assert all(i.received_qty == 0 for i in order.items)

    def test_accepts_mappings_and_tuples(self, service):
        order = service.create_order(
            "SUP-002",
            [
                {"product_id": "SKU-A", "quantity": 2, "unit_price": "1.25"},
                ("SKU-B", 3, Decimal("2.00")),
            ],
            TEST_ACTOR_ID,
        )
        assert order.total_amount == Decimal("8.50")

    @pytest.mark.parametrize(
        "supplier,items,created_by,field",
        [
            ("", STANDARD_ITEMS, TEST_ACTOR_ID, "supplier_id"),
            ("SUP-1", STANDARD_ITEMS, "  ", "created_by"),
            ("SUP-1", [], TEST_ACTOR_ID, "items"),
            ("SUP-1", [NewItem("SKU-1", 0, Decimal("1"))], TEST_ACTOR_ID, "items[0].quantity"),
            ("SUP-1", [NewItem("SKU-1", 1, Decimal("0"))], TEST_ACTOR_ID, "items[0].unit_price"),
            ("SUP-1", [("SKU-1", 1, "abc")], TEST_ACTOR_ID, "items[0].unit_price"),
            ("SUP-1", [("", 1, "1")], TEST_ACTOR_ID, "items[0].product_id"),
            ("SUP-1", [("SKU-1", 1)], TEST_ACTOR_ID, "items[0]"),
            (
                "SUP-1",
                [("SKU-1", 1, "1"), ("SKU-1", 2, "1")],
                TEST_ACTOR_ID,
                "items[1].product_id",
            ),
        ],
    )
    def test_validation(self, service, supplier, items, created_by, field):
        with pytest.raises(InvalidOrderError) as exc_info:
            service.create_order(supplier, items, created_by)
        assert exc_info.value.field == field
        assert service.list_orders() == []


class TestReplaceItems:

    def test_replace_recomputes_total(self, service, create_order):
        order = create_order()
        updated = service.replace_items(order.id, [NewItem("SKU-NEW", 4, Decimal("2.50"))])

        assert updated.total_amount == Decimal("10.00")
        assert [i.product_id for i in updated.items] == ["SKU-NEW"]
        assert updated.version == order.version + 1

    def test_replace_after_approval_rejected(self, service, approved_order):
        with pytest.raises(InvalidTransitionError):
            service.replace_items(approved_order.id, [NewItem("SKU-NEW", 1, Decimal("1"))])
        assert service.get_order(approved_order.id).total_amount == Decimal("150.00")


class TestHappyPath:

    def test_full_lifecycle(self, service, gateway, create_order):
        order = create_order()
        approved = service.approve(order.id)
        assert approved.status is OrderStatus.APPROVED

        intent = service.initiate_payment(order.id)
        event = gateway.settle(intent.intent_id, "succeeded")
        paid = service.handle_gateway_event(event.intent_id, event.status).order
        assert paid.status is OrderStatus.PAID

        widget = next(i for i in paid.items if i.product_id == "SKU-WIDGET")
        gadget = next(i for i in paid.items if i.product_id == "SKU-GADGET")
        assert service.receive(order.id, widget.id, 10).order.status is OrderStatus.PAID
        received = service.receive(order.id, gadget.id, 5).order
        assert received.status is OrderStatus.RECEIVED

        closed = service.close(order.id)
        assert closed.status is OrderStatus.CLOSED
        assert closed.closed_at is not None
        assert service.current_stock("SKU-WIDGET") == 10
        assert service.current_stock("SKU-GADGET") == 5

        with pytest.raises(InvalidTransitionError):
            service.receive(order.id, widget.id, 1)
        with pytest.raises(InvalidTransitionError):
            service.cancel(order.id)

    def test_close_requires_received(self, service, paid_order):
        with pytest.raises(InvalidTransitionError):
            service.close(paid_order.id)

    def test_versions_strictly_increase(self, service, gateway, create_order):
        order = create_order()
        versions = [order.version, service.approve(order.id).version]
        intent = service.initiate_payment(order.id)
        versions.append(service.reconcile_payment(intent.payment.id, "succeeded").order.version)
        assert versions == sorted(set(versions))


class TestCancel:

    def test_cancel_draft(self, service, create_order):
        order = create_order()
        cancelled = service.cancel(order.id)
        assert cancelled.status is OrderStatus.CANCELLED
        assert cancelled.cancelled_at is not None

    def test_cancel_with_pending_intent(self, service, gateway, approved_order):
        intent = service.initiate_payment(approved_order.id)
        cancelled = service.cancel(approved_order.id)

        assert cancelled.status is OrderStatus.CANCELLED
        assert gateway.intent_status(intent.intent_id) is PaymentStatus.CANCELED
        (payment,) = service.list_payments(approved_order.id)
        assert payment.status is PaymentStatus.CANCELED

    def test_cancel_when_gateway_cancel_fails(self, service, gateway, approved_order, captured_logs):
        intent = service.initiate_payment(approved_order.id)
        gateway.fail_cancels = True

        cancelled = service.cancel(approved_order.id)
        assert cancelled.status is OrderStatus.CANCELLED
        assert service.get_payment(intent.payment.id).status is PaymentStatus.PENDING
        assert any(r["message"] == "gateway_cancel_failed" for r in captured_logs())

    def test_cannot_pay_cancelled_order(self, service, create_order):
        order = create_order()
        service.cancel(order.id)
        with pytest.raises(InvalidTransitionError):
            service.initiate_payment(order.id)

    def test_cancel_paid_rejected(self, service, paid_order):
        with pytest.raises(InvalidTransitionError):
            service.cancel(paid_order.id)
        assert service.get_order(paid_order.id).status is OrderStatus.PAID


class TestQueries:

    def test_get_unknown_order(self, service):
        with pytest.raises(OrderNotFoundError):
            service.get_order(uuid4())
        with pytest.raises(OrderNotFoundError):
            service.get_order("not-a-uuid")

    def test_list_newest_first_with_filters(self, service, create_order):
        first = create_order(supplier_id="SUP-A")
        second = create_order(supplier_id="SUP-B")
        third = create_order(supplier_id="SUP-A")
        service.approve(third.id)

        assert [o.id for o in service.list_orders()] == [third.id, second.id, first.id]
        assert [o.id for o in service.list_orders(supplier_id="SUP-A")] == [third.id, first.id]
        assert [o.id for o in service.list_orders(status="APPROVED")] == [third.id]
        assert [o.id for o in service.list_orders(limit=1, offset=1)] == [second.id]

    def test_page_size_capped(self, service, config, create_order):
        for _ in range(3):
            create_order()
        assert len(service.list_orders(limit=10_000)) == 3
        assert config.clamp_page_size(10_000) == config.max_page_size

    def test_list_unknown_status(self, service):
        with pytest.raises(ValueError):
            service.list_orders(status="LOST")

    def test_statistics(self, service, create_order, paid_order):
        create_order()
        cancelled = create_order()
        service.cancel(cancelled.id)

        stats = service.statistics()
        assert stats.total_orders == 3
        assert stats.by_status["DRAFT"] == 1
        assert stats.by_status["PAID"] == 1
        assert stats.by_status["CANCELLED"] == 1
        assert stats.pending == 1
        assert stats.awaiting_payment == 0
        assert stats.in_transit == 1
        assert stats.completed == 0
        assert stats.total_value == Decimal("300.00")
