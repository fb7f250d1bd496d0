"""Tests for money rounding and the order views."""

from decimal import Decimal
from uuid import uuid4

from procurement_kernel.domain.dtos import (
    NewItem,
    PurchaseItemView,
    PurchaseOrderView,
    quantize_money,
)
from procurement_kernel.domain.lifecycle import OrderStatus


def _item(quantity, received):
    return PurchaseItemView(
        id=uuid4(),
        product_id="SKU-1",
        line_number=1,
        quantity=quantity,
        unit_price=Decimal("1.00"),
        total_price=Decimal(quantity),
        received_qty=received,
    )


class TestQuantizeMoney:

    def test_half_up(self):
        assert quantize_money(Decimal("0.005")) == Decimal("0.01")
        assert quantize_money(Decimal("2.344")) == Decimal("2.34")

    def test_accepts_strings_and_ints(self):
        assert quantize_money("3") == Decimal("3.00")
        assert quantize_money(7) == Decimal("7.00")


class TestNewItem:

    def test_total_price(self):
        assert NewItem("SKU-1", 3, Decimal("0.335")).total_price == Decimal("1.01")


class TestPurchaseOrderView:

    def test_fully_received(self):
        order = PurchaseOrderView(
            id=uuid4(),
            supplier_id="SUP-1",
            status=OrderStatus.PAID,
            total_amount=Decimal("15.00"),
            currency="USD",
            created_by="buyer",
            version=3,
            items=(_item(10, 10), _item(5, 5)),
        )
        assert order.is_fully_received

    def test_partially_received(self):
        partial = _item(10, 4)
        order = PurchaseOrderView(
            id=uuid4(),
            supplier_id="SUP-1",
            status=OrderStatus.PAID,
            total_amount=Decimal("10.00"),
            currency="USD",
            created_by="buyer",
            version=3,
            items=(partial,),
        )
        assert not order.is_fully_received
        assert order.item(partial.id).remaining_qty == 6
        assert order.item(uuid4()) is None

    def test_order_without_items_is_not_received(self):
        order = PurchaseOrderView(
            id=uuid4(),
            supplier_id="SUP-1",
            status=OrderStatus.DRAFT,
            total_amount=Decimal("0"),
            currency="USD",
            created_by="buyer",
            version=1,
        )
        assert not order.is_fully_received
