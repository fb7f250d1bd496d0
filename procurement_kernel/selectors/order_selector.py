"""
Module: procurement_kernel.selectors.order_selector
Responsibility: Read-only queries over purchase orders, their payments, and
    goods receipts: single lookups, filtered listings, and the procurement
    overview figures.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - Listings are newest first with a stable tie-break on id, so paging
      with limit/offset never skips or repeats an order.
    - total_value excludes cancelled orders.
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select

from procurement_kernel.domain.dtos import (
    GoodsReceiptView,
    OrderStatistics,
    PaymentView,
    PurchaseOrderView,
    quantize_money,
)
from procurement_kernel.domain.lifecycle import OrderStatus
from procurement_kernel.exceptions import OrderNotFoundError, PaymentNotFoundError
from procurement_kernel.models.payment import PaymentModel
from procurement_kernel.models.purchase_order import PurchaseOrderModel
from procurement_kernel.models.stock import GoodsReceiptModel
from procurement_kernel.selectors.base import BaseSelector


class OrderSelector(BaseSelector[PurchaseOrderModel]):
    """Query surface for purchase orders."""

    def get_order(self, order_id: UUID) -> PurchaseOrderView:
        order = self.session.execute(
            select(PurchaseOrderModel)
            .where(PurchaseOrderModel.id == order_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if order is None:
            raise OrderNotFoundError(str(order_id))
        return order.to_dto()

    def list_orders(
        self,
        status: OrderStatus | None = None,
        supplier_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[PurchaseOrderView]:
        stmt = select(PurchaseOrderModel)
        if status is not None:
            stmt = stmt.where(PurchaseOrderModel.status == OrderStatus(status).value)
        if supplier_id is not None:
            stmt = stmt.where(PurchaseOrderModel.supplier_id == supplier_id)
        stmt = (
            stmt.order_by(PurchaseOrderModel.created_at.desc(), PurchaseOrderModel.id)
            .limit(limit)
            .offset(offset)
            .execution_options(populate_existing=True)
        )
        return [order.to_dto() for order in self.session.execute(stmt).scalars()]

    def list_payments(self, order_id: UUID) -> list[PaymentView]:
        rows = self.session.execute(
            select(PaymentModel)
            .where(PaymentModel.purchase_order_id == order_id)
            .order_by(PaymentModel.generation)
            .execution_options(populate_existing=True)
        ).scalars()
        return [payment.to_dto() for payment in rows]

    def get_payment(self, payment_id: UUID) -> PaymentView:
        payment = self.session.execute(
            select(PaymentModel)
            .where(PaymentModel.id == payment_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if payment is None:
            raise PaymentNotFoundError(str(payment_id))
        return payment.to_dto()

    def list_receipts(self, order_id: UUID) -> list[GoodsReceiptView]:
        rows = self.session.execute(
            select(GoodsReceiptModel)
            .where(GoodsReceiptModel.purchase_order_id == order_id)
            .order_by(GoodsReceiptModel.created_at, GoodsReceiptModel.causation_id)
        ).scalars()
        return [receipt.to_dto() for receipt in rows]

    def statistics(self) -> OrderStatistics:
        """Order counts per status and the value of all non-cancelled orders."""
        counts = dict.fromkeys((s.value for s in OrderStatus), 0)
        rows = self.session.execute(
            select(PurchaseOrderModel.status, func.count(PurchaseOrderModel.id))
            .group_by(PurchaseOrderModel.status)
        )
        for status, count in rows:
            counts[status] = count

        total_value = self.session.execute(
            select(func.coalesce(func.sum(PurchaseOrderModel.total_amount), 0))
            .where(PurchaseOrderModel.status != OrderStatus.CANCELLED.value)
        ).scalar_one()

        return OrderStatistics(
            total_orders=sum(counts.values()),
            by_status=counts,
            pending=counts[OrderStatus.DRAFT.value] + counts[OrderStatus.APPROVED.value],
            awaiting_payment=counts[OrderStatus.APPROVED.value],
            in_transit=counts[OrderStatus.PAID.value],
            completed=counts[OrderStatus.CLOSED.value],
            total_value=quantize_money(Decimal(str(total_value))),
        )
