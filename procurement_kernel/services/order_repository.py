"""
OrderRepository -- durable store of purchase orders, items, and payments.

Responsibility:
    Loads the order aggregate fresh from the database, persists new orders,
    and performs the atomic compare-and-set that is the only way an order's
    status (or version) ever changes.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.  Used by the
    order state machine, the payment intent manager, and the goods receipt
    processor.  Flush-only (see services/base.py).

Invariants enforced:
    - Optimistic concurrency: every status change is
      ``UPDATE ... WHERE id = ? AND status = ? AND version = ?`` and bumps
      ``version``; zero matched rows raises ConflictError.
    - received_qty increments are guarded in SQL so a concurrent writer can
      never push an item past its ordered quantity.

Failure modes:
    - OrderNotFoundError / PaymentNotFoundError for unknown ids.
    - ConflictError on version/status mismatch.
"""

from typing import Any
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from procurement_kernel.domain.lifecycle import OrderStatus
from procurement_kernel.exceptions import (
    ConflictError,
    OrderNotFoundError,
    PaymentNotFoundError,
)
from procurement_kernel.logging_config import get_logger
from procurement_kernel.models.payment import PaymentModel
from procurement_kernel.models.purchase_order import PurchaseItemModel, PurchaseOrderModel
from procurement_kernel.models.stock import GoodsReceiptModel
from procurement_kernel.services.base import BaseService

logger = get_logger("services.order_repository")


class OrderRepository(BaseService[PurchaseOrderModel]):
    """
    Repository for the purchase order aggregate and its payments.

    Contract:
        Reads always reflect the latest committed state (identity map is
        flushed and expired first), so a check made inside the per-order
        lock is never answered from a stale cache.
    """

    def __init__(self, session: Session):
        super().__init__(session)

    # -------------------------------------------------------------------------
    # Orders
    # -------------------------------------------------------------------------

    def _refresh_identity_map(self) -> None:
        self.session.flush()
        self.session.expire_all()

    def load(self, order_id: UUID) -> PurchaseOrderModel:
        """Load an order with its items.

        Raises:
            OrderNotFoundError: If no order has this id.
        """
        self._refresh_identity_map()
        order = self.session.execute(
            select(PurchaseOrderModel)
            .where(PurchaseOrderModel.id == order_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if order is None:
            raise OrderNotFoundError(str(order_id))
        return order

    def load_for_update(self, order_id: UUID) -> PurchaseOrderModel:
        """Load an order and take a row lock on it where the backend supports it.

        SQLite ignores FOR UPDATE; there the in-process order lock and the
        database write lock provide the serialization.
        """
        self._refresh_identity_map()
        order = self.session.execute(
            select(PurchaseOrderModel)
            .where(PurchaseOrderModel.id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if order is None:
            raise OrderNotFoundError(str(order_id))
        return order

    def add(self, order: PurchaseOrderModel) -> PurchaseOrderModel:
        self.session.add(order)
        self.session.flush()
        return order

    def compare_and_set_status(
        self,
        order_id: UUID,
        expected_status: OrderStatus,
        new_status: OrderStatus,
        expected_version: int,
        **values: Any,
    ) -> int:
        """
        Atomically move an order from ``expected_status`` to ``new_status``.

        Extra ``values`` (lifecycle timestamps, totals) are written in the
        same statement.  Passing ``new_status == expected_status`` bumps the
        version only, which is how aggregate-internal changes (items,
        receipts) claim the order.

        Returns:
            The new version.

        Raises:
            ConflictError: If another actor changed the order first.
        """
        self.session.flush()
        result = self.session.execute(
            update(PurchaseOrderModel)
            .where(
                PurchaseOrderModel.id == order_id,
                PurchaseOrderModel.status == expected_status.value,
                PurchaseOrderModel.version == expected_version,
            )
            .values(
                status=new_status.value,
                version=PurchaseOrderModel.version + 1,
                **values,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning(
                "order_compare_and_set_conflict",
                extra={
                    "order_id": str(order_id),
                    "expected_status": expected_status.value,
                    "new_status": new_status.value,
                    "expected_version": expected_version,
                },
            )
            raise ConflictError(
                str(order_id),
                expected_status=expected_status.value,
                expected_version=expected_version,
            )
        return expected_version + 1

    def increment_received(self, item_id: UUID, quantity: int) -> bool:
        """
        Add ``quantity`` to an item's received_qty if it stays within the
        ordered quantity.

        Returns:
            True if the row was updated, False if the guard rejected it.
        """
        result = self.session.execute(
            update(PurchaseItemModel)
            .where(
                PurchaseItemModel.id == item_id,
                PurchaseItemModel.received_qty + quantity <= PurchaseItemModel.quantity,
            )
            .values(received_qty=PurchaseItemModel.received_qty + quantity)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # -------------------------------------------------------------------------
    # Payments
    # -------------------------------------------------------------------------

    def list_payments(self, order_id: UUID) -> list[PaymentModel]:
        """All payments for an order, oldest generation first."""
        return list(
            self.session.execute(
                select(PaymentModel)
                .where(PaymentModel.purchase_order_id == order_id)
                .order_by(PaymentModel.generation)
                .execution_options(populate_existing=True)
            ).scalars()
        )

    def get_payment(self, payment_id: UUID) -> PaymentModel:
        """
        Raises:
            PaymentNotFoundError: If no payment has this id.
        """
        payment = self.session.execute(
            select(PaymentModel)
            .where(PaymentModel.id == payment_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if payment is None:
            raise PaymentNotFoundError(str(payment_id))
        return payment

    def find_payment_by_intent(self, intent_id: str) -> PaymentModel | None:
        return self.session.execute(
            select(PaymentModel)
            .where(PaymentModel.external_intent_id == intent_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def next_payment_generation(self, order_id: UUID) -> int:
        current = self.session.execute(
            select(func.max(PaymentModel.generation))
            .where(PaymentModel.purchase_order_id == order_id)
        ).scalar_one()
        return (current or 0) + 1

    # -------------------------------------------------------------------------
    # Receipts
    # -------------------------------------------------------------------------

    def find_receipt(self, causation_id: str) -> GoodsReceiptModel | None:
        return self.session.execute(
            select(GoodsReceiptModel).where(GoodsReceiptModel.causation_id == causation_id)
        ).scalar_one_or_none()

    def count_receipts(self, item_id: UUID) -> int:
        return self.session.execute(
            select(func.count(GoodsReceiptModel.id))
            .where(GoodsReceiptModel.item_id == item_id)
        ).scalar_one()
