"""
GoodsReceiptProcessor -- applies physical receipts exactly once.

Responsibility:
    Validates a partial or full receipt against a paid order, appends the
    stock movement to the ledger, advances the item's received quantity,
    records the receipt, and moves the order to RECEIVED when the last unit
    arrives.

Architecture position:
    Services (orchestration).  Called by ``PurchaseOrderService`` under the
    per-order lock.  Flush-only: every write of one receipt lands in the
    caller's single transaction.

Invariants enforced:
    - One applied receipt per causation id.  A repeated id is a successful
      no-op returning the original receipt, even after the order moved on.
    - 0 < quantity and received_qty + quantity <= ordered quantity; never
      clamped.
    - received_qty only grows (guarded SQL increment + ORM listener).
    - The order version is bumped by compare-and-set with each receipt.

Failure modes:
    - InvalidTransitionError when the order is not PAID.
    - ItemNotFoundError when the item is not on the order.
    - InvalidOrderError when the quantity is not an integer.
    - OverReceiptError for non-positive or excess quantities.
    - ConflictError when another writer changed the order first.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy.orm import Session

from procurement_kernel.domain.clock import Clock, SystemClock
from procurement_kernel.domain.dtos import LedgerAppendResult, ReceiptResult
from procurement_kernel.domain.lifecycle import OrderStatus
from procurement_kernel.exceptions import (
    DuplicateCausationError,
    InvalidOrderError,
    ItemNotFoundError,
    OverReceiptError,
)
from procurement_kernel.logging_config import get_logger
from procurement_kernel.models.purchase_order import PurchaseItemModel, PurchaseOrderModel
from procurement_kernel.models.stock import GoodsReceiptModel
from procurement_kernel.services.order_repository import OrderRepository
from procurement_kernel.services.order_state_machine import OrderStateMachine
from procurement_kernel.services.stock_ledger_service import StockLedgerService
from procurement_kernel.utils.idempotency import receipt_causation_id

logger = get_logger("services.goods_receipt_processor")

ACTION_RECEIVE = "receive"


class GoodsReceiptProcessor:
    """
    Partial and full goods receipts against PAID orders.

    Contract:
        ``receive`` returns the order as it stands after the receipt.  The
        caller commits.
    """

    def __init__(
        self,
        session: Session,
        ledger: StockLedgerService | None = None,
        clock: Clock | None = None,
    ):
        self.session = session
        self._clock = clock or SystemClock()
        self._repository = OrderRepository(session)
        self._state_machine = OrderStateMachine(session, self._repository, self._clock)
        self._ledger = ledger or StockLedgerService(session)

    def find_duplicate(self, causation_id: str | None) -> ReceiptResult | None:
        """The original result for an already-applied causation id, if any."""
        if not causation_id:
            return None
        receipt = self._repository.find_receipt(causation_id)
        if receipt is None:
            return None
        order = self._repository.load(receipt.purchase_order_id)
        logger.info(
            "goods_receipt_duplicate",
            extra={
                "causation_id": causation_id,
                "order_id": str(receipt.purchase_order_id),
                "order_status": order.status,
            },
        )
        return ReceiptResult(order=order.to_dto(), receipt=receipt.to_dto(), duplicate=True)

    def receive(
        self,
        order_id: UUID,
        item_id: UUID,
        quantity: int,
        causation_id: str | None = None,
    ) -> ReceiptResult:
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            raise InvalidOrderError("receipt quantity must be an integer", field="quantity")

        duplicate = self.find_duplicate(causation_id)
        if duplicate is not None:
            return duplicate

        order = self._repository.load_for_update(order_id)
        self._state_machine.ensure_status(order, ACTION_RECEIVE, OrderStatus.PAID)

        item = order.item_by_id(item_id)
        if item is None:
            raise ItemNotFoundError(str(order_id), str(item_id))
        self._check_quantity(order, item, quantity)

        if not causation_id:
            sequence = self._repository.count_receipts(item.id) + 1
            causation_id = receipt_causation_id(order.id, item.id, sequence)

        ledger_result = self._append_to_ledger(item, quantity, causation_id)

        if not self._repository.increment_received(item.id, quantity):
            # received_qty moved under us between the check and the update.
            self.session.refresh(item)
            raise OverReceiptError(
                str(order_id), str(item.id), item.quantity, item.received_qty, quantity,
            )

        receipt = GoodsReceiptModel(
            purchase_order_id=order.id,
            item_id=item.id,
            product_id=item.product_id,
            quantity=quantity,
            causation_id=causation_id,
            previous_stock=ledger_result.previous_stock,
            new_stock=ledger_result.new_stock,
        )
        self.session.add(receipt)
        self._repository.compare_and_set_status(
            order.id, OrderStatus.PAID, OrderStatus.PAID, order.version,
        )

        order = self._repository.load(order.id)
        logger.info(
            "goods_received",
            extra={
                "order_id": str(order.id),
                "item_id": str(item_id),
                "product_id": receipt.product_id,
                "quantity": quantity,
                "causation_id": causation_id,
                "new_stock": ledger_result.new_stock,
            },
        )

        if order.all_items_received():
            order = self._state_machine.mark_received(order.id)

        return ReceiptResult(order=order.to_dto(), receipt=receipt.to_dto(), duplicate=False)

    def _check_quantity(
        self,
        order: PurchaseOrderModel,
        item: PurchaseItemModel,
        quantity: int,
    ) -> None:
        if quantity <= 0 or item.received_qty + quantity > item.quantity:
            logger.info(
                "goods_receipt_rejected",
                extra={
                    "order_id": str(order.id),
                    "item_id": str(item.id),
                    "ordered": item.quantity,
                    "already_received": item.received_qty,
                    "requested": quantity,
                },
            )
            raise OverReceiptError(
                str(order.id), str(item.id), item.quantity, item.received_qty, quantity,
            )

    def _append_to_ledger(
        self,
        item: PurchaseItemModel,
        quantity: int,
        causation_id: str,
    ) -> LedgerAppendResult:
        try:
            return self._ledger.append(
                item.product_id,
                quantity,
                causation_id,
                reason=StockLedgerService.RECEIPT_REASON,
            )
        except DuplicateCausationError as e:
            # Ledger kept an earlier attempt whose local commit was lost.
            logger.warning(
                "ledger_already_applied",
                extra={"causation_id": causation_id, "product_id": item.product_id},
            )
            return LedgerAppendResult(
                product_id=item.product_id,
                delta=quantity,
                previous_stock=int(e.previous_stock or 0),
                new_stock=int(e.new_stock or 0),
                causation_id=causation_id,
            )
