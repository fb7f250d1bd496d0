"""
OrderStateMachine -- legal purchase order status transitions.

Responsibility:
    Validates a requested action against ``PURCHASE_ORDER_WORKFLOW`` and
    commits the new status through the repository's compare-and-set.  No
    other code path writes ``purchase_orders.status``.

Architecture position:
    Kernel > Services.  Flush-only: the caller (orchestration layer) owns
    the transaction and the per-order lock, so a transition lands atomically
    with the side-effect record that justified it (a succeeded payment, the
    last goods receipt).

Invariants enforced:
    - Only declared edges are legal; an illegal action raises
      InvalidTransitionError and leaves every record untouched.
    - Each transition is a single compare-and-set on (status, version).
    - mark_received fires only when every item is fully received.

Failure modes:
    - InvalidTransitionError for an illegal action or failed guard.
    - ConflictError when another actor transitioned the order first.
    - OrderNotFoundError for unknown ids.
"""

from uuid import UUID

from sqlalchemy.orm import Session

from procurement_kernel.domain.clock import Clock, SystemClock
from procurement_kernel.domain.lifecycle import (
    ACTION_APPROVE,
    ACTION_CANCEL,
    ACTION_CLOSE,
    ACTION_MARK_PAID,
    ACTION_MARK_RECEIVED,
    PURCHASE_ORDER_WORKFLOW,
    STATUS_TIMESTAMP_FIELDS,
    OrderStatus,
)
from procurement_kernel.exceptions import InvalidTransitionError
from procurement_kernel.logging_config import get_logger
from procurement_kernel.models.purchase_order import PurchaseOrderModel
from procurement_kernel.services.base import BaseService
from procurement_kernel.services.order_repository import OrderRepository

logger = get_logger("services.order_state_machine")


class OrderStateMachine(BaseService[PurchaseOrderModel]):
    """
    Enforces the purchase order lifecycle.

    Contract:
        Each public method loads the order fresh, checks the transition,
        performs the compare-and-set, and returns the refreshed model.

    Non-goals:
        - Does NOT perform side effects (gateway calls, ledger writes).
        - Does NOT commit.
    """

    def __init__(
        self,
        session: Session,
        repository: OrderRepository | None = None,
        clock: Clock | None = None,
    ):
        super().__init__(session)
        self._repository = repository or OrderRepository(session)
        self._clock = clock or SystemClock()
        self._workflow = PURCHASE_ORDER_WORKFLOW

    def approve(self, order_id: UUID) -> PurchaseOrderModel:
        """DRAFT -> APPROVED.  Items are frozen from here on."""
        return self._fire(order_id, ACTION_APPROVE)

    def cancel(self, order_id: UUID) -> PurchaseOrderModel:
        """DRAFT | APPROVED -> CANCELLED (terminal)."""
        return self._fire(order_id, ACTION_CANCEL)

    def mark_paid(self, order_id: UUID, payment_id: UUID) -> PurchaseOrderModel:
        """APPROVED -> PAID, after the gateway confirmed ``payment_id``."""
        return self._fire(order_id, ACTION_MARK_PAID, payment_id=str(payment_id))

    def mark_received(self, order_id: UUID) -> PurchaseOrderModel:
        """PAID -> RECEIVED, once every item has received_qty == quantity."""
        order = self._repository.load(order_id)
        if order.status == OrderStatus.PAID.value and not order.all_items_received():
            outstanding = sum(i.quantity - i.received_qty for i in order.items)
            raise InvalidTransitionError(
                str(order_id),
                ACTION_MARK_RECEIVED,
                order.status,
                reason=f"{outstanding} unit(s) still outstanding",
            )
        return self._fire(order_id, ACTION_MARK_RECEIVED, order=order)

    def close(self, order_id: UUID) -> PurchaseOrderModel:
        """RECEIVED -> CLOSED (terminal)."""
        return self._fire(order_id, ACTION_CLOSE)

    def ensure_status(
        self,
        order: PurchaseOrderModel,
        action: str,
        *allowed: OrderStatus,
    ) -> None:
        """Raise InvalidTransitionError unless ``order`` is in one of ``allowed``.

        For operations that act on an order without moving it (payment
        initiation, receipts, item edits).
        """
        if order.status not in {s.value for s in allowed}:
            logger.info(
                "order_action_rejected",
                extra={
                    "order_id": str(order.id),
                    "action": action,
                    "current_status": order.status,
                },
            )
            raise InvalidTransitionError(
                str(order.id),
                action,
                order.status,
                tuple(s.value for s in allowed),
            )

    def _fire(
        self,
        order_id: UUID,
        action: str,
        order: PurchaseOrderModel | None = None,
        **log_extra: str,
    ) -> PurchaseOrderModel:
        if order is None:
            order = self._repository.load(order_id)

        transition = self._workflow.find_transition(order.status, action)
        if transition is None:
            logger.info(
                "order_transition_rejected",
                extra={
                    "order_id": str(order_id),
                    "action": action,
                    "current_status": order.status,
                },
            )
            raise InvalidTransitionError(
                str(order_id),
                action,
                order.status,
                self._workflow.allowed_from(action),
            )

        from_status = OrderStatus(transition.from_state)
        to_status = OrderStatus(transition.to_state)
        stamps = {STATUS_TIMESTAMP_FIELDS[to_status]: self._clock.now()}

        new_version = self._repository.compare_and_set_status(
            order.id,
            from_status,
            to_status,
            order.version,
            **stamps,
        )
        self.session.refresh(order)

        logger.info(
            "order_transitioned",
            extra={
                "order_id": str(order.id),
                "action": action,
                "from_status": from_status.value,
                "to_status": to_status.value,
                "version": new_version,
                **log_extra,
            },
        )
        return order
