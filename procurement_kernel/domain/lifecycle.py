"""
Purchase order and payment lifecycles.

The order state machine, declared as data:

    DRAFT -> APPROVED -> PAID -> RECEIVED -> CLOSED
      |         |
      +---------+--> CANCELLED

and the payment status ladder used by reconciliation:

    PENDING (0) -> PROCESSING (1) -> SUCCEEDED | FAILED | CANCELED (2)
"""

from enum import Enum

from procurement_kernel.domain.workflow import Guard, Transition, Workflow
from procurement_kernel.logging_config import get_logger

logger = get_logger("domain.lifecycle")


class OrderStatus(str, Enum):
    """Purchase order lifecycle states."""
    DRAFT = "DRAFT"
    APPROVED = "APPROVED"
    PAID = "PAID"
    RECEIVED = "RECEIVED"
    CLOSED = "CLOSED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, Enum):
    """Payment lifecycle states."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"

    @property
    def rank(self) -> int:
        """Monotonic position; a report must strictly increase it to apply."""
        return _PAYMENT_RANK[self]

    @property
    def is_active(self) -> bool:
        """Blocks creation of another payment for the same order."""
        return self in ACTIVE_PAYMENT_STATUSES

    @property
    def is_open(self) -> bool:
        """Chargeable intent that may still be reused or cancelled."""
        return self in OPEN_PAYMENT_STATUSES

    @property
    def is_terminal(self) -> bool:
        return _PAYMENT_RANK[self] == 2


_PAYMENT_RANK = {
    PaymentStatus.PENDING: 0,
    PaymentStatus.PROCESSING: 1,
    PaymentStatus.SUCCEEDED: 2,
    PaymentStatus.FAILED: 2,
    PaymentStatus.CANCELED: 2,
}

OPEN_PAYMENT_STATUSES = frozenset({PaymentStatus.PENDING, PaymentStatus.PROCESSING})
ACTIVE_PAYMENT_STATUSES = OPEN_PAYMENT_STATUSES | {PaymentStatus.SUCCEEDED}


# -----------------------------------------------------------------------------
# Actions
# -----------------------------------------------------------------------------

ACTION_APPROVE = "approve"
ACTION_CANCEL = "cancel"
ACTION_MARK_PAID = "mark_paid"
ACTION_MARK_RECEIVED = "mark_received"
ACTION_CLOSE = "close"

# Timestamp column stamped when an order enters a state.
STATUS_TIMESTAMP_FIELDS = {
    OrderStatus.APPROVED: "approved_at",
    OrderStatus.PAID: "paid_at",
    OrderStatus.RECEIVED: "received_at",
    OrderStatus.CLOSED: "closed_at",
    OrderStatus.CANCELLED: "cancelled_at",
}


# -----------------------------------------------------------------------------
# Guards
# -----------------------------------------------------------------------------

PAYMENT_CONFIRMED = Guard(
    name="payment_confirmed",
    description="Gateway reported the order's payment as succeeded",
)

ALL_ITEMS_RECEIVED = Guard(
    name="all_items_received",
    description="Every item has received_qty == quantity",
)


# -----------------------------------------------------------------------------
# Purchase Order Workflow
# -----------------------------------------------------------------------------

PURCHASE_ORDER_WORKFLOW = Workflow(
    name="purchase_order",
    description="Purchase order lifecycle with external payment and goods receipt",
    initial_state=OrderStatus.DRAFT.value,
    states=tuple(s.value for s in OrderStatus),
    transitions=(
        Transition("DRAFT", "APPROVED", action=ACTION_APPROVE),
        Transition("APPROVED", "PAID", action=ACTION_MARK_PAID, guard=PAYMENT_CONFIRMED, internal=True),
        Transition("PAID", "RECEIVED", action=ACTION_MARK_RECEIVED, guard=ALL_ITEMS_RECEIVED, internal=True),
        Transition("RECEIVED", "CLOSED", action=ACTION_CLOSE),
        Transition("DRAFT", "CANCELLED", action=ACTION_CANCEL),
        Transition("APPROVED", "CANCELLED", action=ACTION_CANCEL),
    ),
    terminal_states=(OrderStatus.CLOSED.value, OrderStatus.CANCELLED.value),
)

logger.debug(
    "purchase_order_workflow_registered",
    extra={
        "workflow_name": PURCHASE_ORDER_WORKFLOW.name,
        "state_count": len(PURCHASE_ORDER_WORKFLOW.states),
        "transition_count": len(PURCHASE_ORDER_WORKFLOW.transitions),
    },
)
