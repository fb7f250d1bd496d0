"""
Data transfer objects returned by the engine's public operations.

Every exposed operation answers with one of these frozen views instead of
an ORM instance, so callers never hold a live session object and never
need a refetch-after-action round trip.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

from procurement_kernel.domain.lifecycle import OrderStatus, PaymentStatus

MONEY_QUANTUM = Decimal("0.01")


def quantize_money(amount: Decimal | int | str) -> Decimal:
    """Round a monetary amount to cents (half-up)."""
    return Decimal(str(amount)).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class NewItem:
    """A line requested at order authoring time."""
    product_id: str
    quantity: int
    unit_price: Decimal

    @property
    def total_price(self) -> Decimal:
        return quantize_money(Decimal(self.quantity) * Decimal(str(self.unit_price)))


@dataclass(frozen=True)
class PurchaseItemView:
    """A line on a purchase order."""
    id: UUID
    product_id: str
    line_number: int
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    received_qty: int

    @property
    def remaining_qty(self) -> int:
        return self.quantity - self.received_qty

    @property
    def is_fully_received(self) -> bool:
        return self.received_qty == self.quantity


@dataclass(frozen=True)
class PurchaseOrderView:
    """A purchase order with its items, as of the end of an operation."""
    id: UUID
    supplier_id: str
    status: OrderStatus
    total_amount: Decimal
    currency: str
    created_by: str
    version: int
    items: tuple[PurchaseItemView, ...] = field(default_factory=tuple)
    notes: str | None = None
    created_at: datetime | None = None
    approved_at: datetime | None = None
    paid_at: datetime | None = None
    received_at: datetime | None = None
    closed_at: datetime | None = None
    cancelled_at: datetime | None = None

    @property
    def is_fully_received(self) -> bool:
        return bool(self.items) and all(i.is_fully_received for i in self.items)

    def item(self, item_id: UUID) -> PurchaseItemView | None:
        for i in self.items:
            if i.id == item_id:
                return i
        return None


@dataclass(frozen=True)
class PaymentView:
    """A payment attempt against a purchase order."""
    id: UUID
    purchase_order_id: UUID
    generation: int
    idempotency_key: str
    status: PaymentStatus
    amount: Decimal
    currency: str
    external_intent_id: str | None = None
    client_secret: str | None = None
    failure_reason: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class PaymentIntentResult:
    """Answer of ``initiate_payment``.

    ``created`` is False when an existing open intent was reused.
    """
    payment: PaymentView
    client_secret: str
    intent_id: str
    created: bool


@dataclass(frozen=True)
class PaymentReconciliation:
    """Answer of ``reconcile``.

    ``applied`` is False for stale, superseded, or repeated reports.
    """
    payment: PaymentView
    order: PurchaseOrderView
    applied: bool


@dataclass(frozen=True)
class LedgerAppendResult:
    """Stock figures around one ledger append."""
    product_id: str
    delta: int
    previous_stock: int
    new_stock: int
    causation_id: str


@dataclass(frozen=True)
class GoodsReceiptView:
    """One applied receipt event."""
    id: UUID
    purchase_order_id: UUID
    item_id: UUID
    product_id: str
    quantity: int
    causation_id: str
    previous_stock: int
    new_stock: int
    received_at: datetime | None = None


@dataclass(frozen=True)
class ReceiptResult:
    """Answer of ``receive``.

    ``duplicate`` is True when the causation id had already been applied;
    ``receipt`` is then the original receipt.
    """
    order: PurchaseOrderView
    receipt: GoodsReceiptView
    duplicate: bool = False


@dataclass(frozen=True)
class OrderStatistics:
    """Procurement overview figures."""
    total_orders: int
    by_status: dict[str, int]
    pending: int
    awaiting_payment: int
    in_transit: int
    completed: int
    total_value: Decimal
