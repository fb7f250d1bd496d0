"""
Module: procurement_kernel.models.payment
Responsibility: ORM persistence for payment attempts against purchase orders.

Architecture position: Kernel > Models.  May import from db/base.py and
domain/ only.

Invariants enforced:
    - At most one active payment (PENDING, PROCESSING, SUCCEEDED) per order:
      partial unique index, backing the per-order lock in the manager.
    - idempotency_key is unique; it is the key sent to the gateway, so a
      retried creation can never produce a second intent.
    - (purchase_order_id, generation) is unique.

Failure modes:
    - IntegrityError on a second active payment for one order; translated
      to ConflictError by the payment intent manager.
"""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from procurement_kernel.db.base import TrackedBase
from procurement_kernel.domain.dtos import PaymentView, quantize_money
from procurement_kernel.domain.lifecycle import PaymentStatus

_ACTIVE_PAYMENT_PREDICATE = "status IN ('PENDING', 'PROCESSING', 'SUCCEEDED')"


class PaymentModel(TrackedBase):
    """
    One payment attempt (one gateway intent) for a purchase order.

    Guarantees:
        - Row exists before the gateway is called, so a crash between the
          gateway call and the local commit leaves a PENDING row that the
          next attempt reuses with the same idempotency key.
        - amount is the order total at creation time.
    """

    __tablename__ = "payments"

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING', 'PROCESSING', 'SUCCEEDED', 'FAILED', 'CANCELED')",
            name="ck_payments_valid_status",
        ),
        CheckConstraint("amount > 0", name="ck_payments_amount_positive"),
        UniqueConstraint("idempotency_key", name="uq_payments_idempotency_key"),
        UniqueConstraint("purchase_order_id", "generation", name="uq_payments_order_generation"),
        UniqueConstraint("external_intent_id", name="uq_payments_external_intent"),
        Index(
            "uq_payments_one_active_per_order",
            "purchase_order_id",
            unique=True,
            sqlite_where=text(_ACTIVE_PAYMENT_PREDICATE),
            postgresql_where=text(_ACTIVE_PAYMENT_PREDICATE),
        ),
        Index("idx_payments_order", "purchase_order_id", "created_at"),
    )

    purchase_order_id: Mapped[UUID] = mapped_column(
        ForeignKey("purchase_orders.id"), nullable=False,
    )
    generation: Mapped[int] = mapped_column(Integer, nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(120), nullable=False)
    external_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    client_secret: Mapped[str | None] = mapped_column(String(255), nullable=True)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentStatus.PENDING.value,
    )
    failure_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    @property
    def payment_status(self) -> PaymentStatus:
        return PaymentStatus(self.status)

    def to_dto(self) -> PaymentView:
        return PaymentView(
            id=self.id,
            purchase_order_id=self.purchase_order_id,
            generation=self.generation,
            idempotency_key=self.idempotency_key,
            status=PaymentStatus(self.status),
            amount=quantize_money(self.amount),
            currency=self.currency,
            external_intent_id=self.external_intent_id,
            client_secret=self.client_secret,
            failure_reason=self.failure_reason,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    def __repr__(self) -> str:
        return f"<PaymentModel {self.id} #{self.generation} [{self.status}]>"
