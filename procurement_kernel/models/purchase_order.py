"""
Module: procurement_kernel.models.purchase_order
Responsibility: ORM persistence for purchase orders and their items.

Architecture position: Kernel > Models.  May import from db/base.py and
domain/ only.

Invariants enforced:
    - total_amount equals the sum of item totals (maintained by the
      authoring service; DB check keeps it non-negative).
    - 0 <= received_qty <= quantity (DB check constraint; the ORM listeners
      in db/immutability.py also forbid decreases).
    - One item per product per order (unique constraint).
    - status changes only through OrderRepository.compare_and_set_status,
      which also increments ``version``.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from procurement_kernel.db.base import TrackedBase
from procurement_kernel.domain.dtos import (
    PurchaseItemView,
    PurchaseOrderView,
    quantize_money,
)
from procurement_kernel.domain.lifecycle import OrderStatus


class PurchaseOrderModel(TrackedBase):
    """
    A purchase order placed with a supplier.

    Guarantees:
        - ``version`` starts at 1 and increases by exactly one per
          committed mutation (optimistic concurrency token).
        - Lifecycle timestamps are stamped by the transition entering the
          corresponding state.
    """

    __tablename__ = "purchase_orders"

    __table_args__ = (
        CheckConstraint(
            "status IN ('DRAFT', 'APPROVED', 'PAID', 'RECEIVED', 'CLOSED', 'CANCELLED')",
            name="ck_purchase_orders_valid_status",
        ),
        CheckConstraint("total_amount >= 0", name="ck_purchase_orders_total_non_negative"),
        CheckConstraint("version >= 1", name="ck_purchase_orders_version_positive"),
        Index("idx_purchase_orders_status", "status"),
        Index("idx_purchase_orders_supplier", "supplier_id"),
        Index("idx_purchase_orders_created", "created_at"),
    )

    supplier_id: Mapped[str] = mapped_column(String(100), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=OrderStatus.DRAFT.value,
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str] = mapped_column(String(100), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    approved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)
    received_at: Mapped[datetime | None] = mapped_column(nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)

    items: Mapped[list["PurchaseItemModel"]] = relationship(
        "PurchaseItemModel",
        back_populates="purchase_order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="PurchaseItemModel.line_number",
    )

    @property
    def order_status(self) -> OrderStatus:
        return OrderStatus(self.status)

    def item_by_id(self, item_id: UUID) -> "PurchaseItemModel | None":
        for item in self.items:
            if item.id == item_id:
                return item
        return None

    def all_items_received(self) -> bool:
        return bool(self.items) and all(
            item.received_qty == item.quantity for item in self.items
        )

    def to_dto(self) -> PurchaseOrderView:
        return PurchaseOrderView(
            id=self.id,
            supplier_id=self.supplier_id,
            status=OrderStatus(self.status),
            total_amount=quantize_money(self.total_amount),
            currency=self.currency,
            created_by=self.created_by,
            version=self.version,
            items=tuple(item.to_dto() for item in self.items),
            notes=self.notes,
            created_at=self.created_at,
            approved_at=self.approved_at,
            paid_at=self.paid_at,
            received_at=self.received_at,
            closed_at=self.closed_at,
            cancelled_at=self.cancelled_at,
        )

    def __repr__(self) -> str:
        return f"<PurchaseOrderModel {self.id} [{self.status}] v{self.version}>"


class PurchaseItemModel(TrackedBase):
    """
    A line item on a purchase order.

    Guarantees:
        - Belongs to exactly one ``PurchaseOrderModel``.
        - (purchase_order_id, product_id) and (purchase_order_id,
          line_number) are unique.
        - quantity and unit_price are frozen once the order leaves DRAFT.
    """

    __tablename__ = "purchase_items"

    __table_args__ = (
        UniqueConstraint("purchase_order_id", "product_id", name="uq_purchase_item_product"),
        UniqueConstraint("purchase_order_id", "line_number", name="uq_purchase_item_line"),
        CheckConstraint("quantity > 0", name="ck_purchase_items_quantity_positive"),
        CheckConstraint("unit_price > 0", name="ck_purchase_items_price_positive"),
        CheckConstraint(
            "received_qty >= 0 AND received_qty <= quantity",
            name="ck_purchase_items_received_within_ordered",
        ),
        Index("idx_purchase_items_order", "purchase_order_id"),
    )

    purchase_order_id: Mapped[UUID] = mapped_column(
        ForeignKey("purchase_orders.id"), nullable=False,
    )
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)
    product_id: Mapped[str] = mapped_column(String(100), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(nullable=False)
    total_price: Mapped[Decimal] = mapped_column(nullable=False)
    received_qty: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    purchase_order: Mapped["PurchaseOrderModel"] = relationship(
        "PurchaseOrderModel",
        back_populates="items",
    )

    def to_dto(self) -> PurchaseItemView:
        return PurchaseItemView(
            id=self.id,
            product_id=self.product_id,
            line_number=self.line_number,
            quantity=self.quantity,
            unit_price=quantize_money(self.unit_price),
            total_price=quantize_money(self.total_price),
            received_qty=self.received_qty,
        )

    def __repr__(self) -> str:
        return (
            f"<PurchaseItemModel #{self.line_number} {self.product_id} "
            f"{self.received_qty}/{self.quantity}>"
        )
