"""
Module: procurement_kernel.models.stock
Responsibility: ORM persistence for the stock ledger (append-only deltas
    with a current-quantity projection) and for applied goods receipts.

Architecture position: Kernel > Models.  May import from db/base.py and
domain/ only.

Invariants enforced:
    - causation_id is unique on both ledger entries and goods receipts: one
      physical receipt event is applied at most once.
    - Ledger entries and goods receipts are append-only (ORM listeners in
      db/immutability.py).
    - new_stock == previous_stock + delta on every ledger entry.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from procurement_kernel.db.base import TrackedBase
from procurement_kernel.domain.dtos import GoodsReceiptView, LedgerAppendResult


class StockLedgerEntryModel(TrackedBase):
    """One stock movement for a product."""

    __tablename__ = "stock_ledger_entries"

    __table_args__ = (
        UniqueConstraint("causation_id", name="uq_stock_ledger_causation"),
        CheckConstraint(
            "new_stock = previous_stock + delta",
            name="ck_stock_ledger_arithmetic",
        ),
        Index("idx_stock_ledger_product", "product_id", "created_at"),
    )

    product_id: Mapped[str] = mapped_column(String(100), nullable=False)
    delta: Mapped[int] = mapped_column(Integer, nullable=False)
    previous_stock: Mapped[int] = mapped_column(Integer, nullable=False)
    new_stock: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(100), nullable=False)
    causation_id: Mapped[str] = mapped_column(String(255), nullable=False)

    def to_result(self) -> LedgerAppendResult:
        return LedgerAppendResult(
            product_id=self.product_id,
            delta=self.delta,
            previous_stock=self.previous_stock,
            new_stock=self.new_stock,
            causation_id=self.causation_id,
        )

    def __repr__(self) -> str:
        return f"<StockLedgerEntryModel {self.product_id} {self.delta:+d} [{self.causation_id}]>"


class ProductStockModel(TrackedBase):
    """Current-quantity projection of the ledger, one row per product."""

    __tablename__ = "product_stock"

    __table_args__ = (
        UniqueConstraint("product_id", name="uq_product_stock_product"),
    )

    product_id: Mapped[str] = mapped_column(String(100), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<ProductStockModel {self.product_id} qty={self.quantity}>"


class GoodsReceiptModel(TrackedBase):
    """
    One applied receipt event against a purchase order item.

    Guarantees:
        - causation_id is unique; replays are detected here first.
        - Records the stock figures returned by the ledger append.
    """

    __tablename__ = "goods_receipts"

    __table_args__ = (
        UniqueConstraint("causation_id", name="uq_goods_receipt_causation"),
        CheckConstraint("quantity > 0", name="ck_goods_receipts_quantity_positive"),
        Index("idx_goods_receipts_item", "item_id"),
        Index("idx_goods_receipts_order", "purchase_order_id"),
    )

    purchase_order_id: Mapped[UUID] = mapped_column(
        ForeignKey("purchase_orders.id"), nullable=False,
    )
    item_id: Mapped[UUID] = mapped_column(
        ForeignKey("purchase_items.id"), nullable=False,
    )
    product_id: Mapped[str] = mapped_column(String(100), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    causation_id: Mapped[str] = mapped_column(String(255), nullable=False)
    previous_stock: Mapped[int] = mapped_column(Integer, nullable=False)
    new_stock: Mapped[int] = mapped_column(Integer, nullable=False)

    def to_dto(self) -> GoodsReceiptView:
        return GoodsReceiptView(
            id=self.id,
            purchase_order_id=self.purchase_order_id,
            item_id=self.item_id,
            product_id=self.product_id,
            quantity=self.quantity,
            causation_id=self.causation_id,
            previous_stock=self.previous_stock,
            new_stock=self.new_stock,
            received_at=self.created_at,
        )

    def __repr__(self) -> str:
        return f"<GoodsReceiptModel {self.causation_id} qty={self.quantity}>"
