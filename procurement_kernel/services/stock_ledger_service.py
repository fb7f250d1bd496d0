"""
StockLedgerService -- append-only stock movements with a quantity projection.

Responsibility:
    Reference implementation of the stock ledger the goods receipt
    processor appends to.  Each append records (previous_stock, delta,
    new_stock) and is idempotent on its causation id.

Architecture position:
    Kernel > Services -- collaborator owned by the inventory side.  The
    receipt processor only calls ``append``; it never edits or removes an
    entry and never assumes an append can be rolled back.

Invariants enforced:
    - One entry per causation id (unique constraint + lookup).
    - The projection row is changed with a single atomic upsert
      (``quantity = quantity + delta``), never read-modify-write, so
      concurrent receipts of the same product on different orders cannot
      lose an update.

Failure modes:
    - DuplicateCausationError when the causation id was already applied.
      Carries the original stock figures; callers treat it as success.
    - ValueError for a zero delta.
"""

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from procurement_kernel.domain.dtos import LedgerAppendResult
from procurement_kernel.exceptions import DuplicateCausationError
from procurement_kernel.logging_config import get_logger
from procurement_kernel.models.stock import ProductStockModel, StockLedgerEntryModel
from procurement_kernel.services.base import BaseService

logger = get_logger("services.stock_ledger")

_UPSERT_BY_DIALECT = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


class StockLedgerService(BaseService[StockLedgerEntryModel]):
    """
    Append-only stock ledger.

    Contract:
        ``append`` either writes exactly one entry and moves the projection
        by ``delta``, or raises DuplicateCausationError without writing.

    Non-goals:
        - Does NOT commit.
        - Does NOT value inventory (quantities only).
    """

    RECEIPT_REASON = "purchase_receipt"

    def __init__(self, session: Session):
        super().__init__(session)

    def append(
        self,
        product_id: str,
        delta: int,
        causation_id: str,
        reason: str = RECEIPT_REASON,
    ) -> LedgerAppendResult:
        if delta == 0:
            raise ValueError("Stock ledger delta must be non-zero")

        existing = self.find_by_causation(causation_id)
        if existing is not None:
            logger.info(
                "stock_ledger_duplicate_causation",
                extra={"causation_id": causation_id, "product_id": product_id},
            )
            raise DuplicateCausationError(
                causation_id,
                previous_stock=existing.previous_stock,
                new_stock=existing.new_stock,
            )

        new_stock = self._apply_to_projection(product_id, delta)
        previous_stock = new_stock - delta

        entry = StockLedgerEntryModel(
            product_id=product_id,
            delta=delta,
            previous_stock=previous_stock,
            new_stock=new_stock,
            reason=reason,
            causation_id=causation_id,
        )
        self.session.add(entry)
        self.session.flush()

        logger.info(
            "stock_ledger_appended",
            extra={
                "product_id": product_id,
                "delta": delta,
                "previous_stock": previous_stock,
                "new_stock": new_stock,
                "causation_id": causation_id,
                "reason": reason,
            },
        )
        return entry.to_result()

    def current_stock(self, product_id: str) -> int:
        quantity = self.session.execute(
            select(ProductStockModel.quantity)
            .where(ProductStockModel.product_id == product_id)
        ).scalar_one_or_none()
        return quantity or 0

    def find_by_causation(self, causation_id: str) -> StockLedgerEntryModel | None:
        return self.session.execute(
            select(StockLedgerEntryModel)
            .where(StockLedgerEntryModel.causation_id == causation_id)
        ).scalar_one_or_none()

    def entries_for(self, product_id: str) -> list[LedgerAppendResult]:
        rows = self.session.execute(
            select(StockLedgerEntryModel)
            .where(StockLedgerEntryModel.product_id == product_id)
            .order_by(StockLedgerEntryModel.created_at, StockLedgerEntryModel.new_stock)
        ).scalars()
        return [row.to_result() for row in rows]

    def _apply_to_projection(self, product_id: str, delta: int) -> int:
        """Upsert the projection row and return the resulting quantity."""
        self.session.flush()
        dialect = self.session.get_bind().dialect.name
        insert = _UPSERT_BY_DIALECT.get(dialect)
        if insert is None:
            raise RuntimeError(f"Stock ledger upsert not supported on dialect {dialect}")

        stmt = insert(ProductStockModel).values(product_id=product_id, quantity=delta)
        stmt = stmt.on_conflict_do_update(
            index_elements=[ProductStockModel.product_id],
            set_={
                "quantity": ProductStockModel.quantity + stmt.excluded.quantity,
                "updated_at": func.now(),
            },
        )
        self.session.execute(stmt)

        return self.session.execute(
            select(ProductStockModel.quantity)
            .where(ProductStockModel.product_id == product_id)
            .execution_options(populate_existing=True)
        ).scalar_one()
