"""
ORM-Level Immutability Enforcement.

===============================================================================
WHY THIS EXISTS
===============================================================================

Two kinds of records in the engine must never be rewritten in place:

  * Receipt evidence (goods receipts, stock ledger entries) is append-only.
    A correction is a new entry, never an edit.
  * Commercial terms of an order (item quantity and price) are frozen once
    the order leaves DRAFT, so the amount charged at intent creation can
    never drift from the order it was charged for.

SQLAlchemy fires events before UPDATE/DELETE operations reach the database.
The listeners below intercept them and raise ImmutabilityViolationError, so
the transaction aborts and the database is never modified.  Core-level
UPDATE statements issued by the repository bypass these listeners by design
of SQLAlchemy; those statements carry their own WHERE-clause guards.

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity                | When Immutable                 | Rule
----------------------|--------------------------------|-------------------------------
StockLedgerEntry      | ALWAYS                         | No UPDATE, no DELETE
GoodsReceipt          | ALWAYS                         | No UPDATE, no DELETE
PurchaseItem          | Order status != DRAFT          | product/quantity/price frozen
PurchaseItem          | ALWAYS                         | received_qty never decreases
Payment               | ALWAYS                         | order/generation/key/amount frozen
Payment               | Once set                       | external_intent_id frozen
"""

from sqlalchemy import event, inspect

from procurement_kernel.exceptions import ImmutabilityViolationError
from procurement_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

ITEM_TERMS_FIELDS = frozenset({"product_id", "quantity", "unit_price", "total_price"})
PAYMENT_FROZEN_FIELDS = frozenset({"purchase_order_id", "generation", "idempotency_key", "amount"})

_registered = False


def _violation(entity_type: str, target, operation: str, reason: str, field: str | None = None):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "operation": operation,
            "field": field,
        },
    )
    return ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


def _check_append_only_update(mapper, connection, target):
    """Append-only rows cannot be updated."""
    entity_type = type(target).__name__.removesuffix("Model")
    raise _violation(entity_type, target, "UPDATE", f"{entity_type} records are append-only")


def _check_append_only_delete(mapper, connection, target):
    """Append-only rows cannot be deleted."""
    entity_type = type(target).__name__.removesuffix("Model")
    raise _violation(entity_type, target, "DELETE", f"{entity_type} records are append-only")


def _check_purchase_item_update(mapper, connection, target):
    """Freeze commercial terms outside DRAFT; forbid received_qty decreases."""
    from procurement_kernel.domain.lifecycle import OrderStatus

    insp = inspect(target)

    received = insp.attrs.received_qty.history
    if received.deleted and received.added:
        old, new = received.deleted[0], received.added[0]
        if old is not None and new is not None and new < old:
            raise _violation(
                "PurchaseItem", target, "UPDATE",
                f"received_qty cannot decrease ({old} -> {new})",
                field="received_qty",
            )

    order = target.purchase_order
    if order is None or order.status == OrderStatus.DRAFT.value:
        return

    for key in ITEM_TERMS_FIELDS:
        if insp.attrs[key].history.has_changes():
            raise _violation(
                "PurchaseItem", target, "UPDATE",
                f"'{key}' is frozen once the order leaves DRAFT (status={order.status})",
                field=key,
            )


def _check_purchase_item_delete(mapper, connection, target):
    """Items can only be removed while the order is a DRAFT."""
    from procurement_kernel.domain.lifecycle import OrderStatus

    order = target.purchase_order
    if order is not None and order.status != OrderStatus.DRAFT.value:
        raise _violation(
            "PurchaseItem", target, "DELETE",
            f"items cannot be removed once the order leaves DRAFT (status={order.status})",
        )


def _check_payment_update(mapper, connection, target):
    """Payment identity and amount never change; intent id is write-once."""
    insp = inspect(target)
    for key in PAYMENT_FROZEN_FIELDS:
        if insp.attrs[key].history.has_changes():
            raise _violation(
                "Payment", target, "UPDATE", f"'{key}' cannot change", field=key,
            )

    intent = insp.attrs.external_intent_id.history
    if intent.deleted and intent.deleted[0] is not None and intent.has_changes():
        raise _violation(
            "Payment", target, "UPDATE",
            "external_intent_id is write-once",
            field="external_intent_id",
        )


def _check_payment_delete(mapper, connection, target):
    """Payments are evidence of money movement and are never deleted."""
    raise _violation("Payment", target, "DELETE", "payments cannot be deleted")


def register_immutability_listeners() -> None:
    """
    Register all immutability enforcement event listeners (idempotent).

    Called by create_tables(); tests that build the schema themselves call
    it directly.
    """
    global _registered
    if _registered:
        return

    from procurement_kernel.models.payment import PaymentModel
    from procurement_kernel.models.purchase_order import PurchaseItemModel
    from procurement_kernel.models.stock import GoodsReceiptModel, StockLedgerEntryModel

    for model in (StockLedgerEntryModel, GoodsReceiptModel):
        event.listen(model, "before_update", _check_append_only_update)
        event.listen(model, "before_delete", _check_append_only_delete)

    event.listen(PurchaseItemModel, "before_update", _check_purchase_item_update)
    event.listen(PurchaseItemModel, "before_delete", _check_purchase_item_delete)

    event.listen(PaymentModel, "before_update", _check_payment_update)
    event.listen(PaymentModel, "before_delete", _check_payment_delete)

    _registered = True
    logger.debug("immutability_listeners_registered")


def unregister_immutability_listeners() -> None:
    """Remove all immutability listeners. FOR TESTING ONLY."""
    global _registered
    if not _registered:
        return

    from procurement_kernel.models.payment import PaymentModel
    from procurement_kernel.models.purchase_order import PurchaseItemModel
    from procurement_kernel.models.stock import GoodsReceiptModel, StockLedgerEntryModel

    for model in (StockLedgerEntryModel, GoodsReceiptModel):
        event.remove(model, "before_update", _check_append_only_update)
        event.remove(model, "before_delete", _check_append_only_delete)

    event.remove(PurchaseItemModel, "before_update", _check_purchase_item_update)
    event.remove(PurchaseItemModel, "before_delete", _check_purchase_item_delete)

    event.remove(PaymentModel, "before_update", _check_payment_update)
    event.remove(PaymentModel, "before_delete", _check_payment_delete)

    _registered = False
