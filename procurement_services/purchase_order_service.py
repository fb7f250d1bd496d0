"""
Purchase Order Service (``procurement_services.purchase_order_service``).

Responsibility
--------------
The exposed API of the engine: order authoring, approval, payment,
goods receipt, close, cancel, and the read queries.  Each public method
answers with a frozen DTO from ``procurement_kernel.domain.dtos`` or raises
a typed ``ProcurementError``.

Architecture position
---------------------
**Services layer** -- orchestration.  Owns sessions (one per operation,
from the injected session factory), the per-order lock, transaction
boundaries, and the log context.  Delegates transitions to
``OrderStateMachine``, payments to ``PaymentIntentManager``, and receipts
to ``GoodsReceiptProcessor``.

Invariants enforced
-------------------
* Every mutating operation on an order runs while holding that order's
  lock; operations on different orders never contend.
* Each public method commits on success and rolls back on any exception
  (``committing``); errors are re-raised, never swallowed.
* Every operation returns the fresh view; callers never refetch.

Failure modes
-------------
* Typed errors from the kernel and managers propagate unchanged.
* ``LockTimeoutError`` when the order lock is not acquired in time.
* Database faults propagate untouched after rollback.

Usage::

    service = PurchaseOrderService(session_factory, InMemoryPaymentGateway())
    order = service.create_order(
        supplier_id="SUP-001",
        items=[NewItem("SKU-1", 10, Decimal("5.00"))],
        created_by="buyer-7",
    )
    service.approve(order.id)
    intent = service.initiate_payment(order.id)
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from decimal import Decimal, InvalidOperation
from typing import Any
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from procurement_config.schema import EngineConfig
from procurement_kernel.domain.clock import Clock, SystemClock
from procurement_kernel.domain.dtos import (
    GoodsReceiptView,
    NewItem,
    OrderStatistics,
    PaymentIntentResult,
    PaymentReconciliation,
    PaymentView,
    PurchaseOrderView,
    ReceiptResult,
)
from procurement_kernel.domain.lifecycle import ACTION_CANCEL, OrderStatus, PaymentStatus
from procurement_kernel.exceptions import (
    ConflictError,
    InvalidOrderError,
    ItemNotFoundError,
    OrderNotFoundError,
    PaymentNotFoundError,
)
from procurement_kernel.logging_config import LogContext, get_logger
from procurement_kernel.models.purchase_order import PurchaseItemModel, PurchaseOrderModel
from procurement_kernel.selectors.order_selector import OrderSelector
from procurement_kernel.services.base import committing
from procurement_kernel.services.order_repository import OrderRepository
from procurement_kernel.services.order_state_machine import OrderStateMachine
from procurement_kernel.services.stock_ledger_service import StockLedgerService
from procurement_kernel.utils.locking import DEFAULT_ORDER_LOCKS, OrderLockRegistry
from procurement_services.goods_receipt_processor import GoodsReceiptProcessor
from procurement_services.payment_gateway import InMemoryPaymentGateway, PaymentGateway
from procurement_services.payment_intent_manager import PaymentIntentManager

logger = get_logger("services.purchase_order_service")

ACTION_REPLACE_ITEMS = "replace_items"

ItemInput = NewItem | Mapping[str, Any] | Sequence[Any]


def _coerce_uuid(value: UUID | str, not_found: Callable[[str], Exception]) -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        raise not_found(str(value)) from None


class PurchaseOrderService:
    """
    Purchase order lifecycle and payment reconciliation engine.

    Contract
    --------
    * Thread-safe: one instance may serve many concurrent handlers; each
      call opens its own session.
    * Mutations of one order are serialized by ``locks`` (process-wide by
      default).

    Guarantees
    ----------
    * A supplier is charged at most once per order.
    * A receipt event (causation id) is applied at most once.
    * Clock is injectable for deterministic testing.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        gateway: PaymentGateway,
        config: EngineConfig | None = None,
        clock: Clock | None = None,
        locks: OrderLockRegistry | None = None,
    ):
        self._session_factory = session_factory
        self._gateway = gateway
        self._config = config or EngineConfig()
        self._clock = clock or SystemClock()
        self._locks = locks or DEFAULT_ORDER_LOCKS

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        gateway: PaymentGateway | None = None,
        clock: Clock | None = None,
    ) -> PurchaseOrderService:
        """
        Build a service against ``config.database_url``, creating tables.

        Uses Stripe when an API key is configured, else the in-memory
        gateway.
        """
        from procurement_kernel.db.engine import (
            create_tables,
            get_session_factory,
            init_engine_from_url,
        )

        init_engine_from_url(config.database_url, echo=config.echo_sql)
        create_tables()

        if gateway is None:
            if config.stripe_api_key:
                from procurement_services.stripe_gateway import StripePaymentGateway

                gateway = StripePaymentGateway(
                    config.stripe_api_key, config.stripe_webhook_secret,
                )
            else:
                gateway = InMemoryPaymentGateway()

        return cls(
            get_session_factory(),
            gateway,
            config=config,
            clock=clock,
            locks=OrderLockRegistry(default_timeout=config.lock_timeout_seconds),
        )

    @property
    def gateway(self) -> PaymentGateway:
        return self._gateway

    # =========================================================================
    # Plumbing
    # =========================================================================

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        with self._session_factory() as session, committing(session):
            yield session

    @contextmanager
    def _read(self) -> Iterator[Session]:
        with self._session_factory() as session:
            try:
                yield session
            finally:
                session.rollback()

    @contextmanager
    def _locked(self, order_id: UUID) -> Iterator[Session]:
        with LogContext.bind(order_id=order_id):
            with self._locks.hold(order_id, self._config.lock_timeout_seconds):
                with self._transaction() as session:
                    yield session

    def _payments(self, session: Session) -> PaymentIntentManager:
        return PaymentIntentManager(
            session,
            self._gateway,
            clock=self._clock,
            gateway_timeout_seconds=self._config.gateway_timeout_seconds,
        )

    # =========================================================================
    # Authoring
    # =========================================================================

    def create_order(
        self,
        supplier_id: str,
        items: Iterable[ItemInput],
        created_by: str,
        notes: str | None = None,
    ) -> PurchaseOrderView:
        """Create a DRAFT order (version 1) from validated items."""
        supplier_id = (supplier_id or "").strip()
        if not supplier_id:
            raise InvalidOrderError("supplier is required", field="supplier_id")
        created_by = (created_by or "").strip()
        if not created_by:
            raise InvalidOrderError("creator is required", field="created_by")
        lines = self._validate_items(items)

        with LogContext.bind(actor_id=created_by), self._transaction() as session:
            order = PurchaseOrderModel(
                supplier_id=supplier_id,
                currency=self._config.currency,
                status=OrderStatus.DRAFT.value,
                notes=notes,
                created_by=created_by,
                version=1,
                created_at=self._clock.now(),
                total_amount=sum((line.total_price for line in lines), Decimal("0")),
            )
            order.items = self._build_items(lines)
            OrderRepository(session).add(order)
            view = order.to_dto()

            logger.info(
                "purchase_order_created",
                extra={
                    "order_id": str(order.id),
                    "supplier_id": supplier_id,
                    "item_count": len(lines),
                    "total_amount": view.total_amount,
                },
            )
        return view

    def replace_items(self, order_id: UUID | str, items: Iterable[ItemInput]) -> PurchaseOrderView:
        """Replace every item of a DRAFT order and recompute its total."""
        order_id = _coerce_uuid(order_id, OrderNotFoundError)
        lines = self._validate_items(items)

        with self._locked(order_id) as session:
            repository = OrderRepository(session)
            order = repository.load_for_update(order_id)
            OrderStateMachine(session, repository, self._clock).ensure_status(
                order, ACTION_REPLACE_ITEMS, OrderStatus.DRAFT,
            )

            order.items.clear()
            session.flush()
            order.items.extend(self._build_items(lines))
            total = sum((line.total_price for line in lines), Decimal("0"))
            repository.compare_and_set_status(
                order.id, OrderStatus.DRAFT, OrderStatus.DRAFT, order.version,
                total_amount=total,
            )
            order = repository.load(order_id)

            logger.info(
                "purchase_order_items_replaced",
                extra={
                    "order_id": str(order_id),
                    "item_count": len(lines),
                    "total_amount": total,
                    "version": order.version,
                },
            )
            return order.to_dto()

    def _validate_items(self, items: Iterable[ItemInput]) -> list[NewItem]:
        lines: list[NewItem] = []
        seen: set[str] = set()
        for index, raw in enumerate(items or ()):
            line = self._coerce_item(raw, index)
            if line.product_id in seen:
                raise InvalidOrderError(
                    f"duplicate product {line.product_id}", field=f"items[{index}].product_id",
                )
            seen.add(line.product_id)
            lines.append(line)
        if not lines:
            raise InvalidOrderError("at least one item is required", field="items")
        return lines

    @staticmethod
    def _coerce_item(raw: ItemInput, index: int) -> NewItem:
        if isinstance(raw, NewItem):
            product_id, quantity, unit_price = raw.product_id, raw.quantity, raw.unit_price
        elif isinstance(raw, Mapping):
            product_id = raw.get("product_id")
            quantity = raw.get("quantity")
            unit_price = raw.get("unit_price")
        else:
            try:
                product_id, quantity, unit_price = raw
            except (TypeError, ValueError):
                raise InvalidOrderError(
                    "item must be (product_id, quantity, unit_price)", field=f"items[{index}]",
                ) from None

        product_id = str(product_id or "").strip()
        if not product_id:
            raise InvalidOrderError("product is required", field=f"items[{index}].product_id")

        if isinstance(quantity, bool) or not isinstance(quantity, int):
            try:
                quantity = int(str(quantity))
            except ValueError:
                raise InvalidOrderError(
                    "quantity must be an integer", field=f"items[{index}].quantity",
                ) from None
        if quantity <= 0:
            raise InvalidOrderError(
                "quantity must be greater than zero", field=f"items[{index}].quantity",
            )

        try:
            price = Decimal(str(unit_price))
        except (InvalidOperation, ValueError):
            raise InvalidOrderError(
                "unit price must be a number", field=f"items[{index}].unit_price",
            ) from None
        if not price.is_finite() or price <= 0:
            raise InvalidOrderError(
                "unit price must be greater than zero", field=f"items[{index}].unit_price",
            )

        return NewItem(product_id=product_id, quantity=quantity, unit_price=price)

    @staticmethod
    def _build_items(lines: Sequence[NewItem]) -> list[PurchaseItemModel]:
        return [
            PurchaseItemModel(
                line_number=number,
                product_id=line.product_id,
                quantity=line.quantity,
                unit_price=line.unit_price,
                total_price=line.total_price,
                received_qty=0,
            )
            for number, line in enumerate(lines, start=1)
        ]

    # =========================================================================
    # Transitions
    # =========================================================================

    def approve(self, order_id: UUID | str) -> PurchaseOrderView:
        order_id = _coerce_uuid(order_id, OrderNotFoundError)
        with self._locked(order_id) as session:
            return OrderStateMachine(session, clock=self._clock).approve(order_id).to_dto()

    def close(self, order_id: UUID | str) -> PurchaseOrderView:
        order_id = _coerce_uuid(order_id, OrderNotFoundError)
        with self._locked(order_id) as session:
            return OrderStateMachine(session, clock=self._clock).close(order_id).to_dto()

    def cancel(self, order_id: UUID | str) -> PurchaseOrderView:
        """
        Cancel a DRAFT or APPROVED order.

        Open payment intents are cancelled at the processor first, best
        effort; a processor failure never blocks the cancellation.
        """
        order_id = _coerce_uuid(order_id, OrderNotFoundError)
        with self._locked(order_id) as session:
            repository = OrderRepository(session)
            state_machine = OrderStateMachine(session, repository, self._clock)
            order = repository.load_for_update(order_id)
            state_machine.ensure_status(
                order, ACTION_CANCEL, OrderStatus.DRAFT, OrderStatus.APPROVED,
            )
            self._payments(session).cancel_active_payments(order_id)
            return state_machine.cancel(order_id).to_dto()

    # =========================================================================
    # Payments
    # =========================================================================

    def initiate_payment(self, order_id: UUID | str) -> PaymentIntentResult:
        """
        Return the order's payment intent, creating it if needed.

        Repeated and concurrent calls for one order answer with the same
        intent and client secret.
        """
        order_id = _coerce_uuid(order_id, OrderNotFoundError)
        with LogContext.bind(order_id=order_id):
            with self._read() as session:
                reusable = self._payments(session).find_reusable_intent(order_id)
            if reusable is not None:
                return reusable

        with self._locked(order_id) as session:
            return self._payments(session).initiate_payment(order_id)

    def reconcile_payment(
        self,
        payment_id: UUID | str,
        gateway_status: str | PaymentStatus,
    ) -> PaymentReconciliation:
        """Apply an explicit processor status for a payment."""
        payment_id = _coerce_uuid(payment_id, PaymentNotFoundError)
        with self._read() as session:
            order_id = OrderRepository(session).get_payment(payment_id).purchase_order_id

        with LogContext.bind(payment_id=payment_id), self._locked(order_id) as session:
            return self._payments(session).reconcile(payment_id, gateway_status)

    def handle_gateway_event(
        self,
        intent_id: str,
        status: str | PaymentStatus,
        payment_id: str | None = None,
    ) -> PaymentReconciliation:
        """Apply a processor webhook ``{intent_id, status}``."""
        with self._read() as session:
            payment = self._payments(session).resolve_event_payment(intent_id, payment_id)
            order_id = payment.purchase_order_id
            local_payment_id = payment.id

        with LogContext.bind(payment_id=local_payment_id), self._locked(order_id) as session:
            return self._payments(session).handle_gateway_event(intent_id, status, payment_id)

    # =========================================================================
    # Receipts
    # =========================================================================

    def receive(
        self,
        order_id: UUID | str,
        item_id: UUID | str,
        quantity: int,
        causation_id: str | None = None,
    ) -> ReceiptResult:
        """
        Apply a partial or full receipt of one item.

        A repeated ``causation_id`` is a successful no-op returning the
        original receipt.
        """
        order_id = _coerce_uuid(order_id, OrderNotFoundError)
        item_id = _coerce_uuid(item_id, lambda ref: ItemNotFoundError(str(order_id), ref))

        try:
            with LogContext.bind(causation_id=causation_id), self._locked(order_id) as session:
                return GoodsReceiptProcessor(session, clock=self._clock).receive(
                    order_id, item_id, quantity, causation_id,
                )
        except IntegrityError as e:
            # A concurrent writer recorded the same causation id first.
            if causation_id:
                with self._read() as session:
                    duplicate = GoodsReceiptProcessor(session).find_duplicate(causation_id)
                if duplicate is not None:
                    return duplicate
            raise ConflictError(str(order_id), reason="concurrent goods receipt") from e

    # =========================================================================
    # Queries
    # =========================================================================

    def get_order(self, order_id: UUID | str) -> PurchaseOrderView:
        order_id = _coerce_uuid(order_id, OrderNotFoundError)
        with self._read() as session:
            return OrderSelector(session).get_order(order_id)

    def list_orders(
        self,
        status: OrderStatus | str | None = None,
        supplier_id: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[PurchaseOrderView]:
        """Orders newest first, optionally filtered; page size is capped."""
        with self._read() as session:
            return OrderSelector(session).list_orders(
                status=OrderStatus(status) if status is not None else None,
                supplier_id=supplier_id,
                limit=self._config.clamp_page_size(limit),
                offset=max(0, offset),
            )

    def list_payments(self, order_id: UUID | str) -> list[PaymentView]:
        order_id = _coerce_uuid(order_id, OrderNotFoundError)
        with self._read() as session:
            return OrderSelector(session).list_payments(order_id)

    def get_payment(self, payment_id: UUID | str) -> PaymentView:
        payment_id = _coerce_uuid(payment_id, PaymentNotFoundError)
        with self._read() as session:
            return OrderSelector(session).get_payment(payment_id)

    def list_receipts(self, order_id: UUID | str) -> list[GoodsReceiptView]:
        order_id = _coerce_uuid(order_id, OrderNotFoundError)
        with self._read() as session:
            return OrderSelector(session).list_receipts(order_id)

    def statistics(self) -> OrderStatistics:
        with self._read() as session:
            return OrderSelector(session).statistics()

    def current_stock(self, product_id: str) -> int:
        with self._read() as session:
            return StockLedgerService(session).current_stock(product_id)
