"""
PaymentIntentManager -- one chargeable intent per order, one charge ever.

Responsibility:
    Creates, reuses, reconciles, and cancels payment intents for purchase
    orders.  The order moves to PAID only after the processor confirms the
    charge, and never twice.

Architecture position:
    Services (orchestration).  Called by ``PurchaseOrderService`` while it
    holds the per-order lock.  Uses the kernel repository and state machine
    for persistence and transitions, and a ``PaymentGateway`` adapter for
    the processor.

Invariants enforced:
    - At most one active (PENDING, PROCESSING, SUCCEEDED) payment per
      order.  Lock-guarded check-then-insert, backed by the partial unique
      index on ``payments``.
    - The payment row is committed before the processor is called, and the
      processor is always called with that row's idempotency key.  A
      retried call after a timeout or a crash reuses the row and the key,
      so the processor never creates a second intent.
    - Reconciliation is monotonic in status rank; stale and repeated
      reports are no-ops.

Failure modes:
    - PaymentAlreadyCompletedError when the order already has a succeeded
      payment.
    - InvalidTransitionError when the order is not APPROVED.
    - GatewayError (retryable) on timeout or transport failure; the payment
      stays PENDING.
    - GatewayDeclinedError (not retryable); the payment becomes FAILED.
    - ConflictError when the active-payment index rejects an insert.
    - PaymentNotFoundError for unknown payment or intent ids.

Transaction model:
    ``initiate_payment`` commits twice (the payment row, then the intent
    binding).  ``reconcile`` and ``handle_gateway_event`` only flush; the
    caller commits.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from procurement_kernel.domain.clock import Clock, SystemClock
from procurement_kernel.domain.dtos import PaymentIntentResult, PaymentReconciliation
from procurement_kernel.domain.lifecycle import OrderStatus, PaymentStatus
from procurement_kernel.exceptions import (
    ConflictError,
    GatewayError,
    InvalidTransitionError,
    PaymentAlreadyCompletedError,
    PaymentNotFoundError,
)
from procurement_kernel.logging_config import LogContext, get_logger
from procurement_kernel.models.payment import PaymentModel
from procurement_kernel.models.purchase_order import PurchaseOrderModel
from procurement_kernel.services.order_repository import OrderRepository
from procurement_kernel.services.order_state_machine import OrderStateMachine
from procurement_kernel.utils.idempotency import payment_idempotency_key
from procurement_kernel.utils.locking import call_with_timeout
from procurement_services.payment_gateway import PaymentGateway, normalize_gateway_status

logger = get_logger("services.payment_intent_manager")

ACTION_INITIATE_PAYMENT = "initiate_payment"
DEFAULT_FAILURE_REASON = "declined by payment processor"


class PaymentIntentManager:
    """
    Idempotent payment intent lifecycle for purchase orders.

    Contract:
        Every method expects the caller to hold the order's lock, except
        ``find_reusable_intent`` which is a read-only fast path.
    """

    def __init__(
        self,
        session: Session,
        gateway: PaymentGateway,
        clock: Clock | None = None,
        gateway_timeout_seconds: float = 10.0,
    ):
        self.session = session
        self._gateway = gateway
        self._clock = clock or SystemClock()
        self._timeout = gateway_timeout_seconds
        self._repository = OrderRepository(session)
        self._state_machine = OrderStateMachine(session, self._repository, self._clock)

    # -------------------------------------------------------------------------
    # Initiation
    # -------------------------------------------------------------------------

    def find_reusable_intent(self, order_id: UUID) -> PaymentIntentResult | None:
        """
        Return the order's open intent if one already carries a client
        secret, without taking the lock.

        Raises the same precondition errors as ``initiate_payment``.
        """
        order = self._repository.load(order_id)
        open_payment = self._check_payable(order)
        if open_payment is not None and open_payment.client_secret:
            return self._reused(open_payment)
        return None

    def initiate_payment(self, order_id: UUID) -> PaymentIntentResult:
        """
        Create (or reuse) the order's payment intent.

        Must run under the order's lock.  Re-checks every precondition
        because another handler may have acted since the fast path.
        """
        order = self._repository.load_for_update(order_id)
        open_payment = self._check_payable(order)
        if open_payment is not None and open_payment.client_secret:
            self.session.commit()
            return self._reused(open_payment)

        if open_payment is None:
            payment = self._insert_payment(order)
        else:
            # Earlier processor call never answered; same row, same key.
            payment = open_payment
            logger.info(
                "payment_intent_retry",
                extra={
                    "payment_id": str(payment.id),
                    "generation": payment.generation,
                    "idempotency_key": payment.idempotency_key,
                },
            )

        payment_id = payment.id
        amount = payment.amount
        currency = payment.currency
        idempotency_key = payment.idempotency_key
        metadata = {
            "order_id": str(order.id),
            "payment_id": str(payment_id),
            "generation": str(payment.generation),
        }
        self.session.commit()

        with LogContext.bind(payment_id=payment_id):
            try:
                intent = call_with_timeout(
                    self._gateway.create_intent,
                    amount,
                    currency,
                    idempotency_key,
                    metadata,
                    timeout=self._timeout,
                    operation="create_intent",
                )
            except GatewayError as e:
                self._record_gateway_failure(payment_id, e)
                raise

            payment = self._repository.get_payment(payment_id)
            if payment.external_intent_id is None:
                payment.external_intent_id = intent.intent_id
            payment.client_secret = intent.client_secret
            self.session.flush()
            if intent.status is not PaymentStatus.PENDING:
                # Processor settled the intent on creation; order follows.
                self.reconcile(payment_id, intent.status)
            self.session.commit()

            logger.info(
                "payment_intent_created",
                extra={
                    "payment_id": str(payment_id),
                    "intent_id": intent.intent_id,
                    "amount": amount,
                    "currency": currency,
                    "generation": payment.generation,
                },
            )
        return PaymentIntentResult(
            payment=payment.to_dto(),
            client_secret=intent.client_secret,
            intent_id=intent.intent_id,
            created=True,
        )

    def _check_payable(self, order: PurchaseOrderModel) -> PaymentModel | None:
        """
        Check-then-act guard shared by the fast path and the locked path.

        Returns the order's open (PENDING or PROCESSING) payment, if any.
        """
        payments = self._repository.list_payments(order.id)
        for payment in payments:
            if payment.payment_status is PaymentStatus.SUCCEEDED:
                logger.info(
                    "payment_already_completed",
                    extra={"order_id": str(order.id), "payment_id": str(payment.id)},
                )
                raise PaymentAlreadyCompletedError(str(order.id), str(payment.id))

        if order.status != OrderStatus.APPROVED.value:
            raise InvalidTransitionError(
                str(order.id),
                ACTION_INITIATE_PAYMENT,
                order.status,
                (OrderStatus.APPROVED.value,),
            )

        for payment in payments:
            if payment.payment_status.is_open:
                return payment
        return None

    def _insert_payment(self, order: PurchaseOrderModel) -> PaymentModel:
        generation = self._repository.next_payment_generation(order.id)
        payment = PaymentModel(
            purchase_order_id=order.id,
            generation=generation,
            idempotency_key=payment_idempotency_key(order.id, generation),
            amount=order.total_amount,
            currency=order.currency,
            status=PaymentStatus.PENDING.value,
        )
        self.session.add(payment)
        try:
            self.session.flush()
        except IntegrityError as e:
            self.session.rollback()
            logger.warning(
                "payment_insert_conflict",
                extra={"order_id": str(order.id), "generation": generation},
            )
            raise ConflictError(
                str(order.id),
                reason="another active payment exists for this order",
            ) from e

        logger.info(
            "payment_created",
            extra={
                "order_id": str(order.id),
                "payment_id": str(payment.id),
                "generation": generation,
                "amount": order.total_amount,
            },
        )
        return payment

    def _record_gateway_failure(self, payment_id: UUID, error: GatewayError) -> None:
        if error.retryable:
            logger.warning(
                "payment_intent_ambiguous",
                extra={
                    "payment_id": str(payment_id),
                    "error_code": error.code,
                    "reason": error.reason,
                },
            )
            return

        payment = self._repository.get_payment(payment_id)
        if payment.payment_status.is_open:
            payment.status = PaymentStatus.FAILED.value
            payment.failure_reason = error.reason[:500]
            self.session.commit()
        logger.warning(
            "payment_intent_declined",
            extra={"payment_id": str(payment_id), "reason": error.reason},
        )

    @staticmethod
    def _reused(payment: PaymentModel) -> PaymentIntentResult:
        logger.info(
            "payment_intent_reused",
            extra={"payment_id": str(payment.id), "intent_id": payment.external_intent_id},
        )
        return PaymentIntentResult(
            payment=payment.to_dto(),
            client_secret=payment.client_secret,
            intent_id=payment.external_intent_id,
            created=False,
        )

    # -------------------------------------------------------------------------
    # Reconciliation
    # -------------------------------------------------------------------------

    def reconcile(
        self,
        payment_id: UUID,
        gateway_status: str | PaymentStatus,
    ) -> PaymentReconciliation:
        """
        Align a payment (and its order) with the processor's status.

        A report that does not strictly raise the payment's status rank is
        stale or repeated and changes nothing, except that a repeated
        SUCCEEDED still repairs an order left APPROVED.
        """
        reported = normalize_gateway_status(gateway_status)
        payment = self._repository.get_payment(payment_id)
        order = self._repository.load(payment.purchase_order_id)
        current = payment.payment_status

        if reported.rank <= current.rank:
            applied = False
            if (
                reported is PaymentStatus.SUCCEEDED
                and current is PaymentStatus.SUCCEEDED
                and order.status == OrderStatus.APPROVED.value
            ):
                self._state_machine.mark_paid(order.id, payment.id)
                applied = True
            logger.info(
                "payment_report_ignored",
                extra={
                    "payment_id": str(payment.id),
                    "current_status": current.value,
                    "reported_status": reported.value,
                    "order_repaired": applied,
                },
            )
            return PaymentReconciliation(payment.to_dto(), order.to_dto(), applied)

        payment.status = reported.value
        if reported is PaymentStatus.FAILED and not payment.failure_reason:
            payment.failure_reason = DEFAULT_FAILURE_REASON
        self.session.flush()

        logger.info(
            "payment_reconciled",
            extra={
                "payment_id": str(payment.id),
                "from_status": current.value,
                "to_status": reported.value,
            },
        )

        if reported is PaymentStatus.SUCCEEDED:
            if order.status == OrderStatus.APPROVED.value:
                self._state_machine.mark_paid(order.id, payment.id)
            else:
                logger.error(
                    "payment_succeeded_for_inactive_order",
                    extra={
                        "order_id": str(order.id),
                        "payment_id": str(payment.id),
                        "order_status": order.status,
                    },
                )

        return PaymentReconciliation(payment.to_dto(), order.to_dto(), True)

    def resolve_event_payment(self, intent_id: str, payment_id: str | None = None) -> PaymentModel:
        """
        Find the payment a processor event refers to: by intent id, or by
        the payment id sent as metadata when the intent was created.
        """
        payment = self._repository.find_payment_by_intent(intent_id)
        if payment is not None:
            return payment
        if payment_id:
            try:
                local_id = UUID(str(payment_id))
            except ValueError:
                raise PaymentNotFoundError(str(payment_id)) from None
            payment = self._repository.get_payment(local_id)
            if payment.external_intent_id in (None, intent_id):
                return payment
        raise PaymentNotFoundError(intent_id)

    def handle_gateway_event(
        self,
        intent_id: str,
        status: str | PaymentStatus,
        payment_id: str | None = None,
    ) -> PaymentReconciliation:
        """Apply a processor webhook for ``intent_id``."""
        payment = self.resolve_event_payment(intent_id, payment_id)
        if payment.external_intent_id is None:
            # Webhook arrived before the creation response was stored.
            payment.external_intent_id = intent_id
            self.session.flush()
            logger.info(
                "payment_intent_bound_from_event",
                extra={"payment_id": str(payment.id), "intent_id": intent_id},
            )
        return self.reconcile(payment.id, status)

    # -------------------------------------------------------------------------
    # Cancellation
    # -------------------------------------------------------------------------

    def cancel_active_payments(self, order_id: UUID) -> list[PaymentModel]:
        """
        Best-effort cancel of the order's open intents at the processor.

        A payment is marked CANCELED locally only when the processor
        accepted the cancel (or no intent was ever created).  Processor
        failures are logged and never raised.

        A payment whose creation call never answered has no intent id; the
        creation is replayed under the same idempotency key to learn it.
        """
        cancelled = []
        for payment in self._repository.list_payments(order_id):
            if not payment.payment_status.is_open:
                continue
            if payment.external_intent_id is None and not self._recover_intent_id(payment):
                continue
            if payment.external_intent_id is not None:
                try:
                    call_with_timeout(
                        self._gateway.cancel_intent,
                        payment.external_intent_id,
                        timeout=self._timeout,
                        operation="cancel_intent",
                    )
                except GatewayError as e:
                    logger.warning(
                        "gateway_cancel_failed",
                        extra={
                            "payment_id": str(payment.id),
                            "intent_id": payment.external_intent_id,
                            "error_code": e.code,
                            "reason": e.reason,
                        },
                    )
                    continue
            payment.status = PaymentStatus.CANCELED.value
            cancelled.append(payment)
            logger.info(
                "payment_cancelled",
                extra={"payment_id": str(payment.id), "intent_id": payment.external_intent_id},
            )
        self.session.flush()
        return cancelled

    def _recover_intent_id(self, payment: PaymentModel) -> bool:
        """
        Replay the creation call for a payment with no intent id.

        Returns False when the processor could not answer, in which case an
        intent may exist there that nothing local points to.  A decline
        means no intent was created, which is not a failure here.
        """
        try:
            intent = call_with_timeout(
                self._gateway.create_intent,
                payment.amount,
                payment.currency,
                payment.idempotency_key,
                {
                    "order_id": str(payment.purchase_order_id),
                    "payment_id": str(payment.id),
                    "generation": str(payment.generation),
                },
                timeout=self._timeout,
                operation="create_intent",
            )
        except GatewayError as e:
            if not e.retryable:
                return True
            logger.warning(
                "payment_intent_possibly_orphaned",
                extra={
                    "payment_id": str(payment.id),
                    "idempotency_key": payment.idempotency_key,
                    "error_code": e.code,
                    "reason": e.reason,
                },
            )
            return False

        payment.external_intent_id = intent.intent_id
        payment.client_secret = intent.client_secret
        self.session.flush()
        logger.info(
            "payment_intent_recovered",
            extra={"payment_id": str(payment.id), "intent_id": intent.intent_id},
        )
        return True
