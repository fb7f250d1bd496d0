"""
Payment gateway adapter boundary.

Responsibility:
    Declares the three operations the engine needs from an external payment
    processor (create an intent, cancel an intent, report intent status) and
    maps processor status strings onto ``PaymentStatus``.

    ``InMemoryPaymentGateway`` is the reference implementation used by tests
    and local runs.  It behaves like a real processor where it matters:
    repeated ``create_intent`` calls with the same idempotency key return
    the same intent, and it can be told to fail, decline, or stall.

Architecture position:
    Services > adapters.  The payment intent manager depends only on the
    ``PaymentGateway`` ABC; ``StripePaymentGateway`` lives in
    stripe_gateway.py.

Failure modes:
    - GatewayDeclinedError for a terminal refusal.
    - GatewayError(retryable=True) for transport failures.
    - ValueError for a status string no processor produces.
"""

from __future__ import annotations

import itertools
import secrets
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal

from procurement_kernel.domain.lifecycle import PaymentStatus
from procurement_kernel.exceptions import GatewayDeclinedError, GatewayError
from procurement_kernel.logging_config import get_logger

logger = get_logger("services.payment_gateway")


_GATEWAY_STATUS_MAP = {
    "requires_payment_method": PaymentStatus.FAILED,
    "requires_new_method": PaymentStatus.FAILED,
    "requires_confirmation": PaymentStatus.PENDING,
    "requires_action": PaymentStatus.PENDING,
    "requires_capture": PaymentStatus.PROCESSING,
    "pending": PaymentStatus.PENDING,
    "processing": PaymentStatus.PROCESSING,
    "succeeded": PaymentStatus.SUCCEEDED,
    "failed": PaymentStatus.FAILED,
    "payment_failed": PaymentStatus.FAILED,
    "canceled": PaymentStatus.CANCELED,
    "cancelled": PaymentStatus.CANCELED,
}


def normalize_gateway_status(status: str | PaymentStatus) -> PaymentStatus:
    """
    Map a processor status string (or a PaymentStatus) to PaymentStatus.

    ``requires_payment_method`` and ``requires_new_method`` are how a
    processor reports a declined attempt on an existing intent, so both
    map to FAILED.  A status this engine does not know is a non-retryable
    GatewayError: replaying the same report cannot make it known.
    """
    if isinstance(status, PaymentStatus):
        return status
    key = str(status).strip().lower()
    if key.startswith("payment_intent."):
        key = key.split(".", 1)[1]
    try:
        return _GATEWAY_STATUS_MAP[key]
    except KeyError:
        pass
    try:
        return PaymentStatus(key.upper())
    except ValueError:
        raise GatewayError(
            "normalize_status",
            f"Unknown payment gateway status: {status!r}",
            retryable=False,
        ) from None


@dataclass(frozen=True)
class GatewayIntent:
    """What the processor answered for a created intent."""
    intent_id: str
    client_secret: str
    status: PaymentStatus = PaymentStatus.PENDING


@dataclass(frozen=True)
class GatewayEvent:
    """A status report for an intent, as delivered by a processor webhook."""
    intent_id: str
    status: PaymentStatus
    payment_id: str | None = None


class PaymentGateway(ABC):
    """
    External payment processor.

    Contract:
        ``create_intent`` is idempotent on ``idempotency_key``: the same key
        returns the same intent and never creates a second chargeable one.
    """

    @abstractmethod
    def create_intent(
        self,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> GatewayIntent:
        ...

    @abstractmethod
    def cancel_intent(self, intent_id: str) -> None:
        ...


@dataclass
class _StoredIntent:
    intent: GatewayIntent
    amount: Decimal
    currency: str
    idempotency_key: str
    metadata: dict[str, str] = field(default_factory=dict)
    status: PaymentStatus = PaymentStatus.PENDING


class InMemoryPaymentGateway(PaymentGateway):
    """
    Thread-safe in-process payment processor.

    Failure injection:
        ``fail_next(n, retryable=True)`` makes the next ``n`` creations raise
        (declines when ``retryable`` is False).  ``fail_after_create(n)``
        creates the intent but raises anyway, like a response lost in
        transit.  ``latency`` delays every creation.  ``fail_cancels`` makes
        ``cancel_intent`` raise.
    """

    def __init__(self, latency: float = 0.0):
        self.latency = latency
        self.fail_cancels = False
        self._lock = threading.Lock()
        self._by_key: dict[str, _StoredIntent] = {}
        self._by_id: dict[str, _StoredIntent] = {}
        self._counter = itertools.count(1)
        self._pending_failures: list[bool] = []
        self._lost_responses = 0
        self.create_calls = 0
        self.cancel_calls = 0

    # -------------------------------------------------------------------------
    # Injection
    # -------------------------------------------------------------------------

    def fail_next(self, count: int = 1, retryable: bool = True) -> None:
        with self._lock:
            self._pending_failures.extend([retryable] * count)

    def fail_after_create(self, count: int = 1) -> None:
        with self._lock:
            self._lost_responses += count

    # -------------------------------------------------------------------------
    # PaymentGateway
    # -------------------------------------------------------------------------

    def create_intent(
        self,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> GatewayIntent:
        if self.latency:
            time.sleep(self.latency)

        with self._lock:
            self.create_calls += 1
            if self._pending_failures:
                retryable = self._pending_failures.pop(0)
                if retryable:
                    raise GatewayError("create_intent", "connection reset by processor")
                raise GatewayDeclinedError("create_intent", "card_declined")

            stored = self._by_key.get(idempotency_key)
            if stored is None:
                number = next(self._counter)
                intent = GatewayIntent(
                    intent_id=f"pi_test_{number:06d}",
                    client_secret=f"pi_test_{number:06d}_secret_{secrets.token_hex(8)}",
                )
                stored = _StoredIntent(
                    intent=intent,
                    amount=Decimal(amount),
                    currency=currency,
                    idempotency_key=idempotency_key,
                    metadata=dict(metadata or {}),
                )
                self._by_key[idempotency_key] = stored
                self._by_id[intent.intent_id] = stored
                logger.debug(
                    "gateway_intent_created",
                    extra={"intent_id": intent.intent_id, "idempotency_key": idempotency_key},
                )
            elif stored.amount != Decimal(amount):
                raise GatewayDeclinedError(
                    "create_intent",
                    "idempotency key reused with different parameters",
                )

            if self._lost_responses:
                self._lost_responses -= 1
                raise GatewayError("create_intent", "response lost after intent creation")

            return stored.intent

    def cancel_intent(self, intent_id: str) -> None:
        with self._lock:
            self.cancel_calls += 1
            if self.fail_cancels:
                raise GatewayError("cancel_intent", "processor unavailable")
            stored = self._by_id.get(intent_id)
            if stored is None:
                raise GatewayDeclinedError("cancel_intent", f"no such intent: {intent_id}")
            if stored.status is PaymentStatus.SUCCEEDED:
                raise GatewayDeclinedError("cancel_intent", "intent already succeeded")
            stored.status = PaymentStatus.CANCELED

    # -------------------------------------------------------------------------
    # Test helpers
    # -------------------------------------------------------------------------

    @property
    def intent_count(self) -> int:
        with self._lock:
            return len(self._by_id)

    def intent_status(self, intent_id: str) -> PaymentStatus:
        with self._lock:
            return self._by_id[intent_id].status

    def intent_amount(self, intent_id: str) -> Decimal:
        with self._lock:
            return self._by_id[intent_id].amount

    def find_intent(self, idempotency_key: str) -> GatewayIntent | None:
        with self._lock:
            stored = self._by_key.get(idempotency_key)
            return stored.intent if stored is not None else None

    def intent_metadata(self, intent_id: str) -> dict[str, str]:
        with self._lock:
            return dict(self._by_id[intent_id].metadata)

    def settle(self, intent_id: str, status: str | PaymentStatus) -> GatewayEvent:
        """
        Move an intent to ``status`` and return the webhook event the
        processor would send for it.
        """
        normalized = normalize_gateway_status(status)
        with self._lock:
            stored = self._by_id[intent_id]
            stored.status = normalized
            return GatewayEvent(
                intent_id=intent_id,
                status=normalized,
                payment_id=stored.metadata.get("payment_id"),
            )
