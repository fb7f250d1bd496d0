"""
StripePaymentGateway -- thin adapter over the ``stripe`` client library.

Responsibility:
    Implements ``PaymentGateway`` with Stripe PaymentIntents and turns
    signed Stripe webhooks into ``GatewayEvent`` values for
    ``PurchaseOrderService.handle_gateway_event``.

Architecture position:
    Services > adapters.  Nothing else in the engine imports ``stripe``.

Invariants enforced:
    - Every create call carries the payment's idempotency key, so Stripe
      returns the original intent for a retried request.
    - Amounts are sent in minor units (cents), rounded half-up.

Failure modes:
    - stripe.CardError / stripe.InvalidRequestError -> GatewayDeclinedError.
    - stripe.APIConnectionError, RateLimitError, other StripeError ->
      GatewayError(retryable=True).
    - stripe.SignatureVerificationError -> GatewayDeclinedError("webhook").
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

import stripe

from procurement_kernel.domain.lifecycle import PaymentStatus
from procurement_kernel.exceptions import GatewayDeclinedError, GatewayError
from procurement_kernel.logging_config import get_logger
from procurement_services.payment_gateway import (
    GatewayEvent,
    GatewayIntent,
    PaymentGateway,
    normalize_gateway_status,
)

logger = get_logger("services.stripe_gateway")

# Webhook event types that carry a payment intent status change.
PAYMENT_INTENT_EVENTS = frozenset({
    "payment_intent.processing",
    "payment_intent.succeeded",
    "payment_intent.payment_failed",
    "payment_intent.canceled",
})

NEW_INTENT_STATUS = "requires_payment_method"


def to_minor_units(amount: Decimal) -> int:
    """Convert a two-decimal currency amount to integer cents."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class StripePaymentGateway(PaymentGateway):
    """Stripe PaymentIntents behind the ``PaymentGateway`` interface."""

    def __init__(self, api_key: str, webhook_secret: str | None = None):
        if not api_key:
            raise ValueError("Stripe API key is required")
        self._api_key = api_key
        self._webhook_secret = webhook_secret

    def create_intent(
        self,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> GatewayIntent:
        try:
            intent = stripe.PaymentIntent.create(
                amount=to_minor_units(amount),
                currency=currency.lower(),
                metadata=dict(metadata or {}),
                automatic_payment_methods={"enabled": True},
                idempotency_key=idempotency_key,
                api_key=self._api_key,
            )
        except (stripe.CardError, stripe.InvalidRequestError) as e:
            logger.warning(
                "stripe_create_intent_declined",
                extra={"idempotency_key": idempotency_key, "stripe_code": e.code},
            )
            raise GatewayDeclinedError("create_intent", e.user_message or str(e)) from e
        except stripe.StripeError as e:
            logger.warning(
                "stripe_create_intent_failed",
                extra={"idempotency_key": idempotency_key, "error_type": type(e).__name__},
            )
            raise GatewayError("create_intent", str(e), retryable=True) from e

        # A fresh intent waits for the payer's method; that is not a decline.
        if intent.status == NEW_INTENT_STATUS:
            status = PaymentStatus.PENDING
        else:
            status = normalize_gateway_status(intent.status)
        return GatewayIntent(
            intent_id=intent.id,
            client_secret=intent.client_secret,
            status=status,
        )

    def cancel_intent(self, intent_id: str) -> None:
        try:
            stripe.PaymentIntent.cancel(intent_id, api_key=self._api_key)
        except stripe.InvalidRequestError as e:
            raise GatewayDeclinedError("cancel_intent", e.user_message or str(e)) from e
        except stripe.StripeError as e:
            raise GatewayError("cancel_intent", str(e), retryable=True) from e

    def parse_webhook(self, payload: bytes, signature: str) -> GatewayEvent | None:
        """
        Verify and decode a Stripe webhook.

        Returns None for event types that do not concern payment intents.
        """
        if not self._webhook_secret:
            raise GatewayError("webhook", "webhook secret not configured", retryable=False)
        try:
            event = stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except stripe.SignatureVerificationError as e:
            logger.warning("stripe_webhook_signature_invalid")
            raise GatewayDeclinedError("webhook", "invalid signature") from e
        except ValueError as e:
            raise GatewayDeclinedError("webhook", "malformed payload") from e

        event_type = event["type"]
        if event_type not in PAYMENT_INTENT_EVENTS:
            logger.debug("stripe_webhook_ignored", extra={"event_type": event_type})
            return None

        intent = event["data"]["object"]
        metadata = intent.get("metadata") or {}
        return GatewayEvent(
            intent_id=intent["id"],
            status=normalize_gateway_status(event_type),
            payment_id=metadata.get("payment_id"),
        )
