"""
Payment intents: one chargeable intent per order, reconciliation that only
moves forward, and webhook binding.

Driven through ``PurchaseOrderService`` so each call runs with its own
session, the order lock, and real commits.
"""

from dataclasses import replace
from decimal import Decimal
from uuid import uuid4

import pytest

from procurement_config.schema import EngineConfig
from procurement_kernel.domain.lifecycle import OrderStatus, PaymentStatus
from procurement_kernel.exceptions import (
    GatewayDeclinedError,
    GatewayError,
    GatewayTimeoutError,
    InvalidTransitionError,
    PaymentAlreadyCompletedError,
    PaymentNotFoundError,
)
from procurement_kernel.utils.idempotency import payment_idempotency_key
from procurement_services.payment_gateway import InMemoryPaymentGateway
from procurement_services.purchase_order_service import PurchaseOrderService


class TestInitiatePayment:

    def test_creates_pending_payment_for_order_total(self, service, gateway, approved_order):
        result = service.initiate_payment(approved_order.id)

        assert result.created
        assert result.payment.status is PaymentStatus.PENDING
        assert result.payment.amount == Decimal("150.00")
        assert result.payment.generation == 1
        assert result.payment.idempotency_key == payment_idempotency_key(approved_order.id, 1)
        assert result.intent_id == result.payment.external_intent_id
        assert gateway.intent_amount(result.intent_id) == Decimal("150.00")
        assert service.get_order(approved_order.id).status is OrderStatus.APPROVED

    def test_repeat_returns_same_intent(self, service, gateway, approved_order):
        first = service.initiate_payment(approved_order.id)
        second = service.initiate_payment(approved_order.id)

        assert not second.created
        assert second.client_secret == first.client_secret
        assert second.payment.id == first.payment.id
        assert gateway.intent_count == 1
        assert len(service.list_payments(approved_order.id)) == 1

    def test_draft_order_rejected(self, service, create_order):
        order = create_order()
        with pytest.raises(InvalidTransitionError):
            service.initiate_payment(order.id)

    def test_paid_order_reports_already_completed(self, service, paid_order):
        with pytest.raises(PaymentAlreadyCompletedError):
            service.initiate_payment(paid_order.id)

    def test_metadata_carries_local_payment_id(self, service, gateway, approved_order):
        result = service.initiate_payment(approved_order.id)
        metadata = gateway.intent_metadata(result.intent_id)
        assert metadata["payment_id"] == str(result.payment.id)
        assert metadata["order_id"] == str(approved_order.id)


class TestAmbiguousGatewayFailures:

    def test_transport_failure_keeps_payment_pending(self, service, gateway, approved_order):
        gateway.fail_next()
        with pytest.raises(GatewayError) as exc_info:
            service.initiate_payment(approved_order.id)
        assert exc_info.value.retryable

        (payment,) = service.list_payments(approved_order.id)
        assert payment.status is PaymentStatus.PENDING
        assert payment.client_secret is None

        retry = service.initiate_payment(approved_order.id)
        assert retry.created
        assert retry.payment.id == payment.id
        assert gateway.intent_count == 1

    def test_lost_response_reuses_key_and_intent(self, service, gateway, approved_order):
        gateway.fail_after_create()
        with pytest.raises(GatewayError):
            service.initiate_payment(approved_order.id)
        assert gateway.intent_count == 1

        retry = service.initiate_payment(approved_order.id)
        created = gateway.find_intent(payment_idempotency_key(approved_order.id, 1))
        assert retry.intent_id == created.intent_id
        assert gateway.intent_count == 1

    def test_gateway_timeout(self, session_factory, clock, locks, create_order):
        slow_service = PurchaseOrderService(
            session_factory,
            InMemoryPaymentGateway(latency=0.5),
            config=EngineConfig(database_url="sqlite://", gateway_timeout_seconds=0.05),
            clock=clock,
            locks=locks,
        )
        order = create_order()
        slow_service.approve(order.id)

        with pytest.raises(GatewayTimeoutError):
            slow_service.initiate_payment(order.id)

        (payment,) = slow_service.list_payments(order.id)
        assert payment.status is PaymentStatus.PENDING
        assert payment.external_intent_id is None


class TestDeclines:

    def test_decline_marks_failed_and_allows_new_generation(self, service, gateway, approved_order):
        gateway.fail_next(retryable=False)
        with pytest.raises(GatewayDeclinedError):
            service.initiate_payment(approved_order.id)

        (failed,) = service.list_payments(approved_order.id)
        assert failed.status is PaymentStatus.FAILED
        assert failed.failure_reason == "card_declined"
        assert service.get_order(approved_order.id).status is OrderStatus.APPROVED

        retry = service.initiate_payment(approved_order.id)
        assert retry.payment.generation == 2
        assert retry.payment.idempotency_key == payment_idempotency_key(approved_order.id, 2)
        assert gateway.intent_count == 1

    def test_failed_report_allows_fresh_intent(self, service, gateway, approved_order):
        first = service.initiate_payment(approved_order.id)
        result = service.reconcile_payment(first.payment.id, "requires_payment_method")
        assert result.applied
        assert result.payment.status is PaymentStatus.FAILED
        assert result.order.status is OrderStatus.APPROVED

        second = service.initiate_payment(approved_order.id)
        assert second.created
        assert second.intent_id != first.intent_id
        assert gateway.intent_count == 2


class TestReconcile:

    def test_succeeded_marks_order_paid(self, service, approved_order):
        intent = service.initiate_payment(approved_order.id)
        result = service.reconcile_payment(intent.payment.id, "succeeded")

        assert result.applied
        assert result.payment.status is PaymentStatus.SUCCEEDED
        assert result.order.status is OrderStatus.PAID
        assert result.order.paid_at is not None
        assert result.order.version == approved_order.version + 1

    def test_processing_then_succeeded(self, service, approved_order):
        intent = service.initiate_payment(approved_order.id)
        processing = service.reconcile_payment(intent.payment.id, "processing")
        assert processing.applied
        assert processing.order.status is OrderStatus.APPROVED

        done = service.reconcile_payment(intent.payment.id, "succeeded")
        assert done.order.status is OrderStatus.PAID

    def test_repeated_succeeded_is_noop(self, service, approved_order):
        intent = service.initiate_payment(approved_order.id)
        first = service.reconcile_payment(intent.payment.id, "succeeded")
        second = service.reconcile_payment(intent.payment.id, "succeeded")

        assert not second.applied
        assert second.order.status is OrderStatus.PAID
        assert second.order.version == first.order.version

    def test_stale_report_ignored(self, service, approved_order):
        intent = service.initiate_payment(approved_order.id)
        service.reconcile_payment(intent.payment.id, "succeeded")

        stale = service.reconcile_payment(intent.payment.id, "processing")
        assert not stale.applied
        assert stale.payment.status is PaymentStatus.SUCCEEDED

        failed_late = service.reconcile_payment(intent.payment.id, "failed")
        assert not failed_late.applied
        assert failed_late.order.status is OrderStatus.PAID

    def test_requires_new_method_fails_payment(self, service, gateway, approved_order):
        first = service.initiate_payment(approved_order.id)

        result = service.reconcile_payment(first.payment.id, "requires_new_method")

        assert result.applied
        assert result.payment.status is PaymentStatus.FAILED
        assert result.order.status is OrderStatus.APPROVED
        assert service.initiate_payment(approved_order.id).payment.generation == 2

    def test_pending_after_processing_ignored(self, service, approved_order):
        intent = service.initiate_payment(approved_order.id)
        service.reconcile_payment(intent.payment.id, "processing")
        result = service.reconcile_payment(intent.payment.id, "pending")
        assert not result.applied
        assert result.payment.status is PaymentStatus.PROCESSING

    def test_unknown_payment(self, service):
        with pytest.raises(PaymentNotFoundError):
            service.reconcile_payment(uuid4(), "succeeded")

    def test_unknown_status_string(self, service, approved_order):
        intent = service.initiate_payment(approved_order.id)
        with pytest.raises(GatewayError) as exc_info:
            service.reconcile_payment(intent.payment.id, "teleported")
        assert not exc_info.value.retryable
        (payment,) = service.list_payments(approved_order.id)
        assert payment.status is PaymentStatus.PENDING

    def test_success_on_cancelled_order_logged_as_error(
        self, service, gateway, approved_order, captured_logs,
    ):
        intent = service.initiate_payment(approved_order.id)
        gateway.fail_cancels = True
        service.cancel(approved_order.id)

        result = service.reconcile_payment(intent.payment.id, "succeeded")
        assert result.payment.status is PaymentStatus.SUCCEEDED
        assert result.order.status is OrderStatus.CANCELLED

        errors = [
            r for r in captured_logs()
            if r["message"] == "payment_succeeded_for_inactive_order"
        ]
        assert errors and errors[0]["level"] == "ERROR"


class TestGatewayEvents:

    def test_event_by_intent_id(self, service, gateway, approved_order):
        intent = service.initiate_payment(approved_order.id)
        event = gateway.settle(intent.intent_id, "succeeded")

        result = service.handle_gateway_event(event.intent_id, event.status)
        assert result.order.status is OrderStatus.PAID

    def test_event_before_creation_response_binds_intent(self, service, gateway, approved_order):
        gateway.fail_after_create()
        with pytest.raises(GatewayError):
            service.initiate_payment(approved_order.id)

        created = gateway.find_intent(payment_idempotency_key(approved_order.id, 1))
        event = gateway.settle(created.intent_id, "succeeded")
        result = service.handle_gateway_event(event.intent_id, event.status, event.payment_id)

        assert result.payment.external_intent_id == created.intent_id
        assert result.payment.status is PaymentStatus.SUCCEEDED
        assert result.order.status is OrderStatus.PAID

    def test_event_for_unknown_intent(self, service):
        with pytest.raises(PaymentNotFoundError):
            service.handle_gateway_event("pi_unknown", "succeeded")

    def test_event_with_malformed_payment_id(self, service):
        with pytest.raises(PaymentNotFoundError):
            service.handle_gateway_event("pi_unknown", "succeeded", "not-a-uuid")


class TestStatusReportedOnCreation:

    @staticmethod
    def _settle_on_create(gateway, monkeypatch, status):
        create = gateway.create_intent

        def create_settled(*args, **kwargs):
            return replace(create(*args, **kwargs), status=status)

        monkeypatch.setattr(gateway, "create_intent", create_settled)

    def test_succeeded_on_creation_pays_order(self, service, gateway, approved_order, monkeypatch):
        self._settle_on_create(gateway, monkeypatch, PaymentStatus.SUCCEEDED)

        result = service.initiate_payment(approved_order.id)

        assert result.created
        assert result.payment.status is PaymentStatus.SUCCEEDED
        order = service.get_order(approved_order.id)
        assert order.status is OrderStatus.PAID
        assert order.paid_at is not None
        with pytest.raises(PaymentAlreadyCompletedError):
            service.initiate_payment(approved_order.id)

    def test_failed_on_creation_keeps_order_approved(
        self, service, gateway, approved_order, monkeypatch,
    ):
        self._settle_on_create(gateway, monkeypatch, PaymentStatus.FAILED)

        result = service.initiate_payment(approved_order.id)

        assert result.payment.status is PaymentStatus.FAILED
        assert result.payment.failure_reason
        assert service.get_order(approved_order.id).status is OrderStatus.APPROVED


class TestCancelWithUnansweredCreation:

    def test_intent_learned_by_replay_then_cancelled(self, service, gateway, approved_order):
        gateway.fail_after_create()
        with pytest.raises(GatewayError):
            service.initiate_payment(approved_order.id)
        created = gateway.find_intent(payment_idempotency_key(approved_order.id, 1))

        cancelled = service.cancel(approved_order.id)

        assert cancelled.status is OrderStatus.CANCELLED
        assert gateway.intent_status(created.intent_id) is PaymentStatus.CANCELED
        (payment,) = service.list_payments(approved_order.id)
        assert payment.status is PaymentStatus.CANCELED
        assert payment.external_intent_id == created.intent_id
        assert gateway.intent_count == 1

    def test_processor_unreachable_logs_possible_orphan(
        self, service, gateway, approved_order, captured_logs,
    ):
        gateway.fail_next(1, retryable=True)
        with pytest.raises(GatewayError):
            service.initiate_payment(approved_order.id)
        gateway.fail_next(1, retryable=True)

        cancelled = service.cancel(approved_order.id)

        assert cancelled.status is OrderStatus.CANCELLED
        (payment,) = service.list_payments(approved_order.id)
        assert payment.status is PaymentStatus.PENDING
        assert payment.external_intent_id is None
        assert any(r["message"] == "payment_intent_possibly_orphaned" for r in captured_logs())

    def test_declined_replay_means_no_intent(self, service, gateway, approved_order):
        gateway.fail_next(1, retryable=True)
        with pytest.raises(GatewayError):
            service.initiate_payment(approved_order.id)
        gateway.fail_next(1, retryable=False)

        service.cancel(approved_order.id)

        (payment,) = service.list_payments(approved_order.id)
        assert payment.status is PaymentStatus.CANCELED
        assert gateway.intent_count == 0
