"""Tests for the typed exception hierarchy: codes, retryability, payloads."""

import pytest

from procurement_kernel.exceptions import (
    ConflictError,
    DuplicateCausationError,
    GatewayDeclinedError,
    GatewayError,
    GatewayTimeoutError,
    ImmutabilityViolationError,
    InvalidOrderError,
    InvalidTransitionError,
    ItemNotFoundError,
    LockTimeoutError,
    OrderNotFoundError,
    OverReceiptError,
    PaymentAlreadyCompletedError,
    PaymentNotFoundError,
    ProcurementError,
)


class TestErrorCodes:

    @pytest.mark.parametrize(
        "exc,code,retryable",
        [
            (OrderNotFoundError("po"), "ORDER_NOT_FOUND", False),
            (ItemNotFoundError("po", "it"), "ITEM_NOT_FOUND", False),
            (InvalidOrderError("bad"), "INVALID_ORDER", False),
            (InvalidTransitionError("po", "approve", "PAID"), "INVALID_TRANSITION", False),
            (ConflictError("po", "DRAFT", 1), "CONFLICT", True),
            (LockTimeoutError("po", 1.0), "LOCK_TIMEOUT", True),
            (PaymentNotFoundError("pay"), "PAYMENT_NOT_FOUND", False),
            (PaymentAlreadyCompletedError("po", "pay"), "PAYMENT_ALREADY_COMPLETED", False),
            (GatewayError("create_intent", "reset"), "GATEWAY_ERROR", True),
            (GatewayTimeoutError("create_intent", 2.0), "GATEWAY_TIMEOUT", True),
            (GatewayDeclinedError("create_intent", "card_declined"), "GATEWAY_DECLINED", False),
            (OverReceiptError("po", "it", 10, 10, 1), "OVER_RECEIPT", False),
            (DuplicateCausationError("c-1"), "DUPLICATE_CAUSATION", False),
            (ImmutabilityViolationError("Payment", "pay", "frozen"), "IMMUTABILITY_VIOLATION", False),
        ],
    )
    def test_code_and_retryable(self, exc, code, retryable):
        assert isinstance(exc, ProcurementError)
        assert exc.code == code
        assert exc.retryable is retryable


class TestPayloads:

    def test_invalid_transition_lists_allowed_states(self):
        exc = InvalidTransitionError("po-1", "cancel", "PAID", ("DRAFT", "APPROVED"))
        assert exc.allowed_from == ("DRAFT", "APPROVED")
        assert "DRAFT, APPROVED" in str(exc)

    def test_invalid_transition_reason_overrides_detail(self):
        exc = InvalidTransitionError("po-1", "mark_received", "PAID", reason="3 unit(s) still outstanding")
        assert "3 unit(s) still outstanding" in str(exc)

    def test_lock_timeout_is_a_conflict(self):
        exc = LockTimeoutError("po-1", 0.5)
        assert isinstance(exc, ConflictError)
        assert exc.timeout_seconds == 0.5
        assert exc.order_id == "po-1"

    def test_duplicate_causation_carries_stock_figures(self):
        exc = DuplicateCausationError("c-1", previous_stock=3, new_stock=8)
        assert (exc.previous_stock, exc.new_stock) == (3, 8)

    def test_over_receipt_fields(self):
        exc = OverReceiptError("po-1", "it-1", ordered=10, already_received=7, requested=4)
        assert (exc.ordered, exc.already_received, exc.requested) == (10, 7, 4)
