"""
Typed Exception Hierarchy for the Procurement Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers (UI handlers, the CLI, webhook endpoints) must decide what to do with
a failure without parsing messages:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Every exception has a RETRYABLE flag (reload-and-retry vs. terminal)
  4. Exceptions carry structured DATA (not just a message string)

Example:
    try:
        service.receive(order_id, item_id, 5)
    except OverReceiptError as e:
        api_response(code=e.code, ordered=e.ordered, received=e.already_received)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    ProcurementError (base)
    |
    +-- OrderError
    |   +-- OrderNotFoundError
    |   +-- ItemNotFoundError
    |   +-- InvalidOrderError
    |   +-- InvalidTransitionError
    |
    +-- ConcurrencyError
    |   +-- ConflictError
    |       +-- LockTimeoutError
    |
    +-- PaymentError
    |   +-- PaymentNotFoundError
    |   +-- PaymentAlreadyCompletedError
    |   +-- GatewayError
    |       +-- GatewayTimeoutError
    |       +-- GatewayDeclinedError
    |
    +-- ReceiptError
    |   +-- OverReceiptError
    |   +-- DuplicateCausationError
    |
    +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Code                        | Retryable | When Raised
----------------------------|-----------|------------------------------------------
ORDER_NOT_FOUND             | no        | Order ID doesn't exist
ITEM_NOT_FOUND              | no        | Item is not on the order
INVALID_ORDER               | no        | Order authoring validation failed
INVALID_TRANSITION          | no        | Operation illegal for current status
CONFLICT                    | yes       | Version mismatch / concurrent writer
LOCK_TIMEOUT                | yes       | Per-order lock not acquired in time
PAYMENT_NOT_FOUND           | no        | Payment or intent ID unknown
PAYMENT_ALREADY_COMPLETED   | no        | Order already paid (informational)
GATEWAY_ERROR               | varies    | Payment processor call failed
GATEWAY_TIMEOUT             | yes       | Processor did not answer in time
GATEWAY_DECLINED            | no        | Processor refused the request
OVER_RECEIPT                | no        | Receipt exceeds ordered quantity
DUPLICATE_CAUSATION         | n/a       | Receipt event already applied (success)
IMMUTABILITY_VIOLATION      | no        | Frozen or append-only data modified

===============================================================================
HANDLING PATTERNS
===============================================================================

1. RETRY AFTER RELOAD (ConflictError, retryable GatewayError):

    except ProcurementError as e:
        if e.retryable:
            order = service.get_order(order_id)   # reload, then retry
        else:
            show_error(e.code)

2. IDEMPOTENT SUCCESS (DuplicateCausationError, PaymentAlreadyCompletedError):

    except PaymentAlreadyCompletedError as e:
        notify_user("already paid")               # no action needed
"""

from decimal import Decimal


class ProcurementError(Exception):
    """
    Base exception for all procurement errors.

    All subclasses carry a ``code`` class attribute for machine-readable
    identification and a ``retryable`` flag telling the caller whether a
    reload-and-retry can succeed.
    """

    code: str = "PROCUREMENT_ERROR"
    retryable: bool = False


# Order-related exceptions


class OrderError(ProcurementError):
    """Base exception for purchase-order errors."""

    code: str = "ORDER_ERROR"


class OrderNotFoundError(OrderError):
    """Purchase order with given ID was not found."""

    code: str = "ORDER_NOT_FOUND"

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Purchase order not found: {order_id}")


class ItemNotFoundError(OrderError):
    """Item is not part of the given purchase order."""

    code: str = "ITEM_NOT_FOUND"

    def __init__(self, order_id: str, item_id: str):
        self.order_id = order_id
        self.item_id = item_id
        super().__init__(f"Item {item_id} not found on purchase order {order_id}")


class InvalidOrderError(OrderError):
    """Order contents failed validation at authoring time."""

    code: str = "INVALID_ORDER"

    def __init__(self, reason: str, field: str | None = None):
        self.reason = reason
        self.field = field
        super().__init__(f"Invalid purchase order: {reason}")


class InvalidTransitionError(OrderError):
    """
    Requested operation is illegal for the order's current status.

    No retry without a state change.  The order and its records are left
    untouched.
    """

    code: str = "INVALID_TRANSITION"

    def __init__(
        self,
        order_id: str,
        action: str,
        current_status: str,
        allowed_from: tuple[str, ...] = (),
        reason: str | None = None,
    ):
        self.order_id = order_id
        self.action = action
        self.current_status = current_status
        self.allowed_from = allowed_from
        self.reason = reason
        allowed = ", ".join(allowed_from) if allowed_from else "none"
        detail = reason or f"allowed from: {allowed}"
        super().__init__(
            f"Cannot {action} purchase order {order_id} in status "
            f"{current_status} ({detail})"
        )


# Concurrency exceptions


class ConcurrencyError(ProcurementError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"
    retryable: bool = True


class ConflictError(ConcurrencyError):
    """
    Another actor changed the record first.

    Raised when a compare-and-set on ``(order_id, status, version)`` matches
    zero rows, or when a second active payment collides with the partial
    unique index.  Caller should reload and retry with the fresh version.
    """

    code: str = "CONFLICT"

    def __init__(
        self,
        order_id: str,
        expected_status: str | None = None,
        expected_version: int | None = None,
        reason: str | None = None,
    ):
        self.order_id = order_id
        self.expected_status = expected_status
        self.expected_version = expected_version
        self.reason = reason
        detail = reason or (
            f"expected status={expected_status}, version={expected_version}"
        )
        super().__init__(f"Concurrent modification of purchase order {order_id}: {detail}")


class LockTimeoutError(ConflictError):
    """The per-order lock could not be acquired within the timeout."""

    code: str = "LOCK_TIMEOUT"

    def __init__(self, order_id: str, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            order_id,
            reason=f"lock not acquired within {timeout_seconds}s",
        )


# Payment exceptions


class PaymentError(ProcurementError):
    """Base exception for payment-related errors."""

    code: str = "PAYMENT_ERROR"


class PaymentNotFoundError(PaymentError):
    """Payment (by local id or gateway intent id) was not found."""

    code: str = "PAYMENT_NOT_FOUND"

    def __init__(self, payment_ref: str):
        self.payment_ref = payment_ref
        super().__init__(f"Payment not found: {payment_ref}")


class PaymentAlreadyCompletedError(PaymentError):
    """
    Order already has a succeeded payment.

    Not a failure: informs the caller that no action is needed.
    """

    code: str = "PAYMENT_ALREADY_COMPLETED"

    def __init__(self, order_id: str, payment_id: str):
        self.order_id = order_id
        self.payment_id = payment_id
        super().__init__(
            f"Purchase order {order_id} already paid by payment {payment_id}"
        )


class GatewayError(PaymentError):
    """
    The external payment processor call failed.

    ``retryable`` is per instance: ambiguous failures (timeouts, transport
    errors) leave the payment PENDING and are retryable by reuse; terminal
    declines mark the payment FAILED.
    """

    code: str = "GATEWAY_ERROR"

    def __init__(self, operation: str, reason: str, retryable: bool = True):
        self.operation = operation
        self.reason = reason
        self.retryable = retryable
        super().__init__(f"Payment gateway {operation} failed: {reason}")


class GatewayTimeoutError(GatewayError):
    """The processor did not answer within the configured timeout."""

    code: str = "GATEWAY_TIMEOUT"

    def __init__(self, operation: str, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            operation,
            f"no response within {timeout_seconds}s",
            retryable=True,
        )


class GatewayDeclinedError(GatewayError):
    """The processor refused the request (terminal for this attempt)."""

    code: str = "GATEWAY_DECLINED"

    def __init__(self, operation: str, reason: str):
        super().__init__(operation, reason, retryable=False)


# Receipt exceptions


class ReceiptError(ProcurementError):
    """Base exception for goods-receipt errors."""

    code: str = "RECEIPT_ERROR"


class OverReceiptError(ReceiptError):
    """
    Receipt quantity is non-positive or would exceed the ordered quantity.

    Never clamped: the operator must correct the input.
    """

    code: str = "OVER_RECEIPT"

    def __init__(
        self,
        order_id: str,
        item_id: str,
        ordered: int,
        already_received: int,
        requested: int,
    ):
        self.order_id = order_id
        self.item_id = item_id
        self.ordered = ordered
        self.already_received = already_received
        self.requested = requested
        super().__init__(
            f"Cannot receive {requested} of item {item_id} on order {order_id}: "
            f"ordered={ordered}, already received={already_received}"
        )


class DuplicateCausationError(ReceiptError):
    """
    A ledger write with this causation id was already applied.

    Idempotent success: carries the stock figures of the original write so
    the caller can answer as if the first call had just returned.
    """

    code: str = "DUPLICATE_CAUSATION"

    def __init__(
        self,
        causation_id: str,
        previous_stock: Decimal | int | None = None,
        new_stock: Decimal | int | None = None,
    ):
        self.causation_id = causation_id
        self.previous_stock = previous_stock
        self.new_stock = new_stock
        super().__init__(f"Causation id already applied: {causation_id}")


# Immutability exceptions


class ImmutabilityViolationError(ProcurementError):
    """Attempted to modify frozen or append-only data."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Cannot modify {entity_type} {entity_id}: {reason}"
        )
