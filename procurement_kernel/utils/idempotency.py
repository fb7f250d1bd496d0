"""
Idempotency key and causation id generation utilities.

Idempotency keys make a repeated gateway request have no additional effect;
causation ids tie a stock ledger write to the receipt event that caused it.
Both are deterministic functions of their inputs so a retry after a crash
recomputes the exact same token.
"""

from uuid import UUID


def payment_idempotency_key(order_id: UUID | str, generation: int) -> str:
    """
    Generate the gateway idempotency key for a payment attempt.

    Format: order_id:payment:generation

    ``generation`` counts payment attempts for the order (1, 2, ...).  A new
    generation is only allocated after the previous attempt reached FAILED
    or CANCELED, so every retry of a still-open attempt sends the same key.

    Example:
        >>> payment_idempotency_key("550e8400-e29b-41d4-a716-446655440000", 1)
        "550e8400-e29b-41d4-a716-446655440000:payment:1"
    """
    if generation < 1:
        raise ValueError(f"Payment generation must be >= 1, got {generation}")
    return f"{order_id}:payment:{generation}"


def parse_payment_idempotency_key(key: str) -> tuple[str, int]:
    """
    Parse a payment idempotency key into (order_id, generation).

    Raises:
        ValueError: If key format is invalid.
    """
    parts = key.split(":")
    if len(parts) != 3 or parts[1] != "payment":
        raise ValueError(f"Invalid payment idempotency key format: {key}")
    return parts[0], int(parts[2])


def receipt_causation_id(order_id: UUID | str, item_id: UUID | str, sequence: int) -> str:
    """
    Generate the default causation id for a receipt event.

    Format: order_id:item_id:sequence

    Used when the caller does not supply its own receipt event id.  Clients
    that retry must resend the causation id of the first attempt.
    """
    if sequence < 1:
        raise ValueError(f"Receipt sequence must be >= 1, got {sequence}")
    return f"{order_id}:{item_id}:{sequence}"
