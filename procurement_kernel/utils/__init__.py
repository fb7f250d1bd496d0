"""Kernel utilities: idempotency tokens and per-order locking."""
