"""
Per-order serialization and bounded external calls.

Responsibility:
    ``OrderLockRegistry`` hands out one mutex per order id so multi-step
    read-check-write sequences (check no active payment, then create one)
    cannot interleave across request handlers.  Operations on different
    orders never contend.

    ``call_with_timeout`` bounds a blocking call (the payment gateway) so a
    hung processor cannot hold an order lock forever.

Architecture position:
    Kernel > Utils.  No imports from services/ or outer layers.

Failure modes:
    - LockTimeoutError when an order lock is not acquired in time.
    - GatewayTimeoutError when a bounded call does not finish in time.  The
      underlying call keeps running on its worker thread; its result is
      discarded.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from typing import TypeVar
from uuid import UUID

from procurement_kernel.exceptions import GatewayTimeoutError, LockTimeoutError
from procurement_kernel.logging_config import get_logger

logger = get_logger("utils.locking")

T = TypeVar("T")


class _LockEntry:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.holders = 0


class OrderLockRegistry:
    """
    In-process advisory locks keyed by order id.

    Contract:
        ``hold(order_id)`` blocks until the order's mutex is acquired or
        ``timeout`` elapses.  Entries are reference counted and dropped when
        no thread holds or waits on them, so the registry does not grow with
        the number of orders ever seen.

    Non-goals:
        - Not reentrant: an operation must not call another locked
          operation on the same order from inside ``hold``.
        - Not cross-process: multi-process deployments rely additionally on
          the row lock taken by ``OrderRepository.load_for_update`` and the
          partial unique index on active payments.
    """

    def __init__(self, default_timeout: float = 30.0):
        self._default_timeout = default_timeout
        self._guard = threading.Lock()
        self._entries: dict[str, _LockEntry] = {}

    @contextmanager
    def hold(self, order_id: UUID | str, timeout: float | None = None) -> Iterator[None]:
        key = str(order_id)
        wait = self._default_timeout if timeout is None else timeout

        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = _LockEntry()
                self._entries[key] = entry
            entry.holders += 1

        acquired = entry.lock.acquire(timeout=wait)
        try:
            if not acquired:
                logger.warning(
                    "order_lock_timeout",
                    extra={"order_id": key, "timeout_seconds": wait},
                )
                raise LockTimeoutError(key, wait)
            yield
        finally:
            if acquired:
                entry.lock.release()
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0:
                    self._entries.pop(key, None)

    def is_locked(self, order_id: UUID | str) -> bool:
        with self._guard:
            entry = self._entries.get(str(order_id))
        return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)


# Process-wide registry shared by every service instance that is not handed
# an explicit one.
DEFAULT_ORDER_LOCKS = OrderLockRegistry()


_executor = ThreadPoolExecutor(max_workers=16, thread_name_prefix="gateway-call")


def call_with_timeout(
    fn: Callable[..., T],
    *args,
    timeout: float,
    operation: str,
    **kwargs,
) -> T:
    """
    Run ``fn(*args, **kwargs)`` and wait at most ``timeout`` seconds.

    Exceptions raised by ``fn`` propagate unchanged.

    Raises:
        GatewayTimeoutError: If the call does not complete in time.
    """
    future = _executor.submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError:
        future.cancel()
        logger.warning(
            "bounded_call_timed_out",
            extra={"operation": operation, "timeout_seconds": timeout},
        )
        raise GatewayTimeoutError(operation, timeout) from None
