"""
BaseService -- abstract base for all kernel services.

Responsibility:
    Provides the common constructor and session-handling contract for the
    kernel's write services.  Kernel services use ``session.flush()`` --
    never ``session.commit()``.  Transaction boundaries belong to the
    orchestration layer (``procurement_services``), which wraps each public
    operation in ``committing(session)`` while holding the order lock.

Invariants enforced:
    Flush-only: kernel services never commit or roll back, so a state
    transition and its side-effect record always land in one transaction.
"""

from abc import ABC
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Generic, TypeVar

from sqlalchemy.orm import Session

from procurement_kernel.db.base import Base
from procurement_kernel.logging_config import get_logger

ModelType = TypeVar("ModelType", bound=Base)

logger = get_logger("services.base")


class BaseService(ABC, Generic[ModelType]):
    """
    Abstract base class for kernel services.

    Guarantees:
        - The service never calls ``session.commit()`` or
          ``session.rollback()``.
    """

    def __init__(self, session: Session):
        self.session = session


@contextmanager
def committing(session: Session) -> Iterator[Session]:
    """
    Commit the session on normal exit, roll back and re-raise on error.

    Used by the orchestration layer around a session it already owns.
    """
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        logger.debug("transaction_rolled_back", exc_info=True)
        raise
