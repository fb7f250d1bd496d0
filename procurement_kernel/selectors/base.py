"""
Module: procurement_kernel.selectors.base
Responsibility: Abstract base class for read-only query selectors.  Selectors
    are the query side of the engine: they answer listing, lookup, and
    overview questions without mutation capability.
Architecture position: Kernel > Selectors.  May import from db/base.py,
    models/, and domain/.  MUST NOT import from services/ or outer layers.

Invariants enforced:
    - Read-only access: selectors never call session.add(), delete(),
      commit(), or flush().
    - DTO return convention: selectors return frozen dataclasses, not ORM
      instances.
    - Session ownership: the caller owns the session and its transaction.
"""

from abc import ABC
from typing import Generic, TypeVar

from sqlalchemy.orm import Session

from procurement_kernel.db.base import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseSelector(ABC, Generic[ModelType]):
    """
    Abstract base class for all selectors.

    Non-goals:
        - Defines no query methods; subclasses implement them.
    """

    def __init__(self, session: Session):
        self.session = session
