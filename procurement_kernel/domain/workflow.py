"""
Canonical workflow types (``procurement_kernel.domain.workflow``).

Responsibility
--------------
Pure value objects for document state machines.  The purchase order
lifecycle is declared once with these types; the state machine service
consults the declaration instead of branching on status values.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``services/``, ``selectors/``, or outer layers.

Invariants enforced
-------------------
* Transitions reference only states in ``Workflow.states``.
* ``initial_state`` is a member of ``states``.
* Terminal states have no outgoing transitions.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Guard:
    """A condition that must be satisfied before a transition fires.

    Contract: frozen, descriptive only.
    Non-goals: does not evaluate the condition -- the owning service does.
    """
    name: str
    description: str


@dataclass(frozen=True)
class Transition:
    """A valid state transition in a workflow.

    ``internal=True`` marks transitions that only the engine's own managers
    may fire (payment confirmation, receipt completion), never a client.
    """
    from_state: str
    to_state: str
    action: str
    guard: Guard | None = None
    internal: bool = False


@dataclass(frozen=True)
class Workflow:
    """A state machine definition for a document lifecycle.

    Contract: frozen; ``transitions`` reference only states in ``states``.
    """
    name: str
    description: str
    initial_state: str
    states: tuple[str, ...]
    transitions: tuple[Transition, ...]
    terminal_states: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.initial_state not in self.states:
            raise ValueError(
                f"Workflow {self.name}: initial state {self.initial_state} not in states"
            )
        for t in self.transitions:
            if t.from_state not in self.states or t.to_state not in self.states:
                raise ValueError(
                    f"Workflow {self.name}: transition {t.action} "
                    f"{t.from_state}->{t.to_state} references unknown state"
                )
            if t.from_state in self.terminal_states:
                raise ValueError(
                    f"Workflow {self.name}: terminal state {t.from_state} "
                    f"has outgoing transition {t.action}"
                )

    def find_transition(self, from_state: str, action: str) -> Transition | None:
        """Return the transition for ``action`` out of ``from_state``, if legal."""
        for t in self.transitions:
            if t.from_state == from_state and t.action == action:
                return t
        return None

    def allowed_from(self, action: str) -> tuple[str, ...]:
        """States from which ``action`` is legal, in declaration order."""
        return tuple(t.from_state for t in self.transitions if t.action == action)
