"""
Canonical workflow types (``erp_kernel.domain.workflow``).

Responsibility
--------------
Pure value objects for the document state machines (sales order, delivery,
customer invoice).  Guard, Transition, and Workflow are defined once here and
each module declares its own table in ``workflows.py``.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``services/``, ``selectors/``, or outer layers.

Invariants enforced
-------------------
* Transitions reference only states in ``Workflow.states``.
* ``initial_state`` and every ``terminal_states`` member are in ``states``.
* Terminal states have no outgoing transitions.

Failure modes
-------------
* ``ValueError`` at definition time when a table breaks an invariant.
  Workflows are module-level constants, so a bad table fails at import.
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

    ``writes_stock=True`` marks transitions whose side effect appends
    stock movements.
    """
    from_state: str
    to_state: str
    action: str
    guard: Guard | None = None
    writes_stock: bool = False


@dataclass(frozen=True)
class Workflow:
    """A state machine definition for a document lifecycle.

    Contract: frozen; ``transitions`` reference only states in ``states``.
    ``locked_states`` are states in which the document rejects edits outside
    its configured allow-list.  They need not be terminal.
    """
    name: str
    description: str
    initial_state: str
    states: tuple[str, ...]
    transitions: tuple[Transition, ...]
    terminal_states: tuple[str, ...] = ()
    locked_states: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        known = set(self.states)
        if self.initial_state not in known:
            raise ValueError(
                f"Workflow {self.name}: initial state '{self.initial_state}' not in states"
            )
        for state in (*self.terminal_states, *self.locked_states):
            if state not in known:
                raise ValueError(f"Workflow {self.name}: unknown state '{state}'")
        for t in self.transitions:
            if t.from_state not in known or t.to_state not in known:
                raise ValueError(
                    f"Workflow {self.name}: transition {t.from_state}->{t.to_state} "
                    "references an unknown state"
                )
            if t.from_state in self.terminal_states:
                raise ValueError(
                    f"Workflow {self.name}: terminal state '{t.from_state}' "
                    "has an outgoing transition"
                )

    def find_transition(self, from_state: str, to_state: str) -> Transition | None:
        """Return the transition from_state -> to_state, or None if not allowed."""
        for t in self.transitions:
            if t.from_state == from_state and t.to_state == to_state:
                return t
        return None

    def targets_from(self, from_state: str) -> tuple[str, ...]:
        """States reachable in one step from ``from_state``."""
        return tuple(t.to_state for t in self.transitions if t.from_state == from_state)

    def is_terminal(self, state: str) -> bool:
        return state in self.terminal_states

    def is_locked(self, state: str) -> bool:
        return state in self.locked_states
