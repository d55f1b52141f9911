"""
Pure domain layer.

Value objects and time abstraction with NO dependencies on the ORM,
the database, or I/O (SystemClock is the single sanctioned exception).
"""

from erp_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from erp_kernel.domain.workflow import Guard, Transition, Workflow

__all__ = [
    "Clock",
    "DeterministicClock",
    "SystemClock",
    "Guard",
    "Transition",
    "Workflow",
]
