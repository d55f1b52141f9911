"""
ERP Kernel

Shared infrastructure for the back-office stock and document core:
- Append-only stock ledger persistence
- Transaction scoping and row-level concurrency control
- Typed, coded exceptions
- Structured JSON logging
- Declarative document state machines
"""

__version__ = "0.1.0"
