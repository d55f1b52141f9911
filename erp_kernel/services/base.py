"""
BaseService / TransactionalService -- base classes for write-side services.

Responsibility:
    ``BaseService`` is the flush-only contract used by the stock ledger and
    the reconciliation tracker: they write inside the caller's transaction
    and never commit or roll back.

    ``TransactionalService`` is used by the document services (sales orders,
    deliveries, invoices, payments).  Each instance is constructed with an
    explicit ``auto_commit`` flag -- there is no default -- so every call
    site states whether the service owns the transaction or runs inside one
    the caller opened (typically via ``session_scope()``).

Architecture position:
    Kernel > Services -- imperative shell infrastructure.

Invariants enforced:
    - Flush-only services never commit.
    - A ``StaleDataError`` raised at flush (version column mismatch) is
      surfaced as ``OptimisticLockError``.
    - With ``auto_commit=True`` a failed operation is rolled back before the
      exception propagates; no partial ledger entries survive.

Failure modes:
    - With ``auto_commit=False`` the caller MUST roll back after an
      exception; the session is left with the failed operation's pending
      state otherwise.
"""

from abc import ABC
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Generic, TypeVar

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from erp_kernel.db.base import Base
from erp_kernel.exceptions import OptimisticLockError
from erp_kernel.logging_config import get_logger

ModelType = TypeVar("ModelType", bound=Base)

logger = get_logger("services.base")


class BaseService(ABC, Generic[ModelType]):
    """
    Abstract base class for flush-only services.

    Contract:
        Accepts a SQLAlchemy ``Session`` from the caller and uses
        ``session.flush()`` to persist changes within the active
        transaction.

    Guarantees:
        - The service never calls ``session.commit()`` or
          ``session.rollback()``.

    Non-goals:
        - Does NOT provide query-only read models -- those belong in
          ``erp_kernel/selectors/``.
    """

    def __init__(self, session: Session):
        self.session = session

    def _flush(self, entity_type: str, entity_id: object) -> None:
        """Flush, translating a version conflict into OptimisticLockError."""
        try:
            self.session.flush()
        except StaleDataError as exc:
            logger.warning(
                "optimistic_lock_conflict",
                extra={"entity_type": entity_type, "entity_id": str(entity_id)},
            )
            raise OptimisticLockError(entity_type, str(entity_id)) from exc


class TransactionalService(ABC):
    """
    Base for services whose public operations are units of work.

    Contract:
        ``auto_commit`` is keyword-only and required.  Public operations wrap
        their body in ``self._unit_of_work(...)``.

    Guarantees:
        - On success the session is flushed; with ``auto_commit=True`` it is
          also committed.
        - On failure with ``auto_commit=True`` the session is rolled back.
        - ``StaleDataError`` becomes ``OptimisticLockError``.
    """

    def __init__(self, session: Session, *, auto_commit: bool):
        self.session = session
        self._auto_commit = auto_commit

    @property
    def auto_commit(self) -> bool:
        return self._auto_commit

    @contextmanager
    def _unit_of_work(self, operation: str, entity_type: str, entity_id: object = None) -> Iterator[None]:
        try:
            yield
            self.session.flush()
            if self._auto_commit:
                self.session.commit()
        except StaleDataError as exc:
            if self._auto_commit:
                self.session.rollback()
            logger.warning(
                "optimistic_lock_conflict",
                extra={
                    "operation": operation,
                    "entity_type": entity_type,
                    "entity_id": str(entity_id),
                },
            )
            raise OptimisticLockError(entity_type, str(entity_id)) from exc
        except Exception:
            if self._auto_commit:
                self.session.rollback()
            logger.info(
                "operation_aborted",
                extra={
                    "operation": operation,
                    "entity_type": entity_type,
                    "entity_id": str(entity_id) if entity_id is not None else None,
                    "rolled_back": self._auto_commit,
                },
            )
            raise
