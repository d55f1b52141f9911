"""
Typed Exception Hierarchy for the ERP Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers of the stock ledger and the document services (an HTTP layer, a
batch job, a test) must react to failures precisely: a missing product is
a 404, an over-shipment is a 400 carrying the offending quantities, an edit
to a paid invoice is a 403.  Parsing message strings for that is fragile.

Every error therefore:
  1. Has a TYPED exception class (catch by type, not message)
  2. Has a CODE class attribute (machine-readable, API-safe)
  3. Carries structured DATA (quantities, statuses, ids) as attributes

Example:
    try:
        deliveries.create_delivery(request, actor_id)
    except QuantityExceedsRemainingError as e:
        return {"error": e.code, "remaining": str(e.remaining),
                "ordered": str(e.ordered), "committed": str(e.committed)}

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    ErpKernelError (base)
    |
    +-- NotFoundError
    |   +-- EntityNotFoundError
    |
    +-- InvalidRequestError
    |   +-- InvalidQuantityError
    |   +-- LocationExclusivityError
    |   +-- InvalidMovementTypeError
    |   +-- InvalidReferenceError
    |   +-- QuantityExceedsRemainingError
    |   +-- TransitionPreconditionError
    |   +-- InvalidDocumentError
    |
    +-- ConflictError
    |   +-- IllegalTransitionError
    |   +-- DocumentLockedError
    |   +-- DeletionNotAllowedError
    |   +-- PaymentAlreadyReversedError
    |
    +-- ConcurrencyError
    |   +-- OptimisticLockError
    |
    +-- ImmutabilityError
    |   +-- ImmutabilityViolationError
    |
    +-- InternalError
        +-- DocumentReloadError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Not found       | ENTITY_NOT_FOUND            | Document/product/location/user absent
----------------|-----------------------------|-----------------------------------------
Invalid request | INVALID_QUANTITY            | Zero / negative / out-of-range value
                | LOCATION_EXCLUSIVITY        | Both or neither of warehouse/shop
                | INVALID_MOVEMENT_TYPE       | Wrong movement type for entry point
                | INVALID_REFERENCE           | Referenced entity missing or foreign
                | QUANTITY_EXCEEDS_REMAINING  | Downstream qty > remaining upstream qty
                | TRANSITION_PRECONDITION     | Target status precondition unmet
                | INVALID_DOCUMENT            | Structurally inconsistent document
----------------|-----------------------------|-----------------------------------------
Conflict        | ILLEGAL_TRANSITION          | Transition not in the state table
                | DOCUMENT_LOCKED             | Edit outside allow-list on locked doc
                | DELETION_NOT_ALLOWED        | Delete in a non-deletable status
                | PAYMENT_ALREADY_REVERSED    | Reversing a reversed payment
----------------|-----------------------------|-----------------------------------------
Concurrency     | OPTIMISTIC_LOCK_CONFLICT    | Version column mismatch at flush
----------------|-----------------------------|-----------------------------------------
Immutability    | IMMUTABILITY_VIOLATION      | UPDATE/DELETE of a stock movement
----------------|-----------------------------|-----------------------------------------
Internal        | DOCUMENT_RELOAD_FAILED      | Re-fetch after write returned nothing

===============================================================================
DESIGN DECISIONS
===============================================================================

1. The four abstract failure kinds (not found, invalid request, conflict,
   internal) are the category bases.  A transport layer maps each category
   to one status code without knowing the concrete classes.

2. Quantities and amounts are kept as Decimal attributes.  Messages render
   them, but clients should read the attributes.

3. ConcurrencyError is its own category: a caller may retry the whole
   operation in a fresh transaction.

===============================================================================
"""

from decimal import Decimal


class ErpKernelError(Exception):
    """
    Base exception for all ERP kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "ERP_KERNEL_ERROR"


# Not-found errors


class NotFoundError(ErpKernelError):
    """Base exception for absent entities."""

    code: str = "NOT_FOUND"


class EntityNotFoundError(NotFoundError):
    """Entity with the given id does not exist (or is soft-deleted)."""

    code: str = "ENTITY_NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} not found: {entity_id}")


# Invalid-request errors


class InvalidRequestError(ErpKernelError):
    """Base exception for malformed or semantically inconsistent input."""

    code: str = "INVALID_REQUEST"


class InvalidQuantityError(InvalidRequestError):
    """A quantity, price, or percentage is outside its allowed range."""

    code: str = "INVALID_QUANTITY"

    def __init__(self, field: str, value: Decimal | None, reason: str):
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid {field} ({value}): {reason}")


class LocationExclusivityError(InvalidRequestError):
    """Exactly one of warehouse or shop must be given."""

    code: str = "LOCATION_EXCLUSIVITY"

    def __init__(self, warehouse_id: str | None, shop_id: str | None):
        self.warehouse_id = warehouse_id
        self.shop_id = shop_id
        if warehouse_id and shop_id:
            detail = "both a warehouse and a shop were given"
        else:
            detail = "neither a warehouse nor a shop was given"
        super().__init__(f"Exactly one location is required: {detail}")


class InvalidMovementTypeError(InvalidRequestError):
    """Movement type not accepted by this entry point."""

    code: str = "INVALID_MOVEMENT_TYPE"

    def __init__(self, movement_type: str, allowed: tuple[str, ...]):
        self.movement_type = movement_type
        self.allowed = allowed
        super().__init__(
            f"Movement type '{movement_type}' is not allowed here. "
            f"Allowed: {', '.join(allowed)}"
        )


class InvalidReferenceError(InvalidRequestError):
    """A referenced entity is missing or does not belong where it is used."""

    code: str = "INVALID_REFERENCE"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(f"Invalid {entity_type} reference {entity_id}: {reason}")


class QuantityExceedsRemainingError(InvalidRequestError):
    """
    A downstream line asks for more than the upstream line has left.

    effect is "ship" or "invoice"; the message wording follows it so a
    client can render it as-is.
    """

    code: str = "QUANTITY_EXCEEDS_REMAINING"

    _WORDING = {
        "ship": ("ship", "shippable", "shipped"),
        "invoice": ("invoice", "invoiceable", "invoiced"),
    }

    def __init__(
        self,
        effect: str,
        upstream_type: str,
        upstream_id: str,
        ordered: Decimal,
        committed: Decimal,
        requested: Decimal,
        remaining: Decimal,
    ):
        self.effect = effect
        self.upstream_type = upstream_type
        self.upstream_id = upstream_id
        self.ordered = ordered
        self.committed = committed
        self.requested = requested
        self.remaining = remaining
        verb, adjective, past = self._WORDING.get(effect, (effect, effect, effect))
        super().__init__(
            f"Quantity to {verb} ({requested}) for {upstream_type} {upstream_id} "
            f"exceeds remaining {adjective} quantity ({remaining}). "
            f"Ordered: {ordered}, Already {past}: {committed}."
        )


class TransitionPreconditionError(InvalidRequestError):
    """The target status exists but its precondition is unmet."""

    code: str = "TRANSITION_PRECONDITION"

    def __init__(
        self,
        document_type: str,
        document_id: str,
        current_status: str,
        target_status: str,
        reason: str,
    ):
        self.document_type = document_type
        self.document_id = document_id
        self.current_status = current_status
        self.target_status = target_status
        self.reason = reason
        super().__init__(
            f"Cannot move {document_type} {document_id} from '{current_status}' "
            f"to '{target_status}': {reason}"
        )


class InvalidDocumentError(InvalidRequestError):
    """The document as a whole is inconsistent (e.g. a non-draft order with no items)."""

    code: str = "INVALID_DOCUMENT"

    def __init__(self, document_type: str, document_id: str | None, reason: str):
        self.document_type = document_type
        self.document_id = document_id
        self.reason = reason
        super().__init__(f"Invalid {document_type} {document_id or '(new)'}: {reason}")


# Conflict errors


class ConflictError(ErpKernelError):
    """Base exception for operations refused by document state."""

    code: str = "CONFLICT"


class IllegalTransitionError(ConflictError):
    """Transition not allowed from the current status."""

    code: str = "ILLEGAL_TRANSITION"

    def __init__(
        self,
        document_type: str,
        document_id: str,
        current_status: str,
        target_status: str,
    ):
        self.document_type = document_type
        self.document_id = document_id
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(
            f"Cannot change status of {document_type} {document_id} "
            f"from '{current_status}' to '{target_status}'"
        )


class DocumentLockedError(ConflictError):
    """
    Update touches fields outside the allow-list of a locked document.

    The whole update is refused; nothing is applied.
    """

    code: str = "DOCUMENT_LOCKED"

    def __init__(
        self,
        document_type: str,
        document_id: str,
        status: str,
        rejected_fields: tuple[str, ...],
        allowed_fields: tuple[str, ...],
    ):
        self.document_type = document_type
        self.document_id = document_id
        self.status = status
        self.rejected_fields = rejected_fields
        self.allowed_fields = allowed_fields
        super().__init__(
            f"{document_type} {document_id} is '{status}'; only "
            f"{', '.join(allowed_fields) or 'no fields'} may change. "
            f"Rejected: {', '.join(rejected_fields)}"
        )


class DeletionNotAllowedError(ConflictError):
    """Document cannot be deleted in its current state."""

    code: str = "DELETION_NOT_ALLOWED"

    def __init__(self, document_type: str, document_id: str, status: str, reason: str):
        self.document_type = document_type
        self.document_id = document_id
        self.status = status
        self.reason = reason
        super().__init__(
            f"Cannot delete {document_type} {document_id} in status '{status}': {reason}"
        )


class PaymentAlreadyReversedError(ConflictError):
    """Payment has already been reversed."""

    code: str = "PAYMENT_ALREADY_REVERSED"

    def __init__(self, payment_id: str):
        self.payment_id = payment_id
        super().__init__(f"Payment {payment_id} has already been reversed")


# Concurrency-related exceptions


class ConcurrencyError(ErpKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class OptimisticLockError(ConcurrencyError):
    """Optimistic locking conflict detected."""

    code: str = "OPTIMISTIC_LOCK_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"Optimistic lock conflict on {entity_type} {entity_id}: "
            "entity was modified by another transaction"
        )


# Immutability-related exceptions


class ImmutabilityError(ErpKernelError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """
    Attempted to modify or delete an immutable record.

    Stock movements are append-only: corrections are new offsetting entries.
    """

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


# Internal errors


class InternalError(ErpKernelError):
    """Base exception for failures that indicate a bug, not a business error."""

    code: str = "INTERNAL_ERROR"


class DocumentReloadError(InternalError):
    """A document written in this transaction could not be re-read."""

    code: str = "DOCUMENT_RELOAD_FAILED"

    def __init__(self, document_type: str, document_id: str):
        self.document_type = document_type
        self.document_id = document_id
        super().__init__(
            f"{document_type} {document_id} could not be reloaded after write"
        )
