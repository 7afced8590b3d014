"""
Typed exceptions for the order lifecycle and inventory engine.

Every error carries a machine-readable ``code`` class attribute and the
structured data that caused it. The HTTP layer maps the three categories to
status codes:

    FieldOpsError (base)
    |
    +-- NotFoundError                      -> 404
    |
    +-- ValidationError                    -> 400
    |   +-- InvalidQuantityError
    |   +-- InsufficientStockError
    |   +-- InsufficientHoldingError
    |   +-- NotHeldByCrewError
    |   +-- NotAssignedError
    |   +-- AlreadyAssignedError
    |   +-- NoCrewAssignedError
    |   +-- NotEmptyError
    |   +-- MissingReasonError
    |   +-- InvalidOperationError
    |   +-- ImmutableFieldError
    |
    +-- DuplicateError                     -> 409
    |   +-- DuplicateKeyError
    |   +-- DuplicateSubmissionError
    |       +-- DuplicateTicketError
    |       +-- DuplicateAddressError
    |       +-- DuplicateRecentFaultError
    |
    +-- ImmutableRecordError               -> 500
"""
from typing import Any, Iterable, Optional


class FieldOpsError(Exception):
    """Base exception for all engine errors."""

    code: str = "FIELDOPS_ERROR"

    @property
    def message(self) -> str:
        return str(self.args[0]) if self.args else self.code


class NotFoundError(FieldOpsError):
    """A referenced record does not exist."""

    code: str = "NOT_FOUND"

    def __init__(self, entity: str, key: Any):
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} not found: {key}")


# Validation errors


class ValidationError(FieldOpsError):
    """The request is well formed but violates a business rule."""

    code: str = "VALIDATION_ERROR"


class InvalidQuantityError(ValidationError):
    code: str = "INVALID_QUANTITY"

    def __init__(self, quantity: Any):
        self.quantity = quantity
        super().__init__(f"Quantity must be greater than zero, got {quantity}")


class InsufficientStockError(ValidationError):
    """Warehouse stock or batch remaining quantity is lower than requested."""

    code: str = "INSUFFICIENT_STOCK"

    def __init__(self, subject: str, available: int, requested: int):
        self.subject = subject
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient stock for {subject}: available {available}, requested {requested}"
        )


class InsufficientHoldingError(ValidationError):
    code: str = "INSUFFICIENT_HOLDING"

    def __init__(self, crew_id: int, item_id: int, available: int, requested: int):
        self.crew_id = crew_id
        self.item_id = item_id
        self.available = available
        self.requested = requested
        super().__init__(
            f"Crew {crew_id} holds {available} of item {item_id}, requested {requested}"
        )


class NotHeldByCrewError(ValidationError):
    code: str = "NOT_HELD_BY_CREW"

    def __init__(self, crew_id: int, identifiers: Iterable[str]):
        self.crew_id = crew_id
        self.identifiers = list(identifiers)
        super().__init__(
            f"Not held by crew {crew_id}: {', '.join(self.identifiers)}"
        )


class NotAssignedError(ValidationError):
    code: str = "NOT_ASSIGNED"

    def __init__(self, identifiers: Iterable[str], detail: str = "not assigned to a crew"):
        self.identifiers = list(identifiers)
        super().__init__(f"{', '.join(self.identifiers)}: {detail}")


class AlreadyAssignedError(ValidationError):
    code: str = "ALREADY_ASSIGNED"

    def __init__(self, identifiers: Iterable[str]):
        self.identifiers = list(identifiers)
        super().__init__(f"Already assigned or not in stock: {', '.join(self.identifiers)}")


class NoCrewAssignedError(ValidationError):
    code: str = "NO_CREW_ASSIGNED"

    def __init__(self, order_id: int):
        self.order_id = order_id
        super().__init__(
            f"Order {order_id} has no assigned crew; materials cannot be consumed"
        )


class NotEmptyError(ValidationError):
    code: str = "NOT_EMPTY"

    def __init__(self, batch_code: str, remaining: int):
        self.batch_code = batch_code
        self.remaining = remaining
        super().__init__(
            f"Batch {batch_code} still has {remaining} remaining and cannot be deleted"
        )


class MissingReasonError(ValidationError):
    code: str = "MISSING_REASON"

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"A reason is required for {operation}")


class InvalidOperationError(ValidationError):
    code: str = "INVALID_OPERATION"

    def __init__(self, message: str):
        super().__init__(message)


class ImmutableFieldError(ValidationError):
    code: str = "IMMUTABLE_FIELD"

    def __init__(self, entity: str, field: str, reason: Optional[str] = None):
        self.entity = entity
        self.field = field
        super().__init__(
            f"{entity}.{field} cannot be changed" + (f": {reason}" if reason else "")
        )


# Duplicate errors


class DuplicateError(FieldOpsError):
    code: str = "DUPLICATE"


class DuplicateKeyError(DuplicateError):
    code: str = "DUPLICATE_KEY"

    def __init__(self, entity: str, key: Any):
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} already exists: {key}")


class DuplicateSubmissionError(DuplicateError):
    """An incoming order duplicates one already on file. Not retryable."""

    code: str = "DUPLICATE_SUBMISSION"

    def __init__(self, message: str, existing_order_id: Optional[int] = None):
        self.existing_order_id = existing_order_id
        super().__init__(message)


class DuplicateTicketError(DuplicateSubmissionError):
    code: str = "DUPLICATE_TICKET"

    def __init__(self, ticket_id: str, existing_order_id: Optional[int] = None):
        self.ticket_id = ticket_id
        super().__init__(f"An order with ticket {ticket_id} already exists", existing_order_id)


class DuplicateAddressError(DuplicateSubmissionError):
    code: str = "DUPLICATE_ADDRESS"

    def __init__(self, address: str, existing_order_id: Optional[int] = None):
        self.address = address
        super().__init__(
            f"An installation order already exists for address '{address}'", existing_order_id
        )


class DuplicateRecentFaultError(DuplicateSubmissionError):
    code: str = "DUPLICATE_RECENT_FAULT"

    def __init__(self, subscriber_name: str, address: str, days: int,
                 existing_order_id: Optional[int] = None):
        self.subscriber_name = subscriber_name
        self.address = address
        self.days = days
        super().__init__(
            f"A repair order for '{subscriber_name}' at '{address}' "
            f"was already filed in the last {days} days",
            existing_order_id,
        )


class ImmutableRecordError(FieldOpsError):
    """History rows are append-only."""

    code: str = "IMMUTABLE_RECORD"

    def __init__(self, record_type: str, record_id: Any):
        self.record_type = record_type
        self.record_id = record_id
        super().__init__(f"{record_type} {record_id} is immutable")
