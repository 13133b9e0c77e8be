"""Domain error codes for the transaction core."""

from enum import Enum


class ErrorCode(Enum):
    """Domain error codes."""

    NOT_FOUND = "NOT_FOUND"
    TICKET_NOT_FOUND = "TICKET_NOT_FOUND"
    FORBIDDEN = "FORBIDDEN"
    INVALID_STATE = "INVALID_STATE"
    INSUFFICIENT_INVENTORY = "INSUFFICIENT_INVENTORY"
    COUPON_NOT_FOUND = "COUPON_NOT_FOUND"
    COUPON_EVENT_MISMATCH = "COUPON_EVENT_MISMATCH"
    VALIDATION_ERROR = "VALIDATION_ERROR"


class DomainError(Exception):
    """Base domain error with code and user-safe message."""

    code: ErrorCode = ErrorCode.VALIDATION_ERROR

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class NotFoundError(DomainError):
    """Raised when an event, ticket, transaction or user is missing."""

    code = ErrorCode.NOT_FOUND

    def __init__(self, entity: str, entity_id) -> None:
        super().__init__(f"{entity} not found")
        self.entity = entity
        self.entity_id = entity_id


class TicketNotFoundError(NotFoundError):
    """Raised when a ticket id does not belong to the event."""

    code = ErrorCode.TICKET_NOT_FOUND

    def __init__(self, ticket_id) -> None:
        super().__init__("Ticket", ticket_id)
        self.message = f"Ticket {ticket_id} not found for this event"


class ForbiddenError(DomainError):
    code = ErrorCode.FORBIDDEN


class InvalidStateError(DomainError):
    code = ErrorCode.INVALID_STATE


class InsufficientInventoryError(DomainError):
    code = ErrorCode.INSUFFICIENT_INVENTORY

    def __init__(self, ticket_id, requested: int, available: int | None = None) -> None:
        super().__init__(f"Not enough seats available for ticket {ticket_id}")
        self.ticket_id = ticket_id
        self.requested = requested
        self.available = available


class CouponNotFoundError(DomainError):
    code = ErrorCode.COUPON_NOT_FOUND

    def __init__(self, code: str) -> None:
        super().__init__("Invalid or expired coupon")
        self.coupon_code = code


class CouponEventMismatchError(DomainError):
    code = ErrorCode.COUPON_EVENT_MISMATCH

    def __init__(self, code: str) -> None:
        super().__init__("Coupon is not valid for this event")
        self.coupon_code = code


class ValidationError(DomainError):
    code = ErrorCode.VALIDATION_ERROR
