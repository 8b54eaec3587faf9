"""Domain error codes for the box office core."""

from enum import Enum


class ErrorCode(Enum):
    """Domain error codes."""

    INVALID_INPUT = "INVALID_INPUT"
    EVENT_NOT_FOUND = "EVENT_NOT_FOUND"
    VENUE_NOT_FOUND = "VENUE_NOT_FOUND"
    TICKET_TYPE_NOT_FOUND = "TICKET_TYPE_NOT_FOUND"
    SEAT_NOT_FOUND = "SEAT_NOT_FOUND"
    HOLD_NOT_FOUND = "HOLD_NOT_FOUND"
    HOLD_EXPIRED = "HOLD_EXPIRED"
    HOLD_FORBIDDEN = "HOLD_FORBIDDEN"
    INSUFFICIENT_INVENTORY = "INSUFFICIENT_INVENTORY"
    SEAT_ALREADY_HELD = "SEAT_ALREADY_HELD"
    UPSTREAM_FAILURE = "UPSTREAM_FAILURE"


class BoxOfficeError(Exception):
    """Base domain error with code and user-safe message."""

    status_code = 400
    retryable = False

    def __init__(self, code: ErrorCode, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"

    def to_dict(self) -> dict:
        return {"error": self.code.value, "message": self.message, "retryable": self.retryable}


class InvalidInputError(BoxOfficeError):
    """Raised for malformed coordinates, radius, pagination or quantity."""

    status_code = 422

    def __init__(self, message: str) -> None:
        super().__init__(code=ErrorCode.INVALID_INPUT, message=message)


class NotFoundError(BoxOfficeError):
    status_code = 404


class EventNotFoundError(NotFoundError):
    def __init__(self, event_id) -> None:
        super().__init__(code=ErrorCode.EVENT_NOT_FOUND, message="Event not found")
        self.event_id = event_id


class VenueNotFoundError(NotFoundError):
    def __init__(self, venue_id) -> None:
        super().__init__(code=ErrorCode.VENUE_NOT_FOUND, message="Venue not found")
        self.venue_id = venue_id


class TicketTypeNotFoundError(NotFoundError):
    """Raised when a ticket type is unknown or belongs to another event."""

    def __init__(self, ticket_type_id) -> None:
        super().__init__(code=ErrorCode.TICKET_TYPE_NOT_FOUND, message="Invalid ticket type for this event")
        self.ticket_type_id = ticket_type_id


class SeatNotFoundError(NotFoundError):
    def __init__(self, seat_id) -> None:
        super().__init__(code=ErrorCode.SEAT_NOT_FOUND, message="Invalid seat for this event")
        self.seat_id = seat_id


class HoldNotFoundError(NotFoundError):
    def __init__(self, hold_id) -> None:
        super().__init__(code=ErrorCode.HOLD_NOT_FOUND, message="Hold not found")
        self.hold_id = hold_id


class HoldExpiredError(BoxOfficeError):
    status_code = 410

    def __init__(self, hold_id) -> None:
        super().__init__(code=ErrorCode.HOLD_EXPIRED, message="Hold has expired")
        self.hold_id = hold_id


class ForbiddenError(BoxOfficeError):
    """Raised when a holder touches a hold it does not own."""

    status_code = 403

    def __init__(self, hold_id) -> None:
        super().__init__(code=ErrorCode.HOLD_FORBIDDEN, message="Hold belongs to another user")
        self.hold_id = hold_id


class InsufficientInventoryError(BoxOfficeError):
    """Routine contention outcome: the caller should show "sold out"."""

    status_code = 409

    def __init__(self, requested: int, available: int) -> None:
        super().__init__(
            code=ErrorCode.INSUFFICIENT_INVENTORY,
            message=f"Not enough tickets available. Requested: {requested}, Available: {available}",
        )
        self.requested = requested
        self.available = available


class ConflictError(BoxOfficeError):
    status_code = 409


class SeatAlreadyHeldError(ConflictError):
    def __init__(self, seat_id) -> None:
        super().__init__(code=ErrorCode.SEAT_ALREADY_HELD, message="Seat is already held or sold")
        self.seat_id = seat_id


class UpstreamFailureError(BoxOfficeError):
    """Backing store failure. Reads are idempotent, so callers may retry."""

    status_code = 503
    retryable = True

    def __init__(self, message: str = "Search backend unavailable, try again") -> None:
        super().__init__(code=ErrorCode.UPSTREAM_FAILURE, message=message)
