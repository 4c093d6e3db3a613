from __future__ import annotations


class BookingError(RuntimeError):
    """Base class for errors raised by the booking engine."""

    code = "internal"


class NotFoundError(BookingError):
    """Raised when a service, business, employee or appointment is absent."""

    code = "not_found"

    def __init__(self, resource: str, identifier: str | None = None) -> None:
        self.resource = resource
        self.identifier = identifier
        detail = f"{resource} not found"
        if identifier:
            detail = f"{resource} {identifier} not found"
        super().__init__(detail)


class ConflictError(BookingError):
    """Raised when a time slot is no longer available at booking time."""

    code = "conflict"


class UnavailableError(BookingError):
    """Raised when the transport, cache or queue cannot be reached."""

    code = "unavailable"


class ValidationError(BookingError):
    """Raised for malformed input such as a bad numeric selection."""

    code = "validation"


class InternalError(BookingError):
    """Raised for unexpected store or transport failures."""

    code = "internal"
