

class BuslineError(Exception):
    """
    Base exception for all domain-level errors
    inside the trip scheduling and ticketing engine.
    """


class ValidationError(BuslineError):
    """Raised when input is malformed or a booking rule is not met."""


class NotFoundError(BuslineError):
    """Raised when a referenced trip, seat, ticket, vehicle or route is absent."""

    def __init__(self, resource: str, resource_id: str | None = None):
        self.resource = resource
        self.resource_id = resource_id

        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} {resource_id} not found"
        super().__init__(message)


class ConflictError(BuslineError):
    """
    Raised when a vehicle is double-booked, a seat is unavailable
    or promotion dates overlap.
    """

    def __init__(self, message: str, conflicts: list[dict] | None = None):
        self.conflicts = conflicts or []
        super().__init__(message)


class InvalidTransitionError(BuslineError):
    """
    Raised when an illegal trip or ticket state transition is attempted.
    """

    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state

        message = (
            f"Illegal state transition attempted: "
            f"{from_state} -> {to_state}"
        )
        super().__init__(message)


class PreconditionFailedError(BuslineError):
    """Raised when a transfer is attempted outside its allowed window or state."""


class ConfigurationError(BuslineError):
    """Raised when required deployment data (the Default promotion) is missing."""
