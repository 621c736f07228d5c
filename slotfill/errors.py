"""
Error taxonomy for the fulfillment engine.

Conflicts and rate-limits are ordinary outcomes and are returned as results
(see ``slotfill.models.Outcome``). Only bad input and infrastructure failures
are raised.
"""


class EngineError(Exception):
    """Base class for all engine errors."""


class ValidationError(EngineError):
    """Rejected input: missing slot fields, malformed values."""


class NotFoundError(ValidationError):
    """An id that does not exist for the tenant."""

    def __init__(self, kind: str, ident: str):
        super().__init__(f"No {kind} found with ID {ident}.")
        self.kind = kind
        self.ident = ident


class ConcurrentModificationError(EngineError):
    """A row changed between read and write (version mismatch)."""


class GatewayError(EngineError):
    """The notification transport refused or failed to deliver."""


class BookingError(EngineError):
    """The external appointment book could not create or cancel a booking."""
