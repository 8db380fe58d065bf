"""
Custom exceptions for the booking core.

Business outcomes (conflict, expired, already committed, ...) are result
variants, not exceptions. The classes below cover caller errors, storage
failures and invariant breaches.
"""


class InvalidReservationError(ValueError):
    """Raised when a reservation request fails validation."""

    def __init__(self, message: str, reason: str = "invalid_request"):
        self.reason = reason
        self.message = message
        super().__init__(message)


class TransientStorageError(Exception):
    """Raised when the ledger hits a retryable storage failure (serialization, deadlock, lock timeout)."""

    def __init__(self, message: str = "Transient storage failure", cause: Exception = None):
        self.cause = cause
        super().__init__(message)


class LedgerInvariantError(Exception):
    """Raised when the store reports two overlapping committed appointments for one specialist."""

    def __init__(self, specialist_id: str = None, message: str = None):
        self.specialist_id = specialist_id
        self.message = message or f"Overlapping appointments detected for specialist {specialist_id}"
        super().__init__(self.message)


class DirectoryUnavailableError(Exception):
    """Raised when the specialist directory cannot be reached."""
    pass
