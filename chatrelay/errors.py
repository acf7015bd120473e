"""
Exceptions raised by the reconciliation engine and its collaborators.

None of these carry user-facing text; the HTTP layer decides what the
channel sees.
"""


class RelayError(Exception):
    """Base class for chatrelay errors."""


class StorageError(RelayError):
    """Raised when a partition cannot be opened or a transaction fails."""


class MessageReferenceError(RelayError):
    """Raised when a reply is pushed for a message the partition has never seen."""

    def __init__(self, related_id: str) -> None:
        super().__init__(f"Unknown message: {related_id!r}")
        self.related_id = related_id


class ConfigError(RelayError):
    """Raised when the dead-letter policy is configured with non-positive values."""


class InferenceError(RelayError):
    """Raised when the inference backend fails or returns an error status."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
