"""Exception taxonomy for the Trolley integration.

Repositories and services raise these internally; the service edge turns them
into ``Result`` values carrying a stable ``code``. They extend Home
Assistant's HomeAssistantError to ensure consistent behavior when surfaced
through the platform.

All exceptions accept a human-readable message. ``str(exception)`` returns the
message unchanged.
"""

from __future__ import annotations

from homeassistant.exceptions import HomeAssistantError


class TrolleyError(HomeAssistantError):
    """Base exception for Trolley-related errors."""

    code: str = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)


class ValidationError(TrolleyError):
    """Raised when input payloads fail validation or violate invariants."""

    code = "invalid_input"


class NotFoundError(TrolleyError):
    """Raised when a requested resource does not exist or is soft-deleted."""

    code = "not_found"


class LockedError(TrolleyError):
    """Raised when content of a locked list would be mutated."""

    code = "locked"


class ForbiddenError(TrolleyError):
    """Raised when the acting user does not own the list."""

    code = "forbidden"


class ConflictError(TrolleyError):
    """Raised when an operation conflicts with current state."""

    code = "conflict"


class AlreadyLockedError(ConflictError):
    code = "already_locked"


class AlreadyOwnerError(ConflictError):
    code = "already_owner"


class NotActiveError(ConflictError):
    code = "not_active"


class StorageError(TrolleyError):
    """Raised when storage operations fail or data is corrupted."""

    code = "storage_failure"
