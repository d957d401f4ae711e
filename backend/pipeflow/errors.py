"""
Failure taxonomy for the store engine.

Every failure surfaced to a caller is a StoreError carrying the operation
name and the entity id it concerned, plus a free-form ``details`` dict the
UI layer can render. Only event delivery failures are swallowed (and logged).
"""

from __future__ import annotations


class StoreError(Exception):
    """Base class for all engine failures."""

    def __init__(
        self,
        message: str,
        *,
        operation: str | None = None,
        entity_id: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(message)
        self.operation = operation
        self.entity_id = entity_id
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "message": str(self),
            "operation": self.operation,
            "entity_id": self.entity_id,
            "details": self.details,
        }


class BackendUnavailable(StoreError):
    """The primary store could not be reached; triggers the permanent fallback at startup."""


class StorageFault(StoreError):
    """I/O or constraint error mid-operation. The enclosing transaction was rolled back."""

    def __init__(self, message: str, *, transient: bool = False, **kwargs):
        super().__init__(message, **kwargs)
        self.transient = transient


class NotFound(StoreError):
    """Referenced entity does not exist."""


class DuplicateItem(StoreError):
    """An equivalent entity already exists."""


class DuplicateSubmission(StoreError):
    """Identical entity was created within the duplicate-submission window."""


class ValidationError(StoreError, ValueError):
    """Input problem: empty sale, non-positive quantity, missing required field."""


class MigrationFailure(StoreError):
    """A schema migration step failed. Fatal at startup."""

    def __init__(self, message: str, *, target_version: int | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.target_version = target_version
