"""Exception taxonomy for board operations."""

from __future__ import annotations

from typing import Optional


class FluxError(Exception):
    """Base class for all board errors."""


class ValidationError(FluxError, ValueError):
    """Bad input on create/update (empty title, self-dependency, unknown project...)."""

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class NotFoundError(FluxError, LookupError):
    """An entity id does not resolve."""

    def __init__(self, kind: str, entity_id: str) -> None:
        super().__init__(f"{kind.capitalize()} {entity_id} not found")
        self.kind = kind
        self.entity_id = entity_id


class DeliveryError(FluxError):
    """A single webhook attempt failed (non-2xx or transport error).

    Only ever raised and caught inside the delivery worker.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, response_body: Optional[str] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class StorageError(FluxError, RuntimeError):
    """The persistence adapter could not read or write the snapshot."""
