"""Error taxonomy and the Result type returned by every write operation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class WorkflowError(Exception):
    """Base class for failures a caller can act on."""

    code = "workflow_error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, **self.details}


class NotFound(WorkflowError):
    code = "not_found"


class InvalidTransition(WorkflowError):
    code = "invalid_transition"


class PermissionDenied(WorkflowError):
    code = "permission_denied"


class StorageFailure(WorkflowError):
    """The document or file store failed; the caller may retry."""

    code = "storage_failure"


class ConcurrentModification(WorkflowError):
    """The snapshot a write was computed from is no longer current."""

    code = "concurrent_modification"


@dataclass(slots=True, frozen=True)
class Result(Generic[T]):
    """Explicit success/failure outcome of a write operation."""

    value: T | None = None
    error: WorkflowError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T | None = None) -> Result[T]:
        return cls(value=value)

    @classmethod
    def failure(cls, error: WorkflowError) -> Result[T]:
        return cls(error=error)

    def to_dict(self) -> dict[str, Any]:
        if self.error is not None:
            return {"ok": False, **self.error.to_dict()}
        value = self.value
        if hasattr(value, "model_dump"):
            value = value.model_dump(mode="json")
        return {"ok": True, "value": value}
