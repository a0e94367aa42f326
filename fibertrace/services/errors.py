"""Unified error taxonomy for the offline store and sync services."""

from __future__ import annotations

from dataclasses import dataclass, field

from fastapi import HTTPException

SAVED_LOCALLY_MESSAGE = "Changes saved locally, sync will retry."


@dataclass(eq=False)
class FiberTraceError(Exception):
    code: str
    detail: str
    status_code: int = 400
    retryable: bool = False

    def __post_init__(self):
        super().__init__(self.detail)

    def __str__(self) -> str:
        return self.detail

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=self.detail)


class ValidationError(FiberTraceError):
    def __init__(self, field: str, detail: str):
        self.field = field
        super().__init__(code="validation_error", detail=f"{field}: {detail}", status_code=400)


class NotFoundError(FiberTraceError):
    def __init__(self, detail: str):
        super().__init__(code="not_found", detail=detail, status_code=404)


class StorageError(FiberTraceError):
    def __init__(self, detail: str, saved_locally: bool = False):
        self.saved_locally = saved_locally
        super().__init__(code="storage_error", detail=detail, status_code=503, retryable=True)

    @property
    def user_message(self) -> str:
        if self.saved_locally:
            return SAVED_LOCALLY_MESSAGE
        return self.detail


class TransportError(FiberTraceError):
    def __init__(self, detail: str, status_code: int = 503, retryable: bool = True):
        super().__init__(code="transport_error", detail=detail, status_code=status_code, retryable=retryable)


class TransportAuthError(TransportError):
    def __init__(self, detail: str, status_code: int = 401):
        super().__init__(detail=detail, status_code=status_code, retryable=False)


@dataclass(eq=False)
class SyncConflictError(Exception):
    conflicts: list = field(default_factory=list)

    def __post_init__(self):
        super().__init__(f"{len(self.conflicts)} sync conflict(s) resolved by last-writer-wins")

