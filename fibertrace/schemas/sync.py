from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from fibertrace.models.enums import Collection, SyncState
from fibertrace.schemas.records import AnyRecord, UtcDatetime
from fibertrace.services.errors import SyncConflictError


class PushRequest(BaseModel):
    records: list[AnyRecord] = Field(default_factory=list)


class AcceptedRecord(BaseModel):
    local_id: str
    record: AnyRecord
    conflict: bool = False


class RejectedRecord(BaseModel):
    id: str
    reason: str


class PushResult(BaseModel):
    accepted: list[AcceptedRecord] = Field(default_factory=list)
    rejected: list[RejectedRecord] = Field(default_factory=list)


class PullResult(BaseModel):
    records: list[AnyRecord] = Field(default_factory=list)
    server_time: UtcDatetime


class SyncConflict(BaseModel):
    collection: Collection
    record_id: str
    local_updated_at: UtcDatetime | None = None
    remote_updated_at: UtcDatetime | None = None
    winner: Literal["local", "remote"]
    detail: str | None = None


class SyncResult(BaseModel):
    collection: Collection
    pushed: list[str] = Field(default_factory=list)
    pulled: list[str] = Field(default_factory=list)
    conflicts: list[SyncConflict] = Field(default_factory=list)
    rejected: list[RejectedRecord] = Field(default_factory=list)
    renumbered: dict[str, str] = Field(default_factory=dict)
    skipped: bool = False
    started_at: UtcDatetime | None = None
    finished_at: UtcDatetime | None = None

    @property
    def has_conflicts(self) -> bool:
        return len(self.conflicts) > 0

    def raise_for_conflicts(self) -> None:
        if self.conflicts:
            raise SyncConflictError(list(self.conflicts))


class SyncMetadata(BaseModel):
    last_sync_time: UtcDatetime | None = None
    cursor: UtcDatetime | None = None


class SyncStatus(BaseModel):
    collection: Collection
    state: SyncState
    last_sync_time: UtcDatetime | None = None
    unsynced_count: int = 0
    is_online: bool = False
    last_error: str | None = None


class StorageStats(BaseModel):
    counts: dict[str, int] = Field(default_factory=dict)
    deleted: dict[str, int] = Field(default_factory=dict)
    unsynced: dict[str, int] = Field(default_factory=dict)
    last_sync: dict[str, UtcDatetime | None] = Field(default_factory=dict)
