"""Syncable record model: one closed, tagged variant per domain entity."""

from __future__ import annotations

from datetime import UTC, date, datetime
from typing import Annotated, Any, Literal

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, TypeAdapter, model_validator

from fibertrace.models.enums import (
    Collection,
    JobPriority,
    JobStatus,
    NodeCondition,
    NodeType,
    RouteType,
    SpliceQuality,
)


def _ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


UtcDatetime = Annotated[datetime, AfterValidator(_ensure_utc)]


class Actor(BaseModel):
    id: str = Field(min_length=1)
    display_name: str | None = None


class ChangeHistoryEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    field: str
    old_value: Any = None
    new_value: Any = None
    changed_by: str
    timestamp: UtcDatetime
    reason: str | None = None


class SyncableRecord(BaseModel):
    id: str = Field(min_length=1, max_length=80)
    created_at: UtcDatetime
    updated_at: UtcDatetime
    last_updated_by: str | None = None
    origin_device: str | None = None
    revision: int = Field(default=0, ge=0)
    synced: bool = False
    synced_at: UtcDatetime | None = None
    server_updated_at: UtcDatetime | None = None
    deleted: bool = False
    deleted_at: UtcDatetime | None = None
    change_history: list[ChangeHistoryEntry] = Field(default_factory=list)

    @model_validator(mode="after")
    def _updated_not_before_created(self):
        if self.updated_at < self.created_at:
            raise ValueError("updated_at must not be earlier than created_at")
        return self


# Fields owned by the envelope; domain patches may never set them.
METADATA_FIELDS = frozenset(SyncableRecord.model_fields) | {"kind"}


class Job(SyncableRecord):
    kind: Literal["job"] = "job"
    name: str = Field(min_length=1, max_length=160)
    description: str = ""
    status: JobStatus = JobStatus.pending
    priority: JobPriority = JobPriority.medium
    assigned_technician: str | None = None
    technicians_team: list[str] = Field(default_factory=list)
    node_ids: list[str] = Field(default_factory=list)
    route_ids: list[str] = Field(default_factory=list)
    scheduled_date: date | None = None
    scheduled_time: str | None = None
    estimated_duration: int = Field(gt=0)  # seconds
    duration: int = Field(default=0, ge=0)  # seconds
    estimated_cost: float = Field(default=0, ge=0)
    actual_cost: float | None = Field(default=None, ge=0)
    notes: str = ""
    started_at: UtcDatetime | None = None
    completed_at: UtcDatetime | None = None
    signed_by: str | None = None


class Node(SyncableRecord):
    kind: Literal["node"] = "node"
    name: str = Field(min_length=1, max_length=160)
    node_type: NodeType
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    condition: NodeCondition = NodeCondition.new
    power_rating: float | None = None  # input power, dBm
    location: str | None = None
    notes: str = ""


class Segment(BaseModel):
    id: str = Field(min_length=1)
    name: str | None = None
    distance: float = Field(ge=0)  # meters
    fiber_count: int | None = Field(default=None, ge=1)


class RouteInventory(BaseModel):
    cable_type: str = ""
    cable_size: str = ""
    total_length: float = Field(default=0, ge=0)
    reserve: float = 0
    splice_count: int = Field(default=0, ge=0)


class Route(SyncableRecord):
    kind: Literal["route"] = "route"
    name: str = Field(min_length=1, max_length=160)
    route_type: RouteType
    start_node_id: str | None = None
    end_node_id: str | None = None
    segments: list[Segment] = Field(default_factory=list)
    total_distance: float = Field(default=0, ge=0)
    inventory: RouteInventory = Field(default_factory=RouteInventory)


class Splice(BaseModel):
    id: str = Field(min_length=1)
    fiber_a: int = Field(ge=1)
    fiber_b: int = Field(ge=1)
    loss: float = Field(ge=0)  # dB
    tray: int | None = Field(default=None, ge=1)
    recorded_by: str | None = None
    recorded_at: UtcDatetime | None = None


class Closure(SyncableRecord):
    kind: Literal["closure"] = "closure"
    name: str = Field(min_length=1, max_length=160)
    closure_type: str = "Dome"
    node_id: str | None = None
    capacity: int = Field(default=48, ge=1)
    location: str | None = None
    splices: list[Splice] = Field(default_factory=list)


class FiberMapping(BaseModel):
    fiber_a: int = Field(ge=1)
    fiber_b: int = Field(ge=1)
    loss: float = Field(ge=0)
    quality: SpliceQuality


class SpliceMap(SyncableRecord):
    kind: Literal["splice_map"] = "splice_map"
    name: str = Field(min_length=1, max_length=160)
    closure_id: str | None = None
    cable_a: str = Field(min_length=1)
    cable_b: str = Field(min_length=1)
    fiber_count: int = Field(ge=1)
    mappings: list[FiberMapping] = Field(default_factory=list)


class InventoryItem(SyncableRecord):
    kind: Literal["inventory_item"] = "inventory_item"
    name: str = Field(min_length=1, max_length=160)
    category: str = Field(min_length=1)
    unit: str = Field(min_length=1, max_length=40)
    current_stock: int = Field(default=0, ge=0)
    minimum_stock: int = Field(default=10, ge=0)
    maximum_stock: int | None = Field(default=None, ge=0)
    supplier: str | None = None
    location: str | None = None
    last_restocked_at: UtcDatetime | None = None


AnyRecord = Annotated[
    Job | Node | Route | Closure | SpliceMap | InventoryItem,
    Field(discriminator="kind"),
]

RECORD_ADAPTER: TypeAdapter = TypeAdapter(AnyRecord)

COLLECTION_MODELS: dict[Collection, type[SyncableRecord]] = {
    Collection.jobs: Job,
    Collection.nodes: Node,
    Collection.routes: Route,
    Collection.closures: Closure,
    Collection.splice_maps: SpliceMap,
    Collection.inventory: InventoryItem,
}

COLLECTION_ADAPTERS: dict[Collection, TypeAdapter] = {
    collection: TypeAdapter(list[model]) for collection, model in COLLECTION_MODELS.items()
}


def model_for(collection: Collection) -> type[SyncableRecord]:
    return COLLECTION_MODELS[collection]


def kind_of(collection: Collection) -> str:
    return COLLECTION_MODELS[collection].model_fields["kind"].default


class JobTimer(BaseModel):
    job_id: str
    is_running: bool = False
    elapsed_seconds: int = Field(default=0, ge=0)  # accumulated before the current run
    started_at: UtcDatetime | None = None
    paused_at: UtcDatetime | None = None


class JobCompletion(BaseModel):
    duration_seconds: int = Field(ge=0)
    actual_cost: float = Field(ge=0)
    signed_by: str = Field(min_length=1)
    notes: str = ""


class CompletionReport(BaseModel):
    job_id: str
    name: str
    status: JobStatus
    duration: str
    duration_seconds: int
    estimated_duration: str
    estimated_duration_seconds: int
    estimated_cost: float
    actual_cost: float | None
    cost_variance: float | None
    signed_by: str | None
    completed_at: UtcDatetime | None
    node_count: int
    route_count: int
    notes: str
