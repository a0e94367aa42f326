"""Local record store: typed collections persisted as full JSON snapshots per key.

Every write serializes the whole collection before anything touches the
backend, and a backend write is atomic across all keys it is given, so a
failed write leaves the previous snapshot in place.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Iterator, Mapping, Sequence
from contextlib import ExitStack, contextmanager
from datetime import UTC, datetime
from typing import Protocol

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from fibertrace.models.enums import Collection
from fibertrace.models.storage import LocalKeyValue
from fibertrace.schemas.records import COLLECTION_ADAPTERS, COLLECTION_MODELS, Actor, JobTimer, SyncableRecord
from fibertrace.schemas.sync import StorageStats, SyncMetadata
from fibertrace.services import change_tracking
from fibertrace.services.errors import NotFoundError, StorageError
from fibertrace.services.scheduling import Clock, SystemClock

logger = logging.getLogger(__name__)


class KeyValueBackend(Protocol):
    def get(self, key: str) -> str | None: ...

    def write(self, values: Mapping[str, str | None]) -> None:
        """Atomically set every key; a None value removes the key."""
        ...

    def keys(self, prefix: str = "") -> list[str]: ...


class MemoryKeyValueBackend:
    def __init__(self, initial: Mapping[str, str] | None = None):
        self._data: dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def write(self, values: Mapping[str, str | None]) -> None:
        with self._lock:
            staged = dict(self._data)
            for key, value in values.items():
                if value is None:
                    staged.pop(key, None)
                else:
                    staged[key] = value
            self._data = staged

    def keys(self, prefix: str = "") -> list[str]:
        return sorted(key for key in self._data if key.startswith(prefix))


class SqlKeyValueBackend:
    """Durable backend over the `local_kv_entries` table; commits before returning."""

    def __init__(self, session_factory: sessionmaker, retries: int = 2):
        self.session_factory = session_factory
        self.retries = max(retries, 0)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self.session_factory()
        try:
            yield session
        finally:
            session.close()

    def get(self, key: str) -> str | None:
        try:
            with self._session() as session:
                row = session.get(LocalKeyValue, key)
                return row.value if row else None
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to read {key}: {exc}") from exc

    def write(self, values: Mapping[str, str | None]) -> None:
        last_error: Exception | None = None
        for attempt in range(self.retries + 1):
            with self._session() as session:
                try:
                    for key, value in values.items():
                        row = session.get(LocalKeyValue, key)
                        if value is None:
                            if row:
                                session.delete(row)
                        elif row:
                            row.value = value
                            row.updated_at = datetime.now(UTC)
                        else:
                            session.add(LocalKeyValue(key=key, value=value))
                    session.commit()
                    return
                except SQLAlchemyError as exc:
                    session.rollback()
                    last_error = exc
                    logger.warning(
                        "local_store_write_failed attempt=%s keys=%s error=%s",
                        attempt + 1,
                        ",".join(values),
                        exc,
                    )
        raise StorageError(f"Failed to write {', '.join(values)}: {last_error}")

    def keys(self, prefix: str = "") -> list[str]:
        try:
            with self._session() as session:
                stmt = select(LocalKeyValue.key).where(LocalKeyValue.key.startswith(prefix, autoescape=True))
                return sorted(session.scalars(stmt).all())
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to list keys: {exc}") from exc


class RecordStore:
    """Typed collections over a key-value backend.

    Writes to one collection are serialized by a per-collection lock, so they
    apply in call order; different collections never wait on each other.
    """

    def __init__(
        self,
        backend: KeyValueBackend,
        namespace: str = "fibertrace",
        clock: Clock | None = None,
        history_limit: int | None = change_tracking.DEFAULT_HISTORY_LIMIT,
    ):
        self.backend = backend
        self.namespace = namespace
        self.clock = clock or SystemClock()
        self.history_limit = history_limit
        self._locks = {collection: threading.RLock() for collection in Collection}

    # ── keys ────────────────────────────────────────────────────────────────

    def collection_key(self, collection: Collection) -> str:
        return f"{self.namespace}_{collection.value}"

    def sync_key(self, collection: Collection) -> str:
        return f"{self.namespace}_{collection.value}_sync"

    @property
    def timer_key(self) -> str:
        return f"{self.namespace}_active_timer"

    @contextmanager
    def lock(self, *collections: Collection) -> Iterator[None]:
        """Hold the write locks of several collections (acquired in a fixed order)."""
        with ExitStack() as stack:
            for collection in sorted(set(collections), key=lambda c: c.value):
                stack.enter_context(self._locks[collection])
            yield

    # ── serialization ───────────────────────────────────────────────────────

    def _serialize(self, collection: Collection, records: Sequence[SyncableRecord]) -> str:
        seen: set[str] = set()
        model = COLLECTION_MODELS[collection]
        for record in records:
            if not isinstance(record, model):
                raise StorageError(f"{type(record).__name__} cannot be stored in {collection.value}")
            if record.id in seen:
                raise StorageError(f"Duplicate id {record.id} in {collection.value}")
            seen.add(record.id)
        try:
            return COLLECTION_ADAPTERS[collection].dump_json(list(records)).decode()
        except (PydanticValidationError, TypeError, ValueError) as exc:
            raise StorageError(f"Failed to serialize {collection.value}: {exc}") from exc

    def _deserialize(self, collection: Collection, raw: str) -> list[SyncableRecord]:
        try:
            return COLLECTION_ADAPTERS[collection].validate_json(raw)
        except PydanticValidationError as exc:
            raise StorageError(f"Stored {collection.value} snapshot is unreadable: {exc}") from exc

    # ── collections ─────────────────────────────────────────────────────────

    def initialize(self) -> None:
        """Create empty collections that do not exist yet."""
        missing = {
            self.collection_key(collection): "[]"
            for collection in Collection
            if self.backend.get(self.collection_key(collection)) is None
        }
        if missing:
            self.backend.write(missing)

    def load(self, collection: Collection) -> list[SyncableRecord]:
        """All records in stored order, tombstones included."""
        raw = self.backend.get(self.collection_key(collection))
        if raw is None:
            return []
        return self._deserialize(collection, raw)

    def list_active(self, collection: Collection) -> list[SyncableRecord]:
        return [record for record in self.load(collection) if not record.deleted]

    def get(self, collection: Collection, record_id: str, include_deleted: bool = False):
        for record in self.load(collection):
            if record.id == record_id:
                if record.deleted and not include_deleted:
                    return None
                return record
        return None

    def require(self, collection: Collection, record_id: str) -> SyncableRecord:
        record = self.get(collection, record_id)
        if record is None:
            raise NotFoundError(f"{collection.value} record {record_id} not found")
        return record

    def save_all(self, collection: Collection, records: Sequence[SyncableRecord]) -> None:
        payload = self._serialize(collection, records)
        with self.lock(collection):
            self.backend.write({self.collection_key(collection): payload})

    def write_collections(
        self,
        snapshots: Mapping[Collection, Sequence[SyncableRecord]],
        sync_metadata: Mapping[Collection, SyncMetadata] | None = None,
    ) -> None:
        """Persist several collections (and their sync metadata) in one atomic write."""
        values: dict[str, str | None] = {
            self.collection_key(collection): self._serialize(collection, records)
            for collection, records in snapshots.items()
        }
        for collection, metadata in (sync_metadata or {}).items():
            values[self.sync_key(collection)] = metadata.model_dump_json()
        with self.lock(*snapshots, *(sync_metadata or {})):
            self.backend.write(values)

    def upsert(self, collection: Collection, record: SyncableRecord) -> SyncableRecord:
        """Insert by id, or replace the stored record in place."""
        with self.lock(collection):
            records = self.load(collection)
            for index, existing in enumerate(records):
                if existing.id == record.id:
                    records[index] = record
                    break
            else:
                records.append(record)
            self.save_all(collection, records)
        return record

    def delete(
        self,
        collection: Collection,
        record_id: str,
        actor: Actor | str,
        reason: str | None = "Record deleted",
    ) -> SyncableRecord:
        """Replace a record with its tombstone."""
        with self.lock(collection):
            record = self.require(collection, record_id)
            tombstone = change_tracking.mark_deleted(
                record, actor, reason, now=self.clock.now(), history_limit=self.history_limit
            )
            self.upsert(collection, tombstone)
        return tombstone

    def unsynced(self, collection: Collection) -> list[SyncableRecord]:
        return [record for record in self.load(collection) if not record.synced]

    def unsynced_count(self, collection: Collection) -> int:
        return len(self.unsynced(collection))

    def all_ids(self, collection: Collection) -> list[str]:
        return [record.id for record in self.load(collection)]

    # ── sync metadata ───────────────────────────────────────────────────────

    def sync_metadata(self, collection: Collection) -> SyncMetadata:
        raw = self.backend.get(self.sync_key(collection))
        if raw is None:
            return SyncMetadata()
        try:
            return SyncMetadata.model_validate_json(raw)
        except PydanticValidationError as exc:
            raise StorageError(f"Stored sync metadata for {collection.value} is unreadable: {exc}") from exc

    def last_sync_time(self, collection: Collection) -> datetime | None:
        return self.sync_metadata(collection).last_sync_time

    # ── job timer ───────────────────────────────────────────────────────────

    def load_timer(self) -> JobTimer | None:
        raw = self.backend.get(self.timer_key)
        if raw is None:
            return None
        try:
            return JobTimer.model_validate_json(raw)
        except PydanticValidationError as exc:
            raise StorageError(f"Stored job timer is unreadable: {exc}") from exc

    def save_timer(self, timer: JobTimer | None) -> None:
        self.backend.write({self.timer_key: timer.model_dump_json() if timer else None})

    # ── housekeeping ────────────────────────────────────────────────────────

    def stats(self) -> StorageStats:
        stats = StorageStats()
        for collection in Collection:
            records = self.load(collection)
            stats.counts[collection.value] = sum(1 for record in records if not record.deleted)
            stats.deleted[collection.value] = sum(1 for record in records if record.deleted)
            stats.unsynced[collection.value] = sum(1 for record in records if not record.synced)
            stats.last_sync[collection.value] = self.last_sync_time(collection)
        return stats

    def clear(self, collections: Iterable[Collection] | None = None) -> None:
        targets = list(collections or Collection)
        values: dict[str, str | None] = {}
        for collection in targets:
            values[self.collection_key(collection)] = None
            values[self.sync_key(collection)] = None
        if collections is None:
            values[self.timer_key] = None
        with self.lock(*targets):
            self.backend.write(values)
