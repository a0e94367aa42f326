"""Server of record for pushed device records.

Push is keyed by record id and is safe to replay: a record already stored
with the same revision comes back unchanged, and a record the server once
renumbered is found again through its identity (origin device plus
creation time). Concurrent writers are resolved by last-writer-wins on
`updated_at`.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import UTC, datetime

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from fibertrace.models.enums import Collection
from fibertrace.models.sync import ServerRecord
from fibertrace.schemas.records import RECORD_ADAPTER, SyncableRecord, kind_of
from fibertrace.schemas.sync import AcceptedRecord, PullResult, PushResult, RejectedRecord
from fibertrace.services import change_tracking, numbering
from fibertrace.services.errors import StorageError
from fibertrace.services.metrics import SERVER_PUSHED

logger = logging.getLogger(__name__)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands timezone-aware columns back naive.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def identity_key(record: SyncableRecord) -> str:
    origin, created_at = change_tracking.record_identity(record)
    return f"{origin or '-'}|{_as_utc(created_at).isoformat()}"


def _load(row: ServerRecord) -> SyncableRecord:
    try:
        return RECORD_ADAPTER.validate_python(row.payload)
    except PydanticValidationError as exc:
        raise StorageError(f"Stored {row.collection} record {row.record_id} is unreadable: {exc}") from exc


def _wins(incoming: SyncableRecord, stored: SyncableRecord) -> bool:
    return change_tracking.version_key(incoming) >= change_tracking.version_key(stored)


def _is_replay(incoming: SyncableRecord, stored: SyncableRecord) -> bool:
    return change_tracking.same_version(incoming, stored)


def _write(row: ServerRecord, record: SyncableRecord, now: datetime) -> SyncableRecord:
    stored = record.model_copy(
        update={"synced": True, "synced_at": now, "server_updated_at": record.updated_at}
    )
    row.record_id = stored.id
    row.kind = stored.kind
    row.payload = stored.model_dump(mode="json")
    row.revision = stored.revision
    row.origin_device = stored.origin_device
    row.identity_key = identity_key(stored)
    row.is_deleted = stored.deleted
    row.record_updated_at = stored.updated_at
    row.received_at = now
    return stored


class SyncServer:
    @staticmethod
    def _by_identity(db: Session, collection: Collection, record: SyncableRecord) -> ServerRecord | None:
        stmt = select(ServerRecord).where(
            ServerRecord.collection == collection.value,
            ServerRecord.identity_key == identity_key(record),
        )
        return db.scalars(stmt).first()

    @staticmethod
    def _by_id(db: Session, collection: Collection, record_id: str) -> ServerRecord | None:
        stmt = select(ServerRecord).where(
            ServerRecord.collection == collection.value,
            ServerRecord.record_id == record_id,
        )
        return db.scalars(stmt).first()

    @staticmethod
    def _taken_ids(db: Session, collection: Collection) -> set[str]:
        stmt = select(ServerRecord.record_id).where(ServerRecord.collection == collection.value)
        return set(db.scalars(stmt).all())

    @staticmethod
    def push(
        db: Session,
        collection: Collection,
        records: Sequence[SyncableRecord],
        now: datetime | None = None,
    ) -> PushResult:
        now = now or datetime.now(UTC)
        expected_kind = kind_of(collection)
        result = PushResult()
        for pushed in records:
            incoming = pushed
            local_id = pushed.id
            if incoming.kind != expected_kind:
                result.rejected.append(
                    RejectedRecord(id=incoming.id, reason=f"{incoming.kind} records do not belong in {collection.value}")
                )
                SERVER_PUSHED.labels(collection=collection.value, outcome="rejected").inc()
                continue

            row = SyncServer._by_identity(db, collection, incoming)
            if row is not None and row.record_id != incoming.id:
                # Replay of a record this server already renumbered.
                incoming = incoming.model_copy(update={"id": row.record_id})
            if row is None:
                row = SyncServer._by_id(db, collection, incoming.id)
                if row is not None and row.identity_key != identity_key(incoming):
                    new_id = numbering.renumber(incoming.id, SyncServer._taken_ids(db, collection))
                    logger.info(
                        "sync_server_renumbered collection=%s id=%s new_id=%s",
                        collection.value,
                        incoming.id,
                        new_id,
                    )
                    incoming = incoming.model_copy(update={"id": new_id})
                    row = None
                    SERVER_PUSHED.labels(collection=collection.value, outcome="renumbered").inc()

            if row is None:
                row = ServerRecord(collection=collection.value)
                db.add(row)
                stored = _write(row, incoming, now)
                result.accepted.append(AcceptedRecord(local_id=local_id, record=stored))
                db.flush()
                SERVER_PUSHED.labels(collection=collection.value, outcome="stored").inc()
                continue

            current = _load(row)
            if _is_replay(incoming, current):
                result.accepted.append(AcceptedRecord(local_id=local_id, record=current))
                SERVER_PUSHED.labels(collection=collection.value, outcome="replay").inc()
                continue

            conflict = incoming.server_updated_at != current.updated_at
            if _wins(incoming, current):
                stored = _write(row, incoming, now)
                SERVER_PUSHED.labels(collection=collection.value, outcome="stored").inc()
                db.flush()
            else:
                stored = current
                conflict = True
                SERVER_PUSHED.labels(collection=collection.value, outcome="stale").inc()
            if conflict:
                logger.info(
                    "sync_server_conflict collection=%s id=%s incoming=%s stored=%s",
                    collection.value,
                    stored.id,
                    incoming.updated_at.isoformat(),
                    current.updated_at.isoformat(),
                )
            result.accepted.append(AcceptedRecord(local_id=local_id, record=stored, conflict=conflict))
        db.commit()
        return result

    @staticmethod
    def pull(
        db: Session,
        collection: Collection,
        since: datetime | None = None,
        now: datetime | None = None,
    ) -> PullResult:
        """Records received in [since, server_time]; the boundary is re-sent and discarded by equality."""
        server_time = now or datetime.now(UTC)
        stmt = select(ServerRecord).where(
            ServerRecord.collection == collection.value,
            ServerRecord.received_at <= server_time,
        )
        if since is not None:
            stmt = stmt.where(ServerRecord.received_at >= since)
        stmt = stmt.order_by(ServerRecord.received_at, ServerRecord.record_id)
        records = [_load(row) for row in db.scalars(stmt).all()]
        return PullResult(records=records, server_time=server_time)

    @staticmethod
    def get(db: Session, collection: Collection, record_id: str) -> SyncableRecord | None:
        row = SyncServer._by_id(db, collection, record_id)
        return _load(row) if row else None


sync_server = SyncServer()
