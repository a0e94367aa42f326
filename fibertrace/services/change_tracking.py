"""Change-tracking envelope.

Pure transforms over syncable records: every function returns a new record
and leaves its input untouched. Each call stamps `updated_at`,
`last_updated_by` and the dirty flag even when no value differs; only real
value changes are appended to `change_history`.
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any, TypeVar

from pydantic import ValidationError as PydanticValidationError
from pydantic_core import to_jsonable_python

from fibertrace.schemas.records import METADATA_FIELDS, Actor, ChangeHistoryEntry, SyncableRecord
from fibertrace.services.errors import ValidationError

R = TypeVar("R", bound=SyncableRecord)

REMOTE_SYNC_ACTOR = "remote sync"
DEFAULT_HISTORY_LIMIT = 100


def actor_id(actor: Actor | str) -> str:
    if isinstance(actor, Actor):
        return actor.id
    if not actor:
        raise ValidationError("actor", "an acting technician is required")
    return actor


def jsonable(value: Any) -> Any:
    return to_jsonable_python(value)


def translate_validation_error(exc: PydanticValidationError) -> ValidationError:
    first = exc.errors()[0]
    field = ".".join(str(part) for part in first.get("loc", ())) or "record"
    return ValidationError(field, first.get("msg", "invalid value"))


def revalidate(record: R, updates: Mapping[str, Any]) -> R:
    data = record.model_dump()
    data.update(updates)
    try:
        return type(record).model_validate(data)
    except PydanticValidationError as exc:
        raise translate_validation_error(exc) from exc


def domain_fields(record: SyncableRecord) -> dict[str, Any]:
    return {
        name: jsonable(getattr(record, name))
        for name in type(record).model_fields
        if name not in METADATA_FIELDS
    }


def changed_fields(before: SyncableRecord, after: SyncableRecord) -> list[str]:
    old = domain_fields(before)
    new = domain_fields(after)
    if before.deleted != after.deleted:
        old["deleted"], new["deleted"] = before.deleted, after.deleted
    return [name for name in new if old.get(name) != new[name]]


def record_identity(record: SyncableRecord) -> tuple[str | None, datetime]:
    """Who created the record and when; distinguishes two records that share an id."""
    return record.origin_device, record.created_at


def version_key(record: SyncableRecord) -> tuple[datetime, str]:
    """Ordering used for last-writer-wins; the actor id breaks timestamp ties."""
    return record.updated_at, record.last_updated_by or ""


def same_version(a: SyncableRecord, b: SyncableRecord) -> bool:
    """Both copies carry the same edit of the same record, whatever their ids or sync flags."""
    return (
        record_identity(a) == record_identity(b)
        and a.revision == b.revision
        and version_key(a) == version_key(b)
        and a.deleted == b.deleted
        and domain_fields(a) == domain_fields(b)
    )


def _entry(field: str, old: Any, new: Any, changed_by: str, now: datetime, reason: str | None):
    return ChangeHistoryEntry(
        id=f"ch-{uuid.uuid4().hex[:12]}",
        field=field,
        old_value=jsonable(old),
        new_value=jsonable(new),
        changed_by=changed_by,
        timestamp=now,
        reason=reason,
    )


def _retain(history: list[ChangeHistoryEntry], limit: int | None) -> list[ChangeHistoryEntry]:
    if limit and len(history) > limit:
        return history[-limit:]
    return history


def _stamp_time(record: SyncableRecord, now: datetime | None) -> datetime:
    now = now or datetime.now(UTC)
    # updated_at never moves backwards, even if the device clock does.
    return max(now, record.updated_at)


def _apply(
    record: R,
    patch: Mapping[str, Any],
    actor: Actor | str,
    reason: str | None,
    now: datetime | None,
    history_limit: int | None,
    extra: Mapping[str, Any] | None = None,
) -> R:
    changed_by = actor_id(actor)
    stamped = _stamp_time(record, now)
    history = list(record.change_history)
    updates: dict[str, Any] = {}
    for field, new_value in patch.items():
        old_value = getattr(record, field)
        if jsonable(old_value) != jsonable(new_value):
            history.append(_entry(field, old_value, new_value, changed_by, stamped, reason))
            updates[field] = new_value
    updates.update(extra or {})
    updates.update(
        updated_at=stamped,
        last_updated_by=changed_by,
        synced=False,
        revision=record.revision + 1,
        change_history=_retain(history, history_limit),
    )
    return revalidate(record, updates)


def _check_field(record: SyncableRecord, field: str) -> None:
    if field in METADATA_FIELDS:
        raise ValidationError(field, "is managed by change tracking and cannot be patched")
    if field not in type(record).model_fields:
        raise ValidationError(field, f"is not a field of {record.kind}")


def new_record(
    model: type[R],
    fields: Mapping[str, Any],
    *,
    record_id: str,
    actor: Actor | str,
    now: datetime | None = None,
    origin_device: str | None = None,
) -> R:
    """Build a fresh, unsynced record of `model` from domain fields."""
    for field in fields:
        if field in METADATA_FIELDS:
            raise ValidationError(field, "is managed by change tracking and cannot be set")
    stamped = now or datetime.now(UTC)
    data = dict(fields)
    data.update(
        id=record_id,
        created_at=stamped,
        updated_at=stamped,
        last_updated_by=actor_id(actor),
        origin_device=origin_device,
        revision=1,
        synced=False,
    )
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        raise translate_validation_error(exc) from exc


def apply_change(
    record: R,
    field: str,
    new_value: Any,
    actor: Actor | str,
    reason: str | None = None,
    *,
    now: datetime | None = None,
    history_limit: int | None = DEFAULT_HISTORY_LIMIT,
) -> R:
    _check_field(record, field)
    return _apply(record, {field: new_value}, actor, reason, now, history_limit)


def apply_changes(
    record: R,
    patch: Mapping[str, Any],
    actor: Actor | str,
    reason: str | None = None,
    *,
    now: datetime | None = None,
    history_limit: int | None = DEFAULT_HISTORY_LIMIT,
) -> R:
    """Apply several field changes as one touch; validation failures leave nothing applied."""
    for field in patch:
        _check_field(record, field)
    return _apply(record, patch, actor, reason, now, history_limit)


def mark_deleted(
    record: R,
    actor: Actor | str,
    reason: str | None = "Record deleted",
    *,
    now: datetime | None = None,
    history_limit: int | None = DEFAULT_HISTORY_LIMIT,
) -> R:
    """Turn a record into a tombstone; it stays in its collection until the peer has seen it."""
    stamped = _stamp_time(record, now)
    return _apply(
        record,
        {"deleted": True},
        actor,
        reason,
        stamped,
        history_limit,
        extra={"deleted_at": record.deleted_at or stamped},
    )


def rekey_record(
    record: R,
    new_id: str,
    actor: Actor | str,
    reason: str | None = "Identifier renumbered",
    *,
    now: datetime | None = None,
    history_limit: int | None = DEFAULT_HISTORY_LIMIT,
) -> R:
    return _apply(record, {"id": new_id}, actor, reason, now, history_limit)


def mark_synced(record: R, *, now: datetime | None = None) -> R:
    return record.model_copy(
        update={
            "synced": True,
            "synced_at": now or datetime.now(UTC),
            "server_updated_at": record.updated_at,
        }
    )


def record_remote_overwrite(
    local: R,
    remote: R,
    *,
    now: datetime | None = None,
    history_limit: int | None = DEFAULT_HISTORY_LIMIT,
) -> R:
    """Adopt a newer remote version.

    History is merged, never shortened: the local entries, then remote entries
    not seen locally, then one entry per field the remote version changed.
    """
    stamped = now or datetime.now(UTC)
    history = list(local.change_history)
    known = {entry.id for entry in history}
    history.extend(entry for entry in remote.change_history if entry.id not in known)
    old = domain_fields(local)
    new = domain_fields(remote)
    old["deleted"], new["deleted"] = local.deleted, remote.deleted
    differing = [name for name in new if old.get(name) != new[name]]
    reason = "Overwritten by newer remote version"
    for name in differing:
        history.append(_entry(name, old.get(name), new[name], REMOTE_SYNC_ACTOR, stamped, reason))
    if not differing:
        history.append(
            _entry("updated_at", local.updated_at, remote.updated_at, REMOTE_SYNC_ACTOR, stamped, reason)
        )
    return remote.model_copy(
        update={
            "change_history": _retain(history, history_limit),
            "synced": True,
            "synced_at": stamped,
            "server_updated_at": remote.updated_at,
        }
    )
