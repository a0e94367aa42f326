"""Splice closures: splice loss classification and closure statistics."""

from __future__ import annotations

import uuid
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from fibertrace.models.enums import SpliceQuality
from fibertrace.schemas.records import Actor, Closure, Splice
from fibertrace.services import change_tracking
from fibertrace.services.errors import ValidationError

# Splice loss thresholds, dB.
GOOD_LOSS_MAX = 0.10
HIGH_LOSS_MAX = 0.20
HIGH_LOSS_THRESHOLD = GOOD_LOSS_MAX


def classify_splice_loss(loss: float) -> SpliceQuality:
    if loss < 0:
        raise ValidationError("loss", "must not be negative")
    if loss < GOOD_LOSS_MAX:
        return SpliceQuality.good
    if loss <= HIGH_LOSS_MAX:
        return SpliceQuality.high_loss
    return SpliceQuality.fault


def id_domain(fields: Mapping[str, Any]) -> str:
    return "closure"


def _check_capacity(splices: list, capacity: int) -> None:
    if len(splices) > capacity:
        raise ValidationError("splices", f"closure holds at most {capacity} splices")


def create(
    fields: Mapping[str, Any],
    *,
    record_id: str,
    actor: Actor | str,
    now: datetime | None = None,
    origin_device: str | None = None,
) -> Closure:
    closure = change_tracking.new_record(
        Closure, fields, record_id=record_id, actor=actor, now=now, origin_device=origin_device
    )
    _check_capacity(closure.splices, closure.capacity)
    return closure


def update(
    closure: Closure,
    patch: Mapping[str, Any],
    *,
    actor: Actor | str,
    now: datetime | None = None,
    history_limit: int | None = change_tracking.DEFAULT_HISTORY_LIMIT,
    reason: str | None = None,
) -> Closure:
    updated = change_tracking.apply_changes(
        closure, patch, actor, reason, now=now, history_limit=history_limit
    )
    _check_capacity(updated.splices, updated.capacity)
    return updated


def add_splice(
    closure: Closure,
    fiber_a: int,
    fiber_b: int,
    loss: float,
    actor: Actor | str,
    tray: int | None = None,
    *,
    now: datetime | None = None,
    history_limit: int | None = change_tracking.DEFAULT_HISTORY_LIMIT,
) -> Closure:
    classify_splice_loss(loss)
    if len(closure.splices) >= closure.capacity:
        raise ValidationError("splices", f"closure {closure.id} is full ({closure.capacity} splices)")
    try:
        splice = Splice(
            id=f"spl-{uuid.uuid4().hex[:8]}",
            fiber_a=fiber_a,
            fiber_b=fiber_b,
            loss=loss,
            tray=tray,
            recorded_by=change_tracking.actor_id(actor),
            recorded_at=now,
        )
    except PydanticValidationError as exc:
        raise change_tracking.translate_validation_error(exc) from exc
    return change_tracking.apply_change(
        closure,
        "splices",
        [*closure.splices, splice],
        actor,
        "Splice recorded",
        now=now,
        history_limit=history_limit,
    )


def remove_splice(
    closure: Closure,
    splice_id: str,
    actor: Actor | str,
    *,
    now: datetime | None = None,
    history_limit: int | None = change_tracking.DEFAULT_HISTORY_LIMIT,
) -> Closure:
    remaining = [splice for splice in closure.splices if splice.id != splice_id]
    if len(remaining) == len(closure.splices):
        raise ValidationError("splice_id", f"splice {splice_id} is not in closure {closure.id}")
    return change_tracking.apply_change(
        closure, "splices", remaining, actor, "Splice removed", now=now, history_limit=history_limit
    )


def average_loss(closure: Closure) -> float | None:
    if not closure.splices:
        return None
    return sum(splice.loss for splice in closure.splices) / len(closure.splices)


def splice_quality_counts(closure: Closure) -> dict[str, int]:
    counts = {quality.value: 0 for quality in SpliceQuality}
    for splice in closure.splices:
        counts[classify_splice_loss(splice.loss).value] += 1
    return counts


def get_closure_stats(closures: Iterable[Closure], high_loss_threshold: float = HIGH_LOSS_THRESHOLD) -> dict[str, Any]:
    active = [closure for closure in closures if not closure.deleted]
    losses = [splice.loss for closure in active for splice in closure.splices]
    high_loss = 0
    for closure in active:
        closure_average = average_loss(closure)
        if closure_average is not None and closure_average > high_loss_threshold:
            high_loss += 1
    return {
        "total": len(active),
        "total_splices": len(losses),
        "average_loss": (sum(losses) / len(losses)) if losses else None,
        "high_loss_closures": high_loss,
        "unsynced": sum(1 for closure in active if not closure.synced),
    }
