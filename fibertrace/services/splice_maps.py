"""Fiber-to-fiber mappings between two cable ends."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from fibertrace.models.enums import SpliceQuality
from fibertrace.schemas.records import Actor, FiberMapping, SpliceMap
from fibertrace.services import change_tracking
from fibertrace.services.closures import classify_splice_loss
from fibertrace.services.errors import ValidationError


def id_domain(fields: Mapping[str, Any]) -> str:
    return "splice_map"


def _classified(mappings: Iterable[FiberMapping | Mapping[str, Any]]) -> list[FiberMapping]:
    result = []
    for mapping in mappings:
        data = mapping.model_dump() if isinstance(mapping, FiberMapping) else dict(mapping)
        if data.get("loss") is None:
            raise ValidationError("mappings.loss", "every mapping needs a loss reading")
        try:
            loss = float(data["loss"])
        except (TypeError, ValueError) as exc:
            raise ValidationError("mappings.loss", "loss must be numeric") from exc
        data["quality"] = classify_splice_loss(loss)
        try:
            result.append(FiberMapping.model_validate(data))
        except PydanticValidationError as exc:
            raise change_tracking.translate_validation_error(exc) from exc
    return result


def _check_mappings(mappings: list[FiberMapping], fiber_count: int) -> None:
    seen_a: set[int] = set()
    seen_b: set[int] = set()
    for mapping in mappings:
        if mapping.fiber_a > fiber_count or mapping.fiber_b > fiber_count:
            raise ValidationError("mappings", f"fiber numbers must be between 1 and {fiber_count}")
        if mapping.fiber_a in seen_a:
            raise ValidationError("mappings", f"fiber {mapping.fiber_a} on cable A is already mapped")
        if mapping.fiber_b in seen_b:
            raise ValidationError("mappings", f"fiber {mapping.fiber_b} on cable B is already mapped")
        seen_a.add(mapping.fiber_a)
        seen_b.add(mapping.fiber_b)


def create(
    fields: Mapping[str, Any],
    *,
    record_id: str,
    actor: Actor | str,
    now: datetime | None = None,
    origin_device: str | None = None,
) -> SpliceMap:
    data = dict(fields)
    data["mappings"] = _classified(data.get("mappings", []))
    splice_map = change_tracking.new_record(
        SpliceMap, data, record_id=record_id, actor=actor, now=now, origin_device=origin_device
    )
    _check_mappings(splice_map.mappings, splice_map.fiber_count)
    return splice_map


def update(
    splice_map: SpliceMap,
    patch: Mapping[str, Any],
    *,
    actor: Actor | str,
    now: datetime | None = None,
    history_limit: int | None = change_tracking.DEFAULT_HISTORY_LIMIT,
    reason: str | None = None,
) -> SpliceMap:
    patch = dict(patch)
    if "mappings" in patch:
        patch["mappings"] = _classified(patch["mappings"])
    updated = change_tracking.apply_changes(
        splice_map, patch, actor, reason, now=now, history_limit=history_limit
    )
    _check_mappings(updated.mappings, updated.fiber_count)
    return updated


def map_fiber(
    splice_map: SpliceMap,
    fiber_a: int,
    fiber_b: int,
    loss: float,
    actor: Actor | str,
    *,
    now: datetime | None = None,
    history_limit: int | None = change_tracking.DEFAULT_HISTORY_LIMIT,
) -> SpliceMap:
    quality = classify_splice_loss(loss)
    try:
        mapping = FiberMapping(fiber_a=fiber_a, fiber_b=fiber_b, loss=loss, quality=quality)
    except PydanticValidationError as exc:
        raise change_tracking.translate_validation_error(exc) from exc
    mappings = [*splice_map.mappings, mapping]
    _check_mappings(mappings, splice_map.fiber_count)
    return change_tracking.apply_change(
        splice_map, "mappings", mappings, actor, "Fiber mapped", now=now, history_limit=history_limit
    )


def unmap_fiber(
    splice_map: SpliceMap,
    fiber_a: int,
    actor: Actor | str,
    *,
    now: datetime | None = None,
    history_limit: int | None = change_tracking.DEFAULT_HISTORY_LIMIT,
) -> SpliceMap:
    remaining = [mapping for mapping in splice_map.mappings if mapping.fiber_a != fiber_a]
    if len(remaining) == len(splice_map.mappings):
        raise ValidationError("fiber_a", f"fiber {fiber_a} is not mapped")
    return change_tracking.apply_change(
        splice_map, "mappings", remaining, actor, "Fiber unmapped", now=now, history_limit=history_limit
    )


def summarize(splice_map: SpliceMap) -> dict[str, Any]:
    counts = {quality.value: 0 for quality in SpliceQuality}
    for mapping in splice_map.mappings:
        counts[mapping.quality.value] += 1
    losses = [mapping.loss for mapping in splice_map.mappings]
    return {
        "mapped": len(splice_map.mappings),
        "unmapped": max(splice_map.fiber_count - len(splice_map.mappings), 0),
        "by_quality": counts,
        "average_loss": (sum(losses) / len(losses)) if losses else None,
        "worst_loss": max(losses) if losses else None,
    }
