"""Fiber route rules: segment distances, cable inventory and material projections."""

from __future__ import annotations

import math
import uuid
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

from fibertrace.schemas.records import Actor, Route, RouteInventory, Segment
from fibertrace.services import change_tracking
from fibertrace.services.errors import ValidationError

SEGMENTS_PER_CLOSURE = 5
TERMINATION_CONNECTORS = 4


def id_domain(fields: Mapping[str, Any]) -> str:
    return "route"


def total_distance(segments: Iterable[Segment | Mapping[str, Any]]) -> float:
    total = 0.0
    for segment in segments:
        if isinstance(segment, Segment):
            total += segment.distance
            continue
        try:
            total += float(segment["distance"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError("segments.distance", "every segment needs a numeric distance") from exc
    return total


def _with_segment_ids(segments: Iterable[Segment | Mapping[str, Any]]) -> list[Any]:
    prepared = []
    for segment in segments:
        if isinstance(segment, Mapping) and not segment.get("id"):
            segment = {**segment, "id": f"seg-{uuid.uuid4().hex[:8]}"}
        prepared.append(segment)
    return prepared


def _inventory_with_reserve(inventory: RouteInventory | Mapping[str, Any] | None, distance: float) -> dict:
    if inventory is None:
        data: dict[str, Any] = {}
    elif isinstance(inventory, RouteInventory):
        data = inventory.model_dump()
    else:
        data = dict(inventory)
    data["reserve"] = float(data.get("total_length", 0)) - distance
    return data


def create(
    fields: Mapping[str, Any],
    *,
    record_id: str,
    actor: Actor | str,
    now: datetime | None = None,
    origin_device: str | None = None,
) -> Route:
    data = dict(fields)
    if "total_distance" in data:
        raise ValidationError("total_distance", "is derived from segment distances")
    data["segments"] = _with_segment_ids(data.get("segments", []))
    route = change_tracking.new_record(
        Route, data, record_id=record_id, actor=actor, now=now, origin_device=origin_device
    )
    distance = total_distance(route.segments)
    inventory = RouteInventory.model_validate(_inventory_with_reserve(route.inventory, distance))
    return route.model_copy(update={"total_distance": distance, "inventory": inventory})


def update(
    route: Route,
    patch: Mapping[str, Any],
    *,
    actor: Actor | str,
    now: datetime | None = None,
    history_limit: int | None = change_tracking.DEFAULT_HISTORY_LIMIT,
    reason: str | None = None,
) -> Route:
    patch = dict(patch)
    if "total_distance" in patch:
        raise ValidationError("total_distance", "is derived from segment distances")
    if "segments" in patch or "inventory" in patch:
        if "segments" in patch:
            patch["segments"] = _with_segment_ids(patch["segments"])
        distance = total_distance(patch.get("segments", route.segments))
        patch["total_distance"] = distance
        patch["inventory"] = _inventory_with_reserve(patch.get("inventory", route.inventory), distance)
    return change_tracking.apply_changes(route, patch, actor, reason, now=now, history_limit=history_limit)


def add_segment(
    route: Route,
    distance: float,
    actor: Actor | str,
    name: str | None = None,
    fiber_count: int | None = None,
    *,
    now: datetime | None = None,
    history_limit: int | None = change_tracking.DEFAULT_HISTORY_LIMIT,
) -> Route:
    segment = {"name": name, "distance": distance, "fiber_count": fiber_count}
    segments = [item.model_dump() for item in route.segments] + [segment]
    return update(
        route,
        {"segments": segments},
        actor=actor,
        now=now,
        history_limit=history_limit,
        reason="Segment added",
    )


def get_cable_usage(route: Route) -> dict[str, Any]:
    return {
        "cable_type": route.inventory.cable_type,
        "cable_size": route.inventory.cable_size,
        "route_distance": route.total_distance,
        "reserve": route.inventory.reserve,
        "total_length": route.inventory.total_length,
        "shortfall": max(route.total_distance - route.inventory.total_length, 0.0),
    }


def update_cable_inventory(
    route: Route,
    cable_size: str,
    total_length: float,
    actor: Actor | str,
    *,
    now: datetime | None = None,
    history_limit: int | None = change_tracking.DEFAULT_HISTORY_LIMIT,
) -> Route:
    if total_length < 0:
        raise ValidationError("total_length", "must not be negative")
    inventory = route.inventory.model_copy(
        update={
            "cable_size": cable_size,
            "total_length": total_length,
            "reserve": total_length - route.total_distance,
        }
    )
    return change_tracking.apply_change(
        route,
        "inventory",
        inventory,
        actor,
        "Cable inventory updated",
        now=now,
        history_limit=history_limit,
    )


def closures_needed(route: Route) -> int:
    return math.ceil(len(route.segments) / SEGMENTS_PER_CLOSURE)


def get_materials_for_route(route: Route) -> dict[str, Any]:
    splices = route.inventory.splice_count
    return {
        "cable": {
            "type": route.inventory.cable_type,
            "size": route.inventory.cable_size,
            "length": route.inventory.total_length,
        },
        "splices": splices,
        "closures": closures_needed(route),
        "connectors": TERMINATION_CONNECTORS,
        "splice_protectors": splices + 2,
        "heat_shrink": (splices + 2) * 3,
        "reserve": route.inventory.reserve,
    }


def generate_inventory_report(routes: Iterable[Route]) -> dict[str, Any]:
    by_type: dict[str, float] = {}
    by_size: dict[str, float] = {}
    report = {"total_splices": 0, "total_closures": 0, "total_length": 0.0}
    for route in routes:
        if route.deleted:
            continue
        inventory = route.inventory
        by_type[inventory.cable_type] = by_type.get(inventory.cable_type, 0.0) + inventory.total_length
        by_size[inventory.cable_size] = by_size.get(inventory.cable_size, 0.0) + inventory.total_length
        report["total_splices"] += inventory.splice_count
        report["total_closures"] += closures_needed(route)
        report["total_length"] += inventory.total_length
    report["total_cable_by_type"] = by_type
    report["total_cable_by_size"] = by_size
    return report


def get_splice_info(route: Route) -> dict[str, Any]:
    locations = []
    running = 0.0
    for index, segment in enumerate(route.segments):
        running += segment.distance
        locations.append({"segment_index": index, "distance_from_start": running})
    return {
        "total_splices": route.inventory.splice_count,
        "splices_per_segment": [1 for _ in route.segments],
        "splice_locations": locations,
    }
