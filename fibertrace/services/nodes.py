"""Network node rules: condition changes, power status and aggregate stats."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

from fibertrace.models.enums import Collection, NodeCondition, NodeType, PowerStatus
from fibertrace.schemas.records import Actor, Node
from fibertrace.services import change_tracking, numbering
from fibertrace.services.errors import ValidationError

# dBm thresholds for input power at the node.
POWER_NORMAL_MIN = -15.0
POWER_WARNING_MIN = -25.0

_IMMUTABLE_FIELDS = {"node_type"}


def _coerce_condition(value: NodeCondition | str) -> NodeCondition:
    if isinstance(value, NodeCondition):
        return value
    try:
        return NodeCondition(value)
    except ValueError as exc:
        allowed = ", ".join(condition.value for condition in NodeCondition)
        raise ValidationError("condition", f"{value!r} is not one of {allowed}") from exc


def id_domain(fields: Mapping[str, Any]) -> str:
    return numbering.domain_type_for(Collection.nodes, fields.get("node_type"))


def create(
    fields: Mapping[str, Any],
    *,
    record_id: str,
    actor: Actor | str,
    now: datetime | None = None,
    origin_device: str | None = None,
) -> Node:
    data = dict(fields)
    if "condition" in data:
        data["condition"] = _coerce_condition(data["condition"])
    return change_tracking.new_record(
        Node, data, record_id=record_id, actor=actor, now=now, origin_device=origin_device
    )


def update(
    node: Node,
    patch: Mapping[str, Any],
    *,
    actor: Actor | str,
    now: datetime | None = None,
    history_limit: int | None = change_tracking.DEFAULT_HISTORY_LIMIT,
    reason: str | None = None,
) -> Node:
    patch = dict(patch)
    for field in _IMMUTABLE_FIELDS & set(patch):
        if patch[field] != node.node_type and patch[field] != node.node_type.value:
            raise ValidationError(field, "cannot change once the node code is allocated")
        patch.pop(field)
    if "condition" in patch:
        patch["condition"] = _coerce_condition(patch["condition"])
    return change_tracking.apply_changes(node, patch, actor, reason, now=now, history_limit=history_limit)


def set_condition(
    node: Node,
    condition: NodeCondition | str,
    actor: Actor | str,
    reason: str | None = None,
    *,
    now: datetime | None = None,
    history_limit: int | None = change_tracking.DEFAULT_HISTORY_LIMIT,
) -> Node:
    return change_tracking.apply_change(
        node,
        "condition",
        _coerce_condition(condition),
        actor,
        reason or "Condition updated",
        now=now,
        history_limit=history_limit,
    )


def power_status(node: Node) -> PowerStatus:
    if node.power_rating is None:
        return PowerStatus.unknown
    if node.power_rating >= POWER_NORMAL_MIN:
        return PowerStatus.normal
    if node.power_rating >= POWER_WARNING_MIN:
        return PowerStatus.warning
    return PowerStatus.critical


def nodes_needing_attention(nodes: Iterable[Node]) -> list[Node]:
    return [
        node
        for node in nodes
        if not node.deleted
        and (
            node.condition in (NodeCondition.degraded, NodeCondition.faulty)
            or power_status(node) == PowerStatus.critical
        )
    ]


def get_node_stats(nodes: Iterable[Node]) -> dict[str, Any]:
    by_type = {node_type.value: 0 for node_type in NodeType}
    by_condition = {condition.value: 0 for condition in NodeCondition}
    total = 0
    unsynced = 0
    for node in nodes:
        if node.deleted:
            continue
        total += 1
        by_type[node.node_type.value] += 1
        by_condition[node.condition.value] += 1
        if not node.synced:
            unsynced += 1
    return {"total": total, "by_type": by_type, "by_condition": by_condition, "unsynced": unsynced}
