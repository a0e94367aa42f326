import pytest

from fibertrace.models.enums import NodeCondition, NodeType
from fibertrace.schemas.records import Node
from fibertrace.services import change_tracking
from fibertrace.services.errors import ValidationError


def _node(clock, actor, **fields):
    data = {"name": "FAT Riverside", "node_type": NodeType.fat, "latitude": 6.45, "longitude": 3.39}
    data.update(fields)
    return change_tracking.new_record(
        Node, data, record_id="FAT-001", actor=actor, now=clock.now(), origin_device="device-a"
    )


def test_new_record_starts_unsynced_with_first_revision(clock, actor):
    node = _node(clock, actor)

    assert node.revision == 1
    assert node.synced is False
    assert node.created_at == node.updated_at == clock.now()
    assert node.last_updated_by == "tech-ana"
    assert node.origin_device == "device-a"
    assert node.change_history == []


def test_new_record_rejects_metadata_fields(clock, actor):
    with pytest.raises(ValidationError) as exc:
        _node(clock, actor, synced=True)
    assert exc.value.field == "synced"


def test_apply_change_records_history_for_real_changes(clock, actor):
    node = _node(clock, actor)
    clock.advance(60)

    updated = change_tracking.apply_change(
        node, "condition", NodeCondition.degraded, actor, "Water ingress", now=clock.now()
    )

    assert updated.condition == NodeCondition.degraded
    assert updated.updated_at == clock.now()
    assert updated.revision == 2
    assert updated.synced is False
    entry = updated.change_history[-1]
    assert entry.field == "condition"
    assert entry.old_value == "new"
    assert entry.new_value == "degraded"
    assert entry.changed_by == "tech-ana"
    assert entry.reason == "Water ingress"
    # Pure transform: the input is untouched.
    assert node.condition == NodeCondition.new
    assert node.change_history == []


def test_apply_change_with_same_value_still_touches(clock, actor):
    node = change_tracking.mark_synced(_node(clock, actor), now=clock.now())
    clock.advance(30)

    touched = change_tracking.apply_change(node, "name", node.name, "tech-ben", now=clock.now())

    assert touched.change_history == []
    assert touched.updated_at == clock.now()
    assert touched.last_updated_by == "tech-ben"
    assert touched.synced is False
    assert touched.revision == node.revision + 1


def test_apply_change_rejects_metadata_and_unknown_fields(clock, actor):
    node = _node(clock, actor)

    with pytest.raises(ValidationError):
        change_tracking.apply_change(node, "updated_at", clock.now(), actor)
    with pytest.raises(ValidationError) as exc:
        change_tracking.apply_change(node, "colour", "blue", actor)
    assert exc.value.field == "colour"


def test_invalid_value_fails_without_partial_change(clock, actor):
    node = _node(clock, actor)

    with pytest.raises(ValidationError) as exc:
        change_tracking.apply_changes(node, {"name": "Renamed", "latitude": 123.0}, actor, now=clock.now())

    assert exc.value.field == "latitude"
    assert node.name == "FAT Riverside"


def test_updated_at_never_moves_backwards(clock, actor):
    node = _node(clock, actor)
    earlier = clock.now()
    clock.advance(-3600)

    updated = change_tracking.apply_change(node, "notes", "clock skew", actor, now=clock.now())

    assert updated.updated_at == earlier


def test_history_grows_monotonically_until_retention(clock, actor):
    node = _node(clock, actor)
    lengths = []
    stamps = []
    for index in range(6):
        clock.advance(1)
        node = change_tracking.apply_change(
            node, "notes", f"reading {index}", actor, now=clock.now(), history_limit=4
        )
        lengths.append(len(node.change_history))
        stamps.append(node.updated_at)

    assert lengths == sorted(lengths)
    assert stamps == sorted(stamps)
    assert len(node.change_history) == 4
    assert node.change_history[-1].new_value == "reading 5"
    assert node.change_history[0].new_value == "reading 2"


def test_mark_deleted_makes_a_tombstone(clock, actor):
    node = _node(clock, actor)
    clock.advance(10)

    tombstone = change_tracking.mark_deleted(node, actor, now=clock.now())

    assert tombstone.deleted is True
    assert tombstone.deleted_at == clock.now()
    assert tombstone.synced is False
    assert tombstone.change_history[-1].field == "deleted"


def test_mark_synced_remembers_confirmed_version(clock, actor):
    node = _node(clock, actor)

    synced = change_tracking.mark_synced(node, now=clock.now())

    assert synced.synced is True
    assert synced.server_updated_at == node.updated_at
    assert synced.revision == node.revision


def test_remote_overwrite_is_attributed_to_remote_sync(clock, actor):
    local = _node(clock, actor)
    clock.advance(120)
    remote = change_tracking.apply_change(local, "condition", NodeCondition.faulty, "tech-ben", now=clock.now())

    merged = change_tracking.record_remote_overwrite(local, remote, now=clock.now())

    assert merged.condition == NodeCondition.faulty
    assert merged.synced is True
    entry = merged.change_history[-1]
    assert entry.changed_by == change_tracking.REMOTE_SYNC_ACTOR
    assert entry.field == "condition"
    assert entry.old_value == "new"


def test_record_identity_distinguishes_devices(clock, actor):
    first = _node(clock, actor)
    second = change_tracking.new_record(
        Node,
        {"name": "FAT Hill", "node_type": NodeType.fat, "latitude": 1, "longitude": 1},
        record_id="FAT-001",
        actor=actor,
        now=clock.now(),
        origin_device="device-b",
    )

    assert change_tracking.record_identity(first) != change_tracking.record_identity(second)
