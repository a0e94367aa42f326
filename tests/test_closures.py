import pytest

from fibertrace.models.enums import SpliceQuality
from fibertrace.services import closures, splice_maps
from fibertrace.services.errors import ValidationError


def _closure(clock, actor, record_id="CLO-001", **fields):
    data = {"name": "Dome Riverside", "node_id": "FAT-001", "capacity": 2}
    data.update(fields)
    return closures.create(data, record_id=record_id, actor=actor, now=clock.now())


@pytest.mark.parametrize(
    ("loss", "quality"),
    [
        (0.0, SpliceQuality.good),
        (0.05, SpliceQuality.good),
        (0.10, SpliceQuality.high_loss),
        (0.15, SpliceQuality.high_loss),
        (0.20, SpliceQuality.high_loss),
        (0.25, SpliceQuality.fault),
    ],
)
def test_classify_splice_loss(loss, quality):
    assert closures.classify_splice_loss(loss) == quality


def test_negative_loss_is_rejected():
    with pytest.raises(ValidationError):
        closures.classify_splice_loss(-0.01)


def test_add_splice_respects_capacity(clock, actor):
    closure = _closure(clock, actor)
    closure = closures.add_splice(closure, 1, 1, 0.05, actor, now=clock.now())
    closure = closures.add_splice(closure, 2, 2, 0.15, actor, tray=1, now=clock.now())

    assert [splice.recorded_by for splice in closure.splices] == ["tech-ana", "tech-ana"]
    assert closure.change_history[-1].reason == "Splice recorded"
    with pytest.raises(ValidationError) as exc:
        closures.add_splice(closure, 3, 3, 0.05, actor, now=clock.now())
    assert exc.value.field == "splices"


def test_add_splice_rejects_bad_fiber_number(clock, actor):
    with pytest.raises(ValidationError) as exc:
        closures.add_splice(_closure(clock, actor), 0, 1, 0.05, actor, now=clock.now())
    assert exc.value.field == "fiber_a"


def test_remove_splice(clock, actor):
    closure = closures.add_splice(_closure(clock, actor), 1, 1, 0.05, actor, now=clock.now())

    emptied = closures.remove_splice(closure, closure.splices[0].id, actor, now=clock.now())

    assert emptied.splices == []
    with pytest.raises(ValidationError):
        closures.remove_splice(emptied, "spl-missing", actor)


def test_closure_stats(clock, actor):
    clean = closures.add_splice(_closure(clock, actor, "CLO-001"), 1, 1, 0.05, actor, now=clock.now())
    lossy = closures.add_splice(_closure(clock, actor, "CLO-002"), 1, 1, 0.25, actor, now=clock.now())
    empty = _closure(clock, actor, "CLO-003")

    stats = closures.get_closure_stats([clean, lossy, empty])

    assert stats["total"] == 3
    assert stats["total_splices"] == 2
    assert stats["average_loss"] == pytest.approx(0.15)
    assert stats["high_loss_closures"] == 1
    assert closures.splice_quality_counts(lossy) == {"Good": 0, "High-Loss": 0, "Fault": 1}


def _splice_map(clock, actor, **fields):
    data = {"name": "CLO-001 tray 1", "closure_id": "CLO-001", "cable_a": "RT-001", "cable_b": "RT-002", "fiber_count": 4}
    data.update(fields)
    return splice_maps.create(data, record_id="SM-001", actor=actor, now=clock.now())


def test_splice_map_classifies_mappings(clock, actor):
    splice_map = _splice_map(clock, actor, mappings=[{"fiber_a": 1, "fiber_b": 1, "loss": "0.15"}])

    assert splice_map.mappings[0].quality == SpliceQuality.high_loss
    assert splice_map.mappings[0].loss == 0.15


def test_splice_map_rejects_missing_or_bad_loss(clock, actor):
    with pytest.raises(ValidationError) as exc:
        _splice_map(clock, actor, mappings=[{"fiber_a": 1, "fiber_b": 1}])
    assert exc.value.field == "mappings.loss"
    with pytest.raises(ValidationError):
        _splice_map(clock, actor, mappings=[{"fiber_a": 1, "fiber_b": 1, "loss": "high"}])


def test_map_fiber_refuses_duplicates_and_out_of_range(clock, actor):
    splice_map = splice_maps.map_fiber(_splice_map(clock, actor), 1, 2, 0.05, actor, now=clock.now())

    with pytest.raises(ValidationError):
        splice_maps.map_fiber(splice_map, 1, 3, 0.05, actor)
    with pytest.raises(ValidationError):
        splice_maps.map_fiber(splice_map, 3, 2, 0.05, actor)
    with pytest.raises(ValidationError):
        splice_maps.map_fiber(splice_map, 5, 4, 0.05, actor)


def test_unmap_and_summarize(clock, actor):
    splice_map = _splice_map(
        clock,
        actor,
        mappings=[
            {"fiber_a": 1, "fiber_b": 1, "loss": 0.05},
            {"fiber_a": 2, "fiber_b": 2, "loss": 0.3},
        ],
    )

    summary = splice_maps.summarize(splice_map)
    assert summary["mapped"] == 2
    assert summary["unmapped"] == 2
    assert summary["by_quality"]["Fault"] == 1
    assert summary["worst_loss"] == 0.3

    trimmed = splice_maps.unmap_fiber(splice_map, 2, actor, now=clock.now())
    assert [mapping.fiber_a for mapping in trimmed.mappings] == [1]
    with pytest.raises(ValidationError):
        splice_maps.unmap_fiber(trimmed, 2, actor)
