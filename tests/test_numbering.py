import pytest

from fibertrace.models.enums import Collection, NodeType
from fibertrace.services import numbering
from fibertrace.services.errors import ValidationError


def test_next_id_starts_at_one_without_matches():
    assert numbering.next_id("job", []) == "JOB-001"
    assert numbering.next_id("job", ["RT-004", "notes"]) == "JOB-001"


def test_next_id_follows_highest_visible_suffix():
    assert numbering.next_id("job", ["JOB-001", "JOB-007", "JOB-003"]) == "JOB-008"


def test_next_id_grows_past_padding():
    assert numbering.next_id("route", ["RT-999"]) == "RT-1000"


@pytest.mark.parametrize(
    "existing",
    [
        ["JOB-001"],
        ["JOB-002", "JOB-010", "JOB-011"],
        ["JOB-5", "JOB-005", "JOB-0006"],
        ["CLO-001", "JOB-042"],
    ],
)
def test_next_id_is_absent_from_existing(existing):
    assert numbering.next_id("job", existing) not in existing


def test_node_codes_are_allocated_per_node_type():
    domain = numbering.domain_type_for(Collection.nodes, NodeType.fat)
    assert domain == "node.fat"
    assert numbering.next_id(domain, ["FAT-002", "OLT-009"]) == "FAT-003"
    assert numbering.next_id(numbering.domain_type_for(Collection.nodes, "OLT"), ["FAT-002"]) == "OLT-001"


def test_node_codes_need_a_known_type():
    with pytest.raises(ValidationError):
        numbering.domain_type_for(Collection.nodes, None)
    with pytest.raises(ValidationError):
        numbering.domain_type_for(Collection.nodes, "Amplifier")


def test_unknown_domain_type_is_rejected():
    with pytest.raises(ValidationError):
        numbering.next_id("ticket", [])


def test_renumber_keeps_prefix_and_width():
    assert numbering.renumber("JOB-001", ["JOB-001", "JOB-002"]) == "JOB-003"
    assert numbering.renumber("FAT-010", ["FAT-010"]) == "FAT-011"


def test_renumber_handles_ids_without_suffix():
    assert numbering.renumber("temp", ["temp", "temp-1"]) == "temp-2"
