"""Human-readable identifiers allocated from visible records, without a central sequence.

Two offline devices may hand out the same identifier; the sync engine and the
server of record renumber such collisions when they meet.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass

from fibertrace.models.enums import Collection, NodeType
from fibertrace.schemas.records import SyncableRecord
from fibertrace.services.errors import ValidationError


@dataclass(frozen=True)
class IdScheme:
    prefix: str
    padding: int = 3
    start: int = 1

    @property
    def pattern(self) -> re.Pattern:
        return re.compile(rf"^{re.escape(self.prefix)}(\d+)$")


ID_SCHEMES: dict[str, IdScheme] = {
    "job": IdScheme("JOB-"),
    "route": IdScheme("RT-"),
    "closure": IdScheme("CLO-"),
    "splice_map": IdScheme("SM-"),
    "inventory_item": IdScheme("INV-"),
    "node.olt": IdScheme("OLT-"),
    "node.splitter": IdScheme("SPL-"),
    "node.fat": IdScheme("FAT-"),
    "node.atb": IdScheme("ATB-"),
    "node.closure": IdScheme("CLS-"),
}

_COLLECTION_DOMAINS: dict[Collection, str] = {
    Collection.jobs: "job",
    Collection.routes: "route",
    Collection.closures: "closure",
    Collection.splice_maps: "splice_map",
    Collection.inventory: "inventory_item",
}

_TRAILING_NUMBER = re.compile(r"^(?P<prefix>.*?)(?P<number>\d+)$")


def _format_number(prefix: str | None, padding: int | None, value: int) -> str:
    prefix_value = prefix or ""
    pad = max(int(padding or 0), 0)
    if pad > 0:
        return f"{prefix_value}{value:0{pad}d}"
    return f"{prefix_value}{value}"


def _ids(existing: Iterable[SyncableRecord | str]) -> list[str]:
    return [item if isinstance(item, str) else item.id for item in existing]


def domain_type_for(collection: Collection, node_type: NodeType | str | None = None) -> str:
    if collection == Collection.nodes:
        if node_type is None:
            raise ValidationError("node_type", "is required to allocate a node code")
        try:
            resolved = node_type if isinstance(node_type, NodeType) else NodeType(node_type)
        except ValueError as exc:
            raise ValidationError("node_type", f"unknown node type {node_type!r}") from exc
        return f"node.{resolved.name}"
    return _COLLECTION_DOMAINS[collection]


def scheme_for(domain_type: str) -> IdScheme:
    scheme = ID_SCHEMES.get(domain_type)
    if scheme is None:
        raise ValidationError("domain_type", f"no identifier scheme for {domain_type!r}")
    return scheme


def highest_number(scheme: IdScheme, ids: Iterable[str]) -> int | None:
    highest: int | None = None
    for record_id in ids:
        match = scheme.pattern.match(record_id)
        if match:
            value = int(match.group(1))
            if highest is None or value > highest:
                highest = value
    return highest


def next_id(domain_type: str, existing_records: Iterable[SyncableRecord | str]) -> str:
    """Return prefix + (highest visible suffix + 1), or the scheme's start value.

    Tombstones must be part of `existing_records` so identifiers are never reused.
    """
    scheme = scheme_for(domain_type)
    highest = highest_number(scheme, _ids(existing_records))
    value = scheme.start if highest is None else max(highest + 1, scheme.start)
    return _format_number(scheme.prefix, scheme.padding, value)


def renumber(record_id: str, taken: Iterable[SyncableRecord | str]) -> str:
    """Allocate a replacement for a colliding identifier, keeping its prefix and width."""
    taken_ids = set(_ids(taken))
    match = _TRAILING_NUMBER.match(record_id)
    if match:
        prefix, digits = match.group("prefix"), match.group("number")
        scheme = IdScheme(prefix, padding=len(digits))
    else:
        scheme = IdScheme(f"{record_id}-", padding=0)
    highest = highest_number(scheme, taken_ids | {record_id})
    value = (highest or 0) + 1
    candidate = _format_number(scheme.prefix, scheme.padding, value)
    while candidate in taken_ids:
        value += 1
        candidate = _format_number(scheme.prefix, scheme.padding, value)
    return candidate
