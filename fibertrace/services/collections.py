"""Per-domain CRUD facade over the record store.

Each `RecordCollection` pairs one collection of the store with the domain
module owning its rules. Domain modules stay pure; this layer allocates
identifiers, supplies the acting technician and the clock, and persists the
records the modules return.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from types import ModuleType
from typing import Any

from fibertrace.models.enums import Collection
from fibertrace.schemas.records import Actor, SyncableRecord
from fibertrace.services import closures, inventory, jobs, nodes, numbering, routes, splice_maps
from fibertrace.services.record_store import RecordStore

logger = logging.getLogger(__name__)

DOMAIN_MODULES: dict[Collection, ModuleType] = {
    Collection.jobs: jobs,
    Collection.nodes: nodes,
    Collection.routes: routes,
    Collection.closures: closures,
    Collection.splice_maps: splice_maps,
    Collection.inventory: inventory,
}


class RecordCollection:
    def __init__(
        self,
        store: RecordStore,
        collection: Collection,
        current_actor: Callable[[], Actor],
        device_id: str | None = None,
    ):
        self.store = store
        self.collection = collection
        self.module = DOMAIN_MODULES[collection]
        self.current_actor = current_actor
        self.device_id = device_id

    def list(self, include_deleted: bool = False) -> list[SyncableRecord]:
        if include_deleted:
            return self.store.load(self.collection)
        return self.store.list_active(self.collection)

    def get(self, record_id: str) -> SyncableRecord:
        return self.store.require(self.collection, record_id)

    def create(self, fields: Mapping[str, Any]) -> SyncableRecord:
        actor = self.current_actor()
        with self.store.lock(self.collection):
            # Tombstones count as taken so a deleted identifier is never handed out again.
            existing = self.store.load(self.collection)
            record_id = numbering.next_id(self.module.id_domain(fields), existing)
            record = self.module.create(
                fields,
                record_id=record_id,
                actor=actor,
                now=self.store.clock.now(),
                origin_device=self.device_id,
            )
            self.store.upsert(self.collection, record)
        logger.info("record_created collection=%s id=%s actor=%s", self.collection.value, record.id, actor.id)
        return record

    def update(self, record_id: str, patch: Mapping[str, Any], reason: str | None = None) -> SyncableRecord:
        actor = self.current_actor()
        with self.store.lock(self.collection):
            record = self.get(record_id)
            updated = self.module.update(
                record,
                patch,
                actor=actor,
                now=self.store.clock.now(),
                history_limit=self.store.history_limit,
                reason=reason,
            )
            self.store.upsert(self.collection, updated)
        return updated

    def modify(self, record_id: str, change: Callable[[SyncableRecord], SyncableRecord]) -> SyncableRecord:
        """Run a domain operation against the stored record and persist its result.

        `change` receives the current record and returns the new one, e.g.
        ``lambda job: jobs.hold_job(job, actor, now=...)``.
        """
        with self.store.lock(self.collection):
            record = self.get(record_id)
            updated = change(record)
            if updated.id != record.id:
                raise ValueError("domain operations must not change a record's id")
            self.store.upsert(self.collection, updated)
        return updated

    def delete(self, record_id: str, reason: str | None = "Record deleted") -> SyncableRecord:
        actor = self.current_actor()
        tombstone = self.store.delete(self.collection, record_id, actor, reason)
        logger.info("record_deleted collection=%s id=%s actor=%s", self.collection.value, record_id, actor.id)
        return tombstone
