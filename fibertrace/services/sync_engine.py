"""Push-then-pull reconciliation of local collections with the server of record.

One sync of a collection:

1. push every unsynced record (tombstones included) in chunks;
2. pull what the server received since the stored cursor;
3. under the store locks, re-read the local state, apply the accepted
   records (re-keying references to renumbered ids), merge the pulled ones
   by last-writer-wins, and write everything plus the new cursor in one
   atomic store write.

Any transport failure aborts before step 3, so nothing is half applied and
the unsynced records are simply pushed again next time. Pushes are keyed by
record id, which makes that replay harmless.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Mapping, Sequence
from datetime import datetime

from fibertrace.models.enums import Collection, SyncState
from fibertrace.schemas.records import COLLECTION_MODELS, SyncableRecord
from fibertrace.schemas.sync import (
    AcceptedRecord,
    PullResult,
    PushResult,
    SyncConflict,
    SyncMetadata,
    SyncResult,
    SyncStatus,
)
from fibertrace.services import change_tracking, numbering
from fibertrace.services.connectivity import ConnectivityMonitor
from fibertrace.services.errors import StorageError, TransportAuthError, TransportError
from fibertrace.services.metrics import SYNC_CONFLICTS, SYNC_DURATION, SYNC_FAILURES, SYNC_RECORDS, SYNC_RUNS
from fibertrace.services.record_store import RecordStore
from fibertrace.services.scheduling import Clock, ScheduledTask, Scheduler
from fibertrace.services.transport import RemoteTransport
from fibertrace.telemetry import get_tracer

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 200

# Fields in other collections that hold ids of the key collection.
REFERENCES: dict[Collection, list[tuple[Collection, str]]] = {
    Collection.nodes: [
        (Collection.jobs, "node_ids"),
        (Collection.routes, "start_node_id"),
        (Collection.routes, "end_node_id"),
        (Collection.closures, "node_id"),
    ],
    Collection.routes: [(Collection.jobs, "route_ids")],
    Collection.closures: [(Collection.splice_maps, "closure_id")],
}

# Referenced collections first, so renumbered ids reach their referrers before those are pushed.
SYNC_ORDER: list[Collection] = [
    Collection.nodes,
    Collection.routes,
    Collection.closures,
    Collection.splice_maps,
    Collection.inventory,
    Collection.jobs,
]


def _index_of(records: Sequence[SyncableRecord], record_id: str) -> int | None:
    for index, record in enumerate(records):
        if record.id == record_id:
            return index
    return None


class _Merge:
    """Working copy of the collections one sync may rewrite."""

    def __init__(self, store: RecordStore, collection: Collection, now: datetime):
        self.store = store
        self.collection = collection
        self.now = now
        self.model = COLLECTION_MODELS[collection]
        affected = {collection, *(ref for ref, _ in REFERENCES.get(collection, []))}
        self.snapshots: dict[Collection, list[SyncableRecord]] = {c: store.load(c) for c in affected}
        self.touched: set[Collection] = {collection}
        # Positions as loaded; accepted records are replaced in place, so these stay valid.
        self.positions = {record.id: index for index, record in enumerate(self.records)}

    @property
    def records(self) -> list[SyncableRecord]:
        return self.snapshots[self.collection]

    def rewrite_references(self, renames: Mapping[str, str]) -> None:
        """Point referrers at renumbered ids; all renames apply in one pass so chains cannot cascade."""
        if not renames:
            return
        reason = "Referenced identifier renumbered"
        for ref_collection, field in REFERENCES.get(self.collection, []):
            records = self.snapshots[ref_collection]
            for index, record in enumerate(records):
                value = getattr(record, field)
                if isinstance(value, list):
                    if not renames.keys() & set(value):
                        continue
                    new_value = [renames.get(item, item) for item in value]
                elif value in renames:
                    new_value = renames[value]
                else:
                    continue
                records[index] = change_tracking.apply_change(
                    record,
                    field,
                    new_value,
                    change_tracking.REMOTE_SYNC_ACTOR,
                    reason,
                    now=self.now,
                    history_limit=self.store.history_limit,
                )
                self.touched.add(ref_collection)
                logger.info(
                    "sync_reference_rekeyed collection=%s id=%s field=%s",
                    ref_collection.value,
                    record.id,
                    field,
                )


class SyncEngine:
    """Reconciles the local store with a remote transport, one collection at a time.

    At most one sync per collection runs at once; a trigger that arrives
    while that collection is syncing returns a skipped result instead of
    queueing.
    """

    def __init__(
        self,
        store: RecordStore,
        transport: RemoteTransport,
        connectivity: ConnectivityMonitor | None = None,
        clock: Clock | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.store = store
        self.transport = transport
        self.connectivity = connectivity
        self.clock = clock or store.clock
        self.batch_size = batch_size
        self._sync_locks = {collection: threading.Lock() for collection in Collection}
        self._states = {collection: SyncState.idle for collection in Collection}
        self._errors: dict[Collection, str | None] = {collection: None for collection in Collection}

    # ── status ──────────────────────────────────────────────────────────────

    def is_online(self) -> bool:
        return self.connectivity.is_online() if self.connectivity is not None else True

    def state(self, collection: Collection) -> SyncState:
        return self._states[collection]

    def get_sync_status(self, collection: Collection) -> SyncStatus:
        return SyncStatus(
            collection=collection,
            state=self._states[collection],
            last_sync_time=self.store.last_sync_time(collection),
            unsynced_count=self.store.unsynced_count(collection),
            is_online=self.is_online(),
            last_error=self._errors[collection],
        )

    def get_all_sync_status(self) -> dict[Collection, SyncStatus]:
        return {collection: self.get_sync_status(collection) for collection in Collection}

    # ── sync ────────────────────────────────────────────────────────────────

    def sync_now(self, collection: Collection) -> SyncResult:
        lock = self._sync_locks[collection]
        if not lock.acquire(blocking=False):
            logger.info("sync_skipped collection=%s reason=already_syncing", collection.value)
            SYNC_RUNS.labels(collection=collection.value, status="skipped").inc()
            return SyncResult(collection=collection, skipped=True)
        try:
            return self._run(collection)
        finally:
            lock.release()

    def _run(self, collection: Collection) -> SyncResult:
        started = self.clock.now()
        self._states[collection] = SyncState.syncing
        logger.info("sync_started collection=%s", collection.value)
        tracer = get_tracer()
        with tracer.start_as_current_span("fibertrace.sync.collection") as span:
            span.set_attribute("fibertrace.collection", collection.value)
            try:
                with SYNC_DURATION.labels(collection=collection.value).time():
                    result = self._sync(collection, started)
            except TransportError as exc:
                if isinstance(exc, TransportAuthError):
                    reason = "auth"
                elif not self.is_online():
                    reason = "offline"
                else:
                    reason = "transport"
                self._fail(collection, reason, exc)
                raise
            except StorageError as exc:
                self._fail(collection, "storage", exc)
                raise
            except Exception as exc:
                self._fail(collection, "unexpected", exc)
                raise
            span.set_attribute("fibertrace.pushed", len(result.pushed))
            span.set_attribute("fibertrace.pulled", len(result.pulled))
            span.set_attribute("fibertrace.conflicts", len(result.conflicts))
        self._states[collection] = SyncState.idle
        self._errors[collection] = None
        SYNC_RUNS.labels(collection=collection.value, status="success").inc()
        logger.info(
            "sync_finished collection=%s pushed=%s pulled=%s conflicts=%s rejected=%s renumbered=%s",
            collection.value,
            len(result.pushed),
            len(result.pulled),
            len(result.conflicts),
            len(result.rejected),
            len(result.renumbered),
        )
        return result

    def _fail(self, collection: Collection, reason: str, exc: Exception) -> None:
        self._states[collection] = SyncState.error
        self._errors[collection] = str(exc)
        SYNC_RUNS.labels(collection=collection.value, status="error").inc()
        SYNC_FAILURES.labels(collection=collection.value, reason=reason).inc()
        logger.warning("sync_failed collection=%s reason=%s error=%s", collection.value, reason, exc)

    def _sync(self, collection: Collection, started: datetime) -> SyncResult:
        if not self.is_online():
            raise TransportError("Device is offline")
        outgoing = self.store.unsynced(collection)
        responses: list[PushResult] = []
        for start in range(0, len(outgoing), self.batch_size):
            responses.append(self.transport.push_records(collection, outgoing[start : start + self.batch_size]))
        pulled = self.transport.pull_records(collection, since=self.store.sync_metadata(collection).cursor)
        return self._apply(collection, outgoing, responses, pulled, started)

    def _apply(
        self,
        collection: Collection,
        outgoing: Sequence[SyncableRecord],
        responses: Iterable[PushResult],
        pulled: PullResult,
        started: datetime,
    ) -> SyncResult:
        now = self.clock.now()
        result = SyncResult(collection=collection, started_at=started)
        pushed_by_id = {record.id: record for record in outgoing}
        affected = {collection, *(ref for ref, _ in REFERENCES.get(collection, []))}
        with self.store.lock(*affected):
            merge = _Merge(self.store, collection, now)
            for response in responses:
                for rejected in response.rejected:
                    logger.warning(
                        "sync_record_rejected collection=%s id=%s reason=%s",
                        collection.value,
                        rejected.id,
                        rejected.reason,
                    )
                    result.rejected.append(rejected)
                for accepted in response.accepted:
                    self._apply_accepted(merge, accepted, pushed_by_id.get(accepted.local_id), result)
            merge.rewrite_references(result.renumbered)
            pulled_ids = {remote.id for remote in pulled.records}
            for remote in pulled.records:
                self._merge_pulled(merge, remote, pulled_ids, result)
            result.finished_at = now
            metadata = SyncMetadata(last_sync_time=now, cursor=pulled.server_time)
            try:
                self.store.write_collections(
                    {touched: merge.snapshots[touched] for touched in merge.touched},
                    {collection: metadata},
                )
            except StorageError as exc:
                raise StorageError(
                    f"Sync of {collection.value} could not be saved: {exc.detail}", saved_locally=True
                ) from exc
        self._record_metrics(result)
        return result

    def _apply_accepted(
        self,
        merge: _Merge,
        accepted: AcceptedRecord,
        pushed: SyncableRecord | None,
        result: SyncResult,
    ) -> None:
        collection = merge.collection
        remote = accepted.record
        index = merge.positions.get(accepted.local_id)
        if pushed is None or index is None or not isinstance(remote, merge.model):
            logger.warning(
                "sync_accepted_unmatched collection=%s local_id=%s", collection.value, accepted.local_id
            )
            return
        local = merge.records[index]
        renumbered = remote.id != local.id
        if renumbered:
            logger.info("sync_renumbered collection=%s id=%s new_id=%s", collection.value, local.id, remote.id)
            result.renumbered[local.id] = remote.id

        if local.revision != pushed.revision:
            # Edited again while the push was in flight; the newer copy stays unsynced.
            if renumbered:
                merge.records[index] = change_tracking.rekey_record(
                    local,
                    remote.id,
                    change_tracking.REMOTE_SYNC_ACTOR,
                    f"Identifier {local.id} already taken on the server",
                    now=merge.now,
                    history_limit=self.store.history_limit,
                )
            return

        result.pushed.append(remote.id)
        server_kept_ours = change_tracking.same_version(remote, pushed)
        if server_kept_ours:
            merge.records[index] = change_tracking.mark_synced(remote, now=merge.now)
            if accepted.conflict:
                result.conflicts.append(
                    SyncConflict(
                        collection=collection,
                        record_id=remote.id,
                        local_updated_at=local.updated_at,
                        remote_updated_at=pushed.server_updated_at,
                        winner="local",
                        detail="Local copy overwrote a newer server version",
                    )
                )
            return

        merge.records[index] = change_tracking.record_remote_overwrite(
            local, remote, now=merge.now, history_limit=self.store.history_limit
        )
        result.conflicts.append(
            SyncConflict(
                collection=collection,
                record_id=remote.id,
                local_updated_at=local.updated_at,
                remote_updated_at=remote.updated_at,
                winner="remote",
                detail="Server kept a newer version",
            )
        )

    def _merge_pulled(
        self, merge: _Merge, remote: SyncableRecord, pulled_ids: set[str], result: SyncResult
    ) -> None:
        collection = merge.collection
        if not isinstance(remote, merge.model):
            logger.warning("sync_pulled_wrong_kind collection=%s id=%s kind=%s", collection.value, remote.id, remote.kind)
            return
        records = merge.records
        index = _index_of(records, remote.id)
        if index is None:
            records.append(change_tracking.mark_synced(remote, now=merge.now))
            result.pulled.append(remote.id)
            return

        local = records[index]
        if not local.synced and change_tracking.record_identity(local) != change_tracking.record_identity(remote):
            # Two devices allocated the same id offline; ours moves aside.
            new_id = numbering.renumber(local.id, {record.id for record in records} | pulled_ids)
            records[index] = change_tracking.rekey_record(
                local,
                new_id,
                change_tracking.REMOTE_SYNC_ACTOR,
                f"Identifier {local.id} already taken on the server",
                now=merge.now,
                history_limit=self.store.history_limit,
            )
            logger.info("sync_renumbered collection=%s id=%s new_id=%s", collection.value, local.id, new_id)
            result.renumbered[local.id] = new_id
            merge.rewrite_references({local.id: new_id})
            records.append(change_tracking.mark_synced(remote, now=merge.now))
            result.pulled.append(remote.id)
            return

        if change_tracking.version_key(remote) <= change_tracking.version_key(local):
            # Stale or already known; an unsynced local copy (a tombstone too) is pushed next time.
            return
        if not local.synced:
            result.conflicts.append(
                SyncConflict(
                    collection=collection,
                    record_id=local.id,
                    local_updated_at=local.updated_at,
                    remote_updated_at=remote.updated_at,
                    winner="remote",
                    detail="Newer server version overwrote unsynced local changes",
                )
            )
        records[index] = change_tracking.record_remote_overwrite(
            local, remote, now=merge.now, history_limit=self.store.history_limit
        )
        result.pulled.append(remote.id)

    @staticmethod
    def _record_metrics(result: SyncResult) -> None:
        collection = result.collection.value
        SYNC_RECORDS.labels(collection=collection, direction="pushed").inc(len(result.pushed))
        SYNC_RECORDS.labels(collection=collection, direction="pulled").inc(len(result.pulled))
        SYNC_RECORDS.labels(collection=collection, direction="rejected").inc(len(result.rejected))
        for conflict in result.conflicts:
            SYNC_CONFLICTS.labels(collection=collection, winner=conflict.winner).inc()
            logger.info(
                "sync_conflict collection=%s id=%s winner=%s",
                collection,
                conflict.record_id,
                conflict.winner,
            )


class SyncCoordinator:
    """Fires `sync_now` for every collection on an online transition and on a schedule."""

    def __init__(
        self,
        engine: SyncEngine,
        connectivity: ConnectivityMonitor,
        scheduler: Scheduler,
        interval_seconds: float = 300,
        collections: Sequence[Collection] = tuple(SYNC_ORDER),
    ):
        self.engine = engine
        self.connectivity = connectivity
        self.scheduler = scheduler
        self.interval_seconds = interval_seconds
        self.collections = list(collections)
        self._unsubscribe = None
        self._task: ScheduledTask | None = None

    @property
    def running(self) -> bool:
        return self._task is not None

    def start(self) -> None:
        if self.running:
            return
        self._unsubscribe = self.connectivity.on_change(self._on_connectivity_change)
        self._task = self.scheduler.every(self.interval_seconds, self._periodic_sync, name="fibertrace-sync")

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._task is not None:
            self._task.cancel()
            self._task = None

    def _on_connectivity_change(self, online: bool) -> None:
        if online:
            self.sync_all(trigger="online")

    def _periodic_sync(self) -> None:
        if self.connectivity.check():
            # A committed transition already triggered its own sync.
            return
        if self.connectivity.is_online():
            self.sync_all(trigger="timer")

    def sync_all(self, trigger: str = "manual") -> list[SyncResult]:
        logger.info("sync_all_started trigger=%s", trigger)
        results = []
        for collection in self.collections:
            try:
                results.append(self.engine.sync_now(collection))
            except TransportError as exc:
                # The remote is unreachable for every collection; wait for the next trigger.
                logger.warning("sync_all_aborted trigger=%s collection=%s error=%s", trigger, collection.value, exc)
                break
            except StorageError as exc:
                logger.warning("sync_all_storage_error trigger=%s collection=%s error=%s", trigger, collection.value, exc)
        return results
