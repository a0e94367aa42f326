"""Dependency injection container for one device.

Wires the local record store, the remote transport, the connectivity oracle,
the sync engine and the per-domain record collections from `Settings`.
There is no global instance: every device (or test) builds its own.

Usage:
    from fibertrace.container import build_container

    container = build_container(current_actor=lambda: Actor(id="tech-7"))
    job = container.jobs().create({"name": "Fiber Install", "estimated_duration": 7200})
    container.sync_coordinator().start()

    # In tests
    container.backend.override(providers.Object(MemoryKeyValueBackend()))
    container.clock.override(providers.Object(ManualClock()))
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import asdict

from dependency_injector import containers, providers  # type: ignore[import-not-found]

from fibertrace.config import Settings, settings
from fibertrace.db import local_session_factory
from fibertrace.models.enums import Collection
from fibertrace.schemas.records import Actor
from fibertrace.services.collections import RecordCollection
from fibertrace.services.connectivity import ConnectivityMonitor, HttpHealthProbe
from fibertrace.services.job_timer import JobTimerService
from fibertrace.services.record_store import RecordStore, SqlKeyValueBackend
from fibertrace.services.scheduling import Scheduler, SystemClock
from fibertrace.services.sync_engine import SyncCoordinator, SyncEngine
from fibertrace.services.transport import HttpRemoteTransport


def _local_backend(url: str, retries: int) -> SqlKeyValueBackend:
    return SqlKeyValueBackend(local_session_factory(url), retries=retries)


def _remote_transport(url: str | None, token: str | None, timeout: int, retries: int, retry_delay: float):
    if not url:
        raise RuntimeError("SYNC_REMOTE_URL is not configured")
    return HttpRemoteTransport(url, token, timeout=timeout, retries=retries, retry_delay=retry_delay)


def _health_probe(probe_url: str | None, remote_url: str | None):
    url = probe_url or (f"{remote_url.rstrip('/')}/health" if remote_url else None)
    return HttpHealthProbe(url) if url else None


def _anonymous_actor() -> Actor:
    raise RuntimeError("No current actor configured; pass current_actor to build_container")


class DeviceContainer(containers.DeclarativeContainer):
    """Composition root for a device's offline store and sync stack."""

    config = providers.Configuration()

    clock = providers.Singleton(SystemClock)

    # Supplied by the auth subsystem.
    current_actor = providers.Object(_anonymous_actor)

    # -------------------------------------------------------------------------
    # Local store
    # -------------------------------------------------------------------------

    backend = providers.Singleton(
        _local_backend,
        config.local_store_url,
        config.local_store_write_retries,
    )

    store = providers.Singleton(
        RecordStore,
        backend=backend,
        namespace=config.local_store_namespace,
        clock=clock,
        history_limit=config.change_history_limit,
    )

    # -------------------------------------------------------------------------
    # Remote side
    # -------------------------------------------------------------------------

    transport = providers.Singleton(
        _remote_transport,
        config.sync_remote_url,
        config.sync_remote_token,
        config.sync_remote_timeout_seconds,
        config.sync_remote_retries,
        config.sync_remote_retry_delay,
    )

    connectivity = providers.Singleton(
        ConnectivityMonitor,
        clock=clock,
        debounce_seconds=config.connectivity_debounce_seconds,
        probe=providers.Callable(_health_probe, config.connectivity_probe_url, config.sync_remote_url),
    )

    sync_engine = providers.Singleton(
        SyncEngine,
        store=store,
        transport=transport,
        connectivity=connectivity,
        clock=clock,
        batch_size=config.sync_batch_size,
    )

    scheduler = providers.Singleton(Scheduler, clock=clock)

    sync_coordinator = providers.Singleton(
        SyncCoordinator,
        engine=sync_engine,
        connectivity=connectivity,
        scheduler=scheduler,
        interval_seconds=config.sync_interval_seconds,
    )

    # -------------------------------------------------------------------------
    # Domain collections
    # -------------------------------------------------------------------------

    jobs = providers.Singleton(
        RecordCollection, store, Collection.jobs, current_actor, config.device_id
    )
    nodes = providers.Singleton(
        RecordCollection, store, Collection.nodes, current_actor, config.device_id
    )
    routes = providers.Singleton(
        RecordCollection, store, Collection.routes, current_actor, config.device_id
    )
    closures = providers.Singleton(
        RecordCollection, store, Collection.closures, current_actor, config.device_id
    )
    splice_maps = providers.Singleton(
        RecordCollection, store, Collection.splice_maps, current_actor, config.device_id
    )
    inventory = providers.Singleton(
        RecordCollection, store, Collection.inventory, current_actor, config.device_id
    )

    job_timer = providers.Singleton(JobTimerService, jobs)


def build_container(
    config: Settings | None = None,
    current_actor: Callable[[], Actor] | None = None,
) -> DeviceContainer:
    container = DeviceContainer()
    container.config.from_dict(asdict(config or settings))
    if current_actor is not None:
        container.current_actor.override(providers.Object(current_actor))
    return container
