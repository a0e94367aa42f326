import pytest
from dependency_injector import providers

from fibertrace.config import Settings
from fibertrace.container import build_container
from fibertrace.models.enums import Collection, JobStatus
from fibertrace.services.connectivity import ConnectivityMonitor
from fibertrace.services.record_store import MemoryKeyValueBackend, SqlKeyValueBackend
from fibertrace.services.transport import HttpRemoteTransport, InProcessTransport


@pytest.fixture()
def container(clock, actor, server_sessions):
    container = build_container(
        Settings(local_store_url="sqlite://", sync_remote_url="http://remote", device_id="device-test"),
        current_actor=lambda: actor,
    )
    container.clock.override(providers.Object(clock))
    container.backend.override(providers.Object(MemoryKeyValueBackend()))
    container.transport.override(providers.Object(InProcessTransport(server_sessions, clock=clock)))
    container.connectivity.override(
        providers.Object(ConnectivityMonitor(clock=clock, debounce_seconds=0, initially_online=True))
    )
    return container


def test_collections_share_one_store(container):
    job = container.jobs().create({"name": "Fiber Install", "estimated_duration": 3600})

    assert job.id == "JOB-001"
    assert job.origin_device == "device-test"
    assert job.last_updated_by == "tech-ana"
    assert container.store().require(Collection.jobs, "JOB-001") == job
    assert container.jobs() is container.jobs()


def test_timer_and_sync_are_wired(container, clock):
    container.jobs().create({"name": "Fiber Install", "estimated_duration": 3600})
    container.job_timer().start_timer("JOB-001")
    clock.advance(90)
    job = container.job_timer().complete_active_job(actual_cost=0, signed_by="Ana Okafor")

    results = container.sync_coordinator().sync_all()

    assert job.status == JobStatus.completed
    assert job.duration == 90
    assert {result.collection for result in results} == set(Collection)
    assert container.store().unsynced_count(Collection.jobs) == 0


def test_default_transport_is_http():
    container = build_container(
        Settings(local_store_url="sqlite://", sync_remote_url="http://remote/"), current_actor=lambda: None
    )

    transport = container.transport()

    assert isinstance(transport, HttpRemoteTransport)
    assert transport.base_url == "http://remote"


def test_missing_remote_url_fails_fast():
    container = build_container(Settings(local_store_url="sqlite://", sync_remote_url=None))

    with pytest.raises(RuntimeError):
        container.transport()


def test_actor_is_required():
    container = build_container(Settings(local_store_url="sqlite://"))
    container.backend.override(providers.Object(MemoryKeyValueBackend()))

    with pytest.raises(RuntimeError):
        container.jobs().create({"name": "Fiber Install", "estimated_duration": 3600})


def test_default_backend_is_the_sql_store(clock, actor):
    container = build_container(Settings(local_store_url="sqlite://"), current_actor=lambda: actor)
    container.clock.override(providers.Object(clock))

    job = container.jobs().create({"name": "Fiber Install", "estimated_duration": 3600})

    assert isinstance(container.backend(), SqlKeyValueBackend)
    assert container.backend().keys("fibertrace_") == ["fibertrace_jobs"]
    assert container.store().require(Collection.jobs, "JOB-001") == job
