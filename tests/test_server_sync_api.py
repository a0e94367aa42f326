import httpx
import pytest

from fibertrace.models.enums import Collection, NodeType
from fibertrace.schemas.records import Job, Node
from fibertrace.services import change_tracking
from fibertrace.services.errors import TransportAuthError, TransportError
from fibertrace.services.sync_engine import SyncEngine
from fibertrace.services.transport import HttpRemoteTransport


def _node_payload(clock, actor, record_id="FAT-001"):
    node = change_tracking.new_record(
        Node,
        {"name": "FAT Riverside", "node_type": NodeType.fat, "latitude": 6.45, "longitude": 3.39},
        record_id=record_id,
        actor=actor,
        now=clock.now(),
        origin_device="device-a",
    )
    return node.model_dump(mode="json")


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_metrics_endpoint(client):
    response = client.get("/metrics")

    assert response.status_code == 200
    assert "fibertrace_sync" in response.text


def test_push_then_pull_over_http(client, clock, actor):
    pushed = client.post("/api/sync/nodes/push", json={"records": [_node_payload(clock, actor)]})

    assert pushed.status_code == 200
    accepted = pushed.json()["accepted"]
    assert accepted[0]["local_id"] == "FAT-001"
    assert accepted[0]["record"]["synced"] is True
    assert accepted[0]["conflict"] is False

    pulled = client.get("/api/sync/nodes/pull")
    assert pulled.status_code == 200
    body = pulled.json()
    assert [record["id"] for record in body["records"]] == ["FAT-001"]
    assert body["server_time"]


def test_pull_since_cursor_excludes_older_records(client, clock, actor):
    client.post("/api/sync/nodes/push", json={"records": [_node_payload(clock, actor)]})
    cursor = client.get("/api/sync/nodes/pull").json()["server_time"]

    client.post("/api/sync/nodes/push", json={"records": [_node_payload(clock, actor, "FAT-002")]})
    body = client.get("/api/sync/nodes/pull", params={"since": cursor}).json()

    assert "FAT-002" in [record["id"] for record in body["records"]]
    assert "FAT-001" not in [record["id"] for record in body["records"]]


def test_unknown_collection_is_rejected(client):
    assert client.get("/api/sync/widgets/pull").status_code == 422


def test_wrong_kind_is_rejected_per_record(client, clock, actor):
    job = change_tracking.new_record(
        Job, {"name": "Fiber Install", "estimated_duration": 60}, record_id="JOB-001", actor=actor, now=clock.now()
    )

    response = client.post(
        "/api/sync/nodes/push",
        json={"records": [job.model_dump(mode="json"), _node_payload(clock, actor)]},
    )

    body = response.json()
    assert [item["id"] for item in body["rejected"]] == ["JOB-001"]
    assert [item["local_id"] for item in body["accepted"]] == ["FAT-001"]


def test_device_syncs_through_http_transport(client, make_device, clock):
    transport = HttpRemoteTransport("http://testserver", token="device-key", client=client)
    device = make_device("device-a", transport=transport)
    device.records[Collection.nodes].create(
        {"name": "FAT Riverside", "node_type": "FAT", "latitude": 6.45, "longitude": 3.39}
    )
    other = make_device("device-b", transport=HttpRemoteTransport("http://testserver", client=client))

    result = device.engine.sync_now(Collection.nodes)
    received = other.engine.sync_now(Collection.nodes)

    assert result.pushed == ["FAT-001"]
    assert received.pulled == ["FAT-001"]
    assert other.store.require(Collection.nodes, "FAT-001").origin_device == "device-a"


def _mock_transport(handler, sleeps, retries=3):
    client = httpx.Client(transport=httpx.MockTransport(handler), base_url="http://remote")
    return HttpRemoteTransport(
        "http://remote", token="device-key", retries=retries, retry_delay=0.5, client=client, sleep=sleeps.append
    )


def test_server_errors_are_retried_with_backoff(clock):
    calls = []
    sleeps = []

    def handler(request):
        calls.append(request)
        if len(calls) < 3:
            return httpx.Response(503, json={"detail": "busy"})
        return httpx.Response(200, json={"records": [], "server_time": clock.now().isoformat()})

    transport = _mock_transport(handler, sleeps)

    result = transport.pull_records(Collection.nodes, since=clock.now())

    assert result.records == []
    assert sleeps == [0.5, 1.0]
    assert calls[0].headers["X-API-Key"] == "device-key"
    assert "since" in calls[0].url.params


def test_auth_failures_are_not_retried():
    sleeps = []
    transport = _mock_transport(lambda request: httpx.Response(401, json={"detail": "bad key"}), sleeps)

    with pytest.raises(TransportAuthError):
        transport.push_records(Collection.nodes, [])

    assert sleeps == []


def test_client_errors_are_not_retried():
    sleeps = []
    transport = _mock_transport(lambda request: httpx.Response(422, json={"detail": "bad payload"}), sleeps)

    with pytest.raises(TransportError) as exc:
        transport.push_records(Collection.nodes, [])

    assert exc.value.retryable is False
    assert "bad payload" in exc.value.detail
    assert sleeps == []


def test_connection_errors_give_up_after_retries():
    sleeps = []

    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    transport = _mock_transport(handler, sleeps, retries=2)

    with pytest.raises(TransportError):
        transport.pull_records(Collection.nodes)

    assert sleeps == [0.5, 1.0]
    assert transport.test_connection() is False


def test_malformed_response_is_a_transport_error():
    transport = _mock_transport(lambda request: httpx.Response(200, json={"unexpected": True}), [])

    with pytest.raises(TransportError):
        transport.pull_records(Collection.nodes)


def test_auth_failure_marks_sync_as_failed(store, clock):
    transport = _mock_transport(lambda request: httpx.Response(403), [])
    engine = SyncEngine(store, transport, clock=clock)

    with pytest.raises(TransportAuthError):
        engine.sync_now(Collection.jobs)

    assert engine.get_sync_status(Collection.jobs).last_error == "Authentication failed: 403"
