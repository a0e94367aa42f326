"""Remote transports the sync engine pushes to and pulls from."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Protocol

import httpx
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from fibertrace.models.enums import Collection
from fibertrace.schemas.records import SyncableRecord
from fibertrace.schemas.sync import PullResult, PushRequest, PushResult
from fibertrace.services.errors import StorageError, TransportAuthError, TransportError
from fibertrace.services.scheduling import Clock, SystemClock
from fibertrace.services.server_sync import SyncServer, sync_server
from fibertrace.telemetry import get_tracer

logger = logging.getLogger(__name__)


class RemoteTransport(Protocol):
    def push_records(self, collection: Collection, records: Sequence[SyncableRecord]) -> PushResult: ...

    def pull_records(self, collection: Collection, since: datetime | None = None) -> PullResult: ...


class HttpRemoteTransport:
    """
    HTTP client for the sync API of the server of record.

    Features:
    - API key authentication (X-API-Key)
    - Automatic retry with exponential backoff on connection errors,
      timeouts and 5xx responses
    - Push is keyed by record id, so retried pushes are harmless
    """

    DEFAULT_TIMEOUT = 30
    DEFAULT_RETRIES = 3
    DEFAULT_RETRY_DELAY = 1.0

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout: int = DEFAULT_TIMEOUT,
        retries: int = DEFAULT_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            base_url: Server root (e.g., "https://sync.fibertrace.example")
            token: API key sent as X-API-Key
            timeout: Request timeout in seconds
            retries: Number of retry attempts
            retry_delay: Initial delay between retries (exponential backoff)
            client: Pre-built client, e.g. a FastAPI TestClient
            sleep: Wait function used between retries
        """
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.retries = retries
        self.retry_delay = retry_delay
        self.sleep = sleep
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.Client:
        """Get or create HTTP client."""
        if self._client is None:
            headers = {
                "Content-Type": "application/json",
                "Accept": "application/json",
                "User-Agent": "FiberTrace-Device/1.0",
            }
            self._client = httpx.Client(base_url=self.base_url, timeout=self.timeout, headers=headers)
        return self._client

    def close(self):
        if self._client and self._owns_client:
            self._client.close()
            self._client = None

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    def _handle_response(self, response: httpx.Response) -> dict | list | None:
        try:
            data = response.json() if response.content else None
        except ValueError:
            data = None

        if response.status_code in (401, 403):
            raise TransportAuthError(
                f"Authentication failed: {response.status_code}", status_code=response.status_code
            )

        if response.status_code >= 400:
            if isinstance(data, dict):
                error_msg = data.get("detail") or data.get("message") or str(data)
            else:
                error_msg = str(data)
            logger.warning("sync_api_error status=%s body=%s", response.status_code, data)
            raise TransportError(
                f"API error ({response.status_code}): {error_msg}",
                status_code=response.status_code,
                retryable=response.status_code >= 500,
            )

        return data

    def _request(
        self,
        method: str,
        path: str,
        params: dict | None = None,
        json_data: dict | None = None,
    ) -> dict | list | None:
        client = self._get_client()
        headers = {"X-API-Key": self.token} if self.token else None
        last_error: Exception | None = None
        for attempt in range(self.retries + 1):
            try:
                response = client.request(method=method, url=path, params=params, json=json_data, headers=headers)
                return self._handle_response(response)

            except TransportAuthError:
                raise

            except TransportError as e:
                if not e.retryable or attempt >= self.retries:
                    raise
                last_error = e

            except (httpx.ConnectError, httpx.TimeoutException) as e:
                if attempt >= self.retries:
                    raise TransportError(f"Connection error after {self.retries} retries: {e}") from e
                last_error = e

            except httpx.HTTPError as e:
                raise TransportError(f"Unexpected transport error: {e}") from e

            wait_time = self.retry_delay * (2**attempt)
            logger.warning("sync_request_retry path=%s wait=%ss error=%s", path, wait_time, last_error)
            self.sleep(wait_time)

        raise TransportError(f"Request failed after {self.retries} retries: {last_error}")

    def push_records(self, collection: Collection, records: Sequence[SyncableRecord]) -> PushResult:
        payload = PushRequest(records=list(records)).model_dump(mode="json")
        with get_tracer().start_as_current_span("fibertrace.transport.push") as span:
            span.set_attribute("fibertrace.collection", collection.value)
            span.set_attribute("fibertrace.records", len(records))
            data = self._request("POST", f"/api/sync/{collection.value}/push", json_data=payload)
        try:
            return PushResult.model_validate(data)
        except PydanticValidationError as exc:
            raise TransportError(f"Malformed push response: {exc}", retryable=False) from exc

    def pull_records(self, collection: Collection, since: datetime | None = None) -> PullResult:
        params = {"since": since.isoformat()} if since else None
        with get_tracer().start_as_current_span("fibertrace.transport.pull") as span:
            span.set_attribute("fibertrace.collection", collection.value)
            data = self._request("GET", f"/api/sync/{collection.value}/pull", params=params)
        try:
            return PullResult.model_validate(data)
        except PydanticValidationError as exc:
            raise TransportError(f"Malformed pull response: {exc}", retryable=False) from exc

    def test_connection(self) -> bool:
        """Test if the server answers its health probe."""
        try:
            self._request("GET", "/health")
            return True
        except TransportError as e:
            logger.warning("sync_connection_test_failed error=%s", e)
            return False


class InProcessTransport:
    """Talks to the server of record directly through a session factory.

    Useful when device and server share a process (tests, a single-node
    install); a database failure surfaces as a TransportError like an
    unreachable remote would.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        server: SyncServer = sync_server,
        clock: Clock | None = None,
    ):
        self.session_factory = session_factory
        self.server = server
        self.clock = clock or SystemClock()

    def push_records(self, collection: Collection, records: Sequence[SyncableRecord]) -> PushResult:
        with self.session_factory() as db:
            try:
                return self.server.push(db, collection, records, now=self.clock.now())
            except (SQLAlchemyError, StorageError) as exc:
                db.rollback()
                raise TransportError(f"Server push failed: {exc}") from exc

    def pull_records(self, collection: Collection, since: datetime | None = None) -> PullResult:
        with self.session_factory() as db:
            try:
                return self.server.pull(db, collection, since=since, now=self.clock.now())
            except (SQLAlchemyError, StorageError) as exc:
                raise TransportError(f"Server pull failed: {exc}") from exc
