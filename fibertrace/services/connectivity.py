"""Online/offline oracle with flap suppression.

The platform's raw signal is fed in through `report()` (or polled through a
probe). A change only becomes visible once it has held for the debounce
window, and subscribers see exactly one event per committed transition.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime, timedelta

import httpx

from fibertrace.services.scheduling import Clock, SystemClock

logger = logging.getLogger(__name__)

ConnectivityListener = Callable[[bool], object]


class ConnectivityMonitor:
    def __init__(
        self,
        clock: Clock | None = None,
        debounce_seconds: float = 2.0,
        probe: Callable[[], bool] | None = None,
        initially_online: bool = False,
    ):
        self.clock = clock or SystemClock()
        self.debounce = timedelta(seconds=max(debounce_seconds, 0))
        self.probe = probe
        self._online = initially_online
        self._pending: bool | None = None
        self._pending_since: datetime | None = None
        self._listeners: list[ConnectivityListener] = []
        self._lock = threading.Lock()

    def is_online(self) -> bool:
        return self._online

    def on_change(self, callback: ConnectivityListener) -> Callable[[], None]:
        """Subscribe to committed transitions; returns an unsubscribe function."""
        with self._lock:
            self._listeners.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return unsubscribe

    def report(self, online: bool) -> bool:
        """Feed one raw reading; returns True if it committed a transition."""
        with self._lock:
            if online == self._online:
                # Flapped back before the window elapsed.
                self._pending = None
                self._pending_since = None
            elif self._pending != online:
                self._pending = online
                self._pending_since = self.clock.now()
        return self.tick()

    def tick(self) -> bool:
        """Commit a pending reading whose debounce window has elapsed."""
        with self._lock:
            if self._pending is None or self._pending_since is None:
                return False
            if self.clock.now() - self._pending_since < self.debounce:
                return False
            self._online = self._pending
            self._pending = None
            self._pending_since = None
            online = self._online
            listeners = list(self._listeners)
        logger.info("connectivity_changed online=%s", online)
        for listener in listeners:
            try:
                listener(online)
            except Exception:
                logger.exception("connectivity_listener_failed online=%s", online)
        return True

    def check(self) -> bool:
        """Poll the probe (when configured) and commit any settled change."""
        if self.probe is None:
            return self.tick()
        return self.report(self.probe())


class HttpHealthProbe:
    """Treats the remote as reachable when its health endpoint answers below 500."""

    def __init__(self, url: str, timeout: float = 5.0, client: httpx.Client | None = None):
        self.url = url
        self.timeout = timeout
        self._client = client

    def __call__(self) -> bool:
        try:
            if self._client is not None:
                response = self._client.get(self.url, timeout=self.timeout)
            else:
                response = httpx.get(self.url, timeout=self.timeout)
        except httpx.HTTPError as exc:
            logger.debug("connectivity_probe_failed url=%s error=%s", self.url, exc)
            return False
        return response.status_code < 500
