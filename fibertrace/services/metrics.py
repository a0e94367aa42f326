"""Prometheus metrics for local-to-remote synchronization."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

SYNC_RUNS = Counter(
    "fibertrace_sync_runs_total",
    "Sync attempts per collection",
    ["collection", "status"],  # status: success, skipped, error
)

SYNC_RECORDS = Counter(
    "fibertrace_sync_records_total",
    "Records moved by sync",
    ["collection", "direction"],  # direction: pushed, pulled, rejected
)

SYNC_CONFLICTS = Counter(
    "fibertrace_sync_conflicts_total",
    "Conflicts resolved by last-writer-wins",
    ["collection", "winner"],
)

SYNC_FAILURES = Counter(
    "fibertrace_sync_failures_total",
    "Aborted syncs",
    ["collection", "reason"],  # reason: offline, transport, auth, storage
)

SYNC_DURATION = Histogram(
    "fibertrace_sync_duration_seconds",
    "Wall time of one collection sync",
    ["collection"],
)

SERVER_PUSHED = Counter(
    "fibertrace_server_push_records_total",
    "Records received by the server of record",
    ["collection", "outcome"],  # outcome: stored, replay, stale, renumbered, rejected
)
