"""Job lifecycle rules, completion reports and job timer arithmetic."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from fibertrace.models.enums import JobStatus
from fibertrace.schemas.records import Actor, CompletionReport, Job, JobCompletion, JobTimer
from fibertrace.services import change_tracking
from fibertrace.services.errors import ValidationError

_ALLOWED_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.pending: {JobStatus.in_progress, JobStatus.on_hold},
    JobStatus.in_progress: {JobStatus.on_hold, JobStatus.completed},
    JobStatus.on_hold: {JobStatus.in_progress},
    JobStatus.completed: set(),
}

# Set only through start/hold/resume/complete.
_LIFECYCLE_FIELDS = {"status", "duration", "actual_cost", "signed_by", "started_at", "completed_at"}


def _coerce_status(value: JobStatus | str) -> JobStatus:
    if isinstance(value, JobStatus):
        return value
    try:
        return JobStatus(value)
    except ValueError as exc:
        raise ValidationError("status", f"unknown job status {value!r}") from exc


def is_transition_allowed(current: JobStatus, target: JobStatus) -> bool:
    return target in _ALLOWED_TRANSITIONS.get(current, set())


def validate_transition(current: JobStatus, target: JobStatus) -> None:
    if not is_transition_allowed(current, target):
        raise ValidationError("status", f"Transition {current.value} -> {target.value} is not allowed")


def id_domain(fields: Mapping[str, Any]) -> str:
    return "job"


def create(
    fields: Mapping[str, Any],
    *,
    record_id: str,
    actor: Actor | str,
    now: datetime | None = None,
    origin_device: str | None = None,
) -> Job:
    data = dict(fields)
    for field in _LIFECYCLE_FIELDS - {"status"}:
        if data.get(field) is not None:
            raise ValidationError(field, "is set when the job is worked, not at creation")
    if "status" in data and _coerce_status(data["status"]) != JobStatus.pending:
        raise ValidationError("status", "new jobs start as Pending")
    technician = change_tracking.actor_id(actor)
    data.setdefault("assigned_technician", technician)
    data.setdefault("technicians_team", [data["assigned_technician"]])
    return change_tracking.new_record(
        Job, data, record_id=record_id, actor=actor, now=now, origin_device=origin_device
    )


def update(
    job: Job,
    patch: Mapping[str, Any],
    *,
    actor: Actor | str,
    now: datetime | None = None,
    history_limit: int | None = change_tracking.DEFAULT_HISTORY_LIMIT,
    reason: str | None = None,
) -> Job:
    patch = dict(patch)
    target = patch.pop("status", None)
    for field in patch:
        if field in _LIFECYCLE_FIELDS:
            raise ValidationError(field, "changes only through the job lifecycle")
    if job.status == JobStatus.completed and set(patch) - {"notes"}:
        raise ValidationError("status", "completed jobs only accept note changes")
    updated = job
    if patch:
        updated = change_tracking.apply_changes(
            job, patch, actor, reason, now=now, history_limit=history_limit
        )
    if target is not None and _coerce_status(target) != job.status:
        updated = transition(updated, _coerce_status(target), actor, reason, now=now, history_limit=history_limit)
    return updated


def transition(
    job: Job,
    target: JobStatus,
    actor: Actor | str,
    reason: str | None = None,
    *,
    now: datetime | None = None,
    history_limit: int | None = change_tracking.DEFAULT_HISTORY_LIMIT,
) -> Job:
    if target == JobStatus.completed:
        raise ValidationError("status", "use complete_job to complete a job")
    validate_transition(job.status, target)
    patch: dict[str, Any] = {"status": target}
    if target == JobStatus.in_progress and job.started_at is None:
        patch["started_at"] = now or datetime.now(UTC)
    return change_tracking.apply_changes(job, patch, actor, reason, now=now, history_limit=history_limit)


def start_job(job: Job, actor: Actor | str, *, now: datetime | None = None, **kwargs) -> Job:
    if job.status != JobStatus.pending:
        raise ValidationError("status", f"only Pending jobs can be started (job is {job.status.value})")
    return transition(job, JobStatus.in_progress, actor, "Job started", now=now, **kwargs)


def hold_job(job: Job, actor: Actor | str, reason: str | None = None, *, now: datetime | None = None, **kwargs) -> Job:
    return transition(job, JobStatus.on_hold, actor, reason or "Job put on hold", now=now, **kwargs)


def resume_job(job: Job, actor: Actor | str, *, now: datetime | None = None, **kwargs) -> Job:
    if job.status != JobStatus.on_hold:
        raise ValidationError("status", f"only On Hold jobs can be resumed (job is {job.status.value})")
    return transition(job, JobStatus.in_progress, actor, "Job resumed", now=now, **kwargs)


def complete_job(
    job: Job,
    completion: JobCompletion | Mapping[str, Any],
    actor: Actor | str,
    *,
    now: datetime | None = None,
    history_limit: int | None = change_tracking.DEFAULT_HISTORY_LIMIT,
) -> Job:
    if not isinstance(completion, JobCompletion):
        try:
            completion = JobCompletion.model_validate(completion)
        except PydanticValidationError as exc:
            raise change_tracking.translate_validation_error(exc) from exc
    if job.status != JobStatus.in_progress:
        raise ValidationError(
            "status", f"only In Progress jobs can be completed (job is {job.status.value})"
        )
    completed_at = now or datetime.now(UTC)
    patch: dict[str, Any] = {
        "status": JobStatus.completed,
        "duration": completion.duration_seconds,
        "actual_cost": completion.actual_cost,
        "signed_by": completion.signed_by,
        "completed_at": completed_at,
    }
    if completion.notes:
        patch["notes"] = completion.notes
    return change_tracking.apply_changes(
        job, patch, actor, "Job completed", now=now, history_limit=history_limit
    )


def format_duration(seconds: int | float) -> str:
    total = max(int(seconds), 0)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def generate_completion_report(job: Job) -> CompletionReport:
    variance = None
    if job.actual_cost is not None:
        variance = round(job.actual_cost - job.estimated_cost, 2)
    return CompletionReport(
        job_id=job.id,
        name=job.name,
        status=job.status,
        duration=format_duration(job.duration),
        duration_seconds=job.duration,
        estimated_duration=format_duration(job.estimated_duration),
        estimated_duration_seconds=job.estimated_duration,
        estimated_cost=job.estimated_cost,
        actual_cost=job.actual_cost,
        cost_variance=variance,
        signed_by=job.signed_by,
        completed_at=job.completed_at,
        node_count=len(job.node_ids),
        route_count=len(job.route_ids),
        notes=job.notes,
    )


def filter_jobs_by_status(jobs: Iterable[Job], status: JobStatus | str) -> list[Job]:
    wanted = _coerce_status(status)
    return [job for job in jobs if job.status == wanted]


def search_jobs(jobs: Iterable[Job], query: str) -> list[Job]:
    needle = query.strip().lower()
    if not needle:
        return list(jobs)
    return [
        job
        for job in jobs
        if needle in job.id.lower() or needle in job.name.lower() or needle in job.description.lower()
    ]


def get_job_stats(jobs: Iterable[Job]) -> dict[str, int]:
    stats = {"total": 0, "unsynced": 0}
    stats.update({status.value: 0 for status in JobStatus})
    for job in jobs:
        if job.deleted:
            continue
        stats["total"] += 1
        stats[job.status.value] += 1
        if not job.synced:
            stats["unsynced"] += 1
    return stats


def get_job_metrics(jobs: Iterable[Job]) -> dict[str, float]:
    active = [job for job in jobs if not job.deleted]
    completed = [job for job in active if job.status == JobStatus.completed]
    completion_rate = (len(completed) / len(active) * 100) if active else 0.0
    average_duration = (sum(job.duration for job in completed) / len(completed)) if completed else 0.0
    estimated = sum(job.estimated_cost for job in completed)
    actual = sum(job.actual_cost or 0 for job in completed)
    return {
        "completion_rate": round(completion_rate, 1),
        "average_duration_seconds": round(average_duration, 1),
        "estimated_cost": round(estimated, 2),
        "actual_cost": round(actual, 2),
        "cost_variance": round(actual - estimated, 2),
    }


# ── job timer ───────────────────────────────────────────────────────────────


def timer_elapsed(timer: JobTimer, now: datetime) -> int:
    elapsed = timer.elapsed_seconds
    if timer.is_running and timer.started_at is not None:
        elapsed += max(int((now - timer.started_at).total_seconds()), 0)
    return elapsed


def start_timer(job_id: str, now: datetime, current: JobTimer | None = None) -> JobTimer:
    """Start or resume timing `job_id`; a timer held by another job must be completed or discarded first."""
    if current is None:
        return JobTimer(job_id=job_id, is_running=True, elapsed_seconds=0, started_at=now)
    if current.job_id != job_id:
        state = "running" if current.is_running else "paused"
        raise ValidationError("timer", f"timer for job {current.job_id} is {state}; complete or discard it first")
    return resume_timer(current, now)


def pause_timer(timer: JobTimer, now: datetime) -> JobTimer:
    if not timer.is_running:
        return timer
    return JobTimer(
        job_id=timer.job_id,
        is_running=False,
        elapsed_seconds=timer_elapsed(timer, now),
        started_at=None,
        paused_at=now,
    )


def resume_timer(timer: JobTimer, now: datetime) -> JobTimer:
    if timer.is_running:
        return timer
    return JobTimer(
        job_id=timer.job_id,
        is_running=True,
        elapsed_seconds=timer.elapsed_seconds,
        started_at=now,
        paused_at=None,
    )
