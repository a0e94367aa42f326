"""The single active job timer, persisted so elapsed time survives restarts."""

from __future__ import annotations

import logging

from fibertrace.models.enums import Collection, JobStatus
from fibertrace.schemas.records import Job, JobCompletion, JobTimer
from fibertrace.services import jobs
from fibertrace.services.collections import RecordCollection
from fibertrace.services.errors import ValidationError

logger = logging.getLogger(__name__)


class JobTimerService:
    def __init__(self, job_records: RecordCollection):
        if job_records.collection != Collection.jobs:
            raise ValueError("JobTimerService needs the jobs collection")
        self.job_records = job_records
        self.store = job_records.store

    @property
    def clock(self):
        return self.store.clock

    def current(self) -> JobTimer | None:
        return self.store.load_timer()

    def _require_timer(self) -> JobTimer:
        timer = self.store.load_timer()
        if timer is None:
            raise ValidationError("timer", "no job timer is active")
        return timer

    def start_timer(self, job_id: str) -> JobTimer:
        """Start timing a job, moving it to In Progress if it is Pending or On Hold."""
        actor = self.job_records.current_actor()
        now = self.clock.now()
        with self.store.lock(Collection.jobs):
            job = self.job_records.get(job_id)
            timer = jobs.start_timer(job_id, now, self.store.load_timer())
            if job.status == JobStatus.completed:
                raise ValidationError("status", f"job {job_id} is already completed")
            if job.status == JobStatus.pending:
                job = jobs.start_job(job, actor, now=now, history_limit=self.store.history_limit)
                self.store.upsert(Collection.jobs, job)
            elif job.status == JobStatus.on_hold:
                job = jobs.resume_job(job, actor, now=now, history_limit=self.store.history_limit)
                self.store.upsert(Collection.jobs, job)
            self.store.save_timer(timer)
        logger.info("job_timer_started job=%s elapsed=%s", job_id, timer.elapsed_seconds)
        return timer

    def pause_timer(self) -> JobTimer:
        timer = jobs.pause_timer(self._require_timer(), self.clock.now())
        self.store.save_timer(timer)
        return timer

    def resume_timer(self) -> JobTimer:
        timer = jobs.resume_timer(self._require_timer(), self.clock.now())
        self.store.save_timer(timer)
        return timer

    def discard_timer(self) -> JobTimer | None:
        """Drop the active timer without completing its job; returns what was discarded."""
        with self.store.lock(Collection.jobs):
            timer = self.store.load_timer()
            self.store.save_timer(None)
        if timer is not None:
            logger.info(
                "job_timer_discarded job=%s elapsed=%s", timer.job_id, jobs.timer_elapsed(timer, self.clock.now())
            )
        return timer

    def elapsed_seconds(self) -> int:
        timer = self.store.load_timer()
        if timer is None:
            return 0
        return jobs.timer_elapsed(timer, self.clock.now())

    def complete_job(self, job_id: str, completion: JobCompletion | dict) -> Job:
        """Complete a job and drop the timer if it was timing that job."""
        actor = self.job_records.current_actor()
        now = self.clock.now()
        with self.store.lock(Collection.jobs):
            job = jobs.complete_job(
                self.job_records.get(job_id),
                completion,
                actor,
                now=now,
                history_limit=self.store.history_limit,
            )
            self.store.upsert(Collection.jobs, job)
            timer = self.store.load_timer()
            if timer is not None and timer.job_id == job_id:
                self.store.save_timer(None)
        logger.info("job_completed job=%s duration=%s", job_id, job.duration)
        return job

    def complete_active_job(self, actual_cost: float, signed_by: str, notes: str = "") -> Job:
        """Complete the timed job using the timer's elapsed seconds as its duration."""
        timer = self._require_timer()
        completion = {
            "duration_seconds": jobs.timer_elapsed(timer, self.clock.now()),
            "actual_cost": actual_cost,
            "signed_by": signed_by,
            "notes": notes,
        }
        return self.complete_job(timer.job_id, completion)
