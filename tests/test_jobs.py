import pytest

from fibertrace.models.enums import JobPriority, JobStatus
from fibertrace.services import jobs
from fibertrace.services.errors import ValidationError


def _job(clock, actor, record_id="JOB-001", **fields):
    data = {"name": "Fiber Install", "estimated_duration": 7200, "estimated_cost": 200.0}
    data.update(fields)
    return jobs.create(data, record_id=record_id, actor=actor, now=clock.now())


def test_create_defaults_to_pending_and_assigns_technician(clock, actor):
    job = _job(clock, actor)

    assert job.status == JobStatus.pending
    assert job.priority == JobPriority.medium
    assert job.assigned_technician == "tech-ana"
    assert job.technicians_team == ["tech-ana"]


def test_create_rejects_lifecycle_fields(clock, actor):
    with pytest.raises(ValidationError):
        _job(clock, actor, status="Completed")
    with pytest.raises(ValidationError):
        _job(clock, actor, signed_by="Ana")


def test_create_requires_positive_estimate(clock, actor):
    with pytest.raises(ValidationError) as exc:
        _job(clock, actor, estimated_duration=0)
    assert exc.value.field == "estimated_duration"


@pytest.mark.parametrize(
    ("current", "target", "allowed"),
    [
        (JobStatus.pending, JobStatus.in_progress, True),
        (JobStatus.pending, JobStatus.on_hold, True),
        (JobStatus.pending, JobStatus.completed, False),
        (JobStatus.in_progress, JobStatus.on_hold, True),
        (JobStatus.in_progress, JobStatus.completed, True),
        (JobStatus.on_hold, JobStatus.in_progress, True),
        (JobStatus.on_hold, JobStatus.completed, False),
        (JobStatus.completed, JobStatus.in_progress, False),
    ],
)
def test_transition_table(current, target, allowed):
    assert jobs.is_transition_allowed(current, target) is allowed


def test_hold_and_resume(clock, actor):
    job = jobs.start_job(_job(clock, actor), actor, now=clock.now())
    started_at = job.started_at
    clock.advance(600)

    held = jobs.hold_job(job, actor, "Waiting for splicer", now=clock.now())
    resumed = jobs.resume_job(held, actor, now=clock.now())

    assert held.status == JobStatus.on_hold
    assert held.change_history[-1].reason == "Waiting for splicer"
    assert resumed.status == JobStatus.in_progress
    assert resumed.started_at == started_at


def test_update_routes_status_through_state_machine(clock, actor):
    job = _job(clock, actor)

    held = jobs.update(job, {"status": "On Hold", "notes": "Permit pending"}, actor=actor, now=clock.now())

    assert held.status == JobStatus.on_hold
    assert held.notes == "Permit pending"
    with pytest.raises(ValidationError):
        jobs.update(held, {"status": JobStatus.completed}, actor=actor, now=clock.now())


def test_complete_requires_in_progress(clock, actor):
    job = _job(clock, actor)

    with pytest.raises(ValidationError) as exc:
        jobs.complete_job(job, {"duration_seconds": 60, "actual_cost": 10, "signed_by": "Ana"}, actor)

    assert exc.value.field == "status"
    assert job.status == JobStatus.pending


def test_complete_requires_signature(clock, actor):
    job = jobs.start_job(_job(clock, actor), actor, now=clock.now())

    with pytest.raises(ValidationError) as exc:
        jobs.complete_job(job, {"duration_seconds": 60, "actual_cost": 10, "signed_by": ""}, actor)

    assert exc.value.field == "signed_by"


def test_completed_jobs_only_accept_notes(clock, actor):
    job = jobs.start_job(_job(clock, actor), actor, now=clock.now())
    done = jobs.complete_job(
        job, {"duration_seconds": 3600, "actual_cost": 180, "signed_by": "Ana"}, actor, now=clock.now()
    )

    annotated = jobs.update(done, {"notes": "Customer happy"}, actor=actor, now=clock.now())

    assert annotated.notes == "Customer happy"
    with pytest.raises(ValidationError):
        jobs.update(done, {"name": "Other"}, actor=actor, now=clock.now())


def test_format_duration():
    assert jobs.format_duration(3661) == "01:01:01"
    assert jobs.format_duration(0) == "00:00:00"
    assert jobs.format_duration(36000) == "10:00:00"


def test_completion_report(clock, actor):
    job = jobs.start_job(_job(clock, actor, node_ids=["FAT-001", "FAT-002"]), actor, now=clock.now())
    clock.advance(3661)
    done = jobs.complete_job(
        job, {"duration_seconds": 3661, "actual_cost": 250.0, "signed_by": "Ana Okafor"}, actor, now=clock.now()
    )

    report = jobs.generate_completion_report(done)

    assert report.status == JobStatus.completed
    assert report.duration == "01:01:01"
    assert report.estimated_duration == "02:00:00"
    assert report.cost_variance == 50.0
    assert report.node_count == 2
    assert report.completed_at == clock.now()


def test_filter_search_and_stats(clock, actor):
    pending = _job(clock, actor, "JOB-001", name="Fiber Install", description="Riverside estate")
    running = jobs.start_job(_job(clock, actor, "JOB-002", name="Splice Repair"), actor, now=clock.now())
    done = jobs.complete_job(
        jobs.start_job(_job(clock, actor, "JOB-003", name="Drop Survey"), actor, now=clock.now()),
        {"duration_seconds": 1800, "actual_cost": 150.0, "signed_by": "Ana"},
        actor,
        now=clock.now(),
    )
    all_jobs = [pending, running, done]

    assert jobs.filter_jobs_by_status(all_jobs, "In Progress") == [running]
    assert jobs.search_jobs(all_jobs, "riverside") == [pending]
    assert jobs.search_jobs(all_jobs, "job-002") == [running]

    stats = jobs.get_job_stats(all_jobs)
    assert stats["total"] == 3
    assert stats["Completed"] == 1
    assert stats["unsynced"] == 3

    metrics = jobs.get_job_metrics(all_jobs)
    assert metrics["completion_rate"] == 33.3
    assert metrics["average_duration_seconds"] == 1800
    assert metrics["cost_variance"] == -50.0


def test_timer_arithmetic(clock):
    timer = jobs.start_timer("JOB-001", clock.now())
    clock.advance(100)
    paused = jobs.pause_timer(timer, clock.now())
    clock.advance(500)

    assert jobs.timer_elapsed(paused, clock.now()) == 100

    resumed = jobs.resume_timer(paused, clock.now())
    clock.advance(20)
    assert jobs.timer_elapsed(resumed, clock.now()) == 120


def test_timer_refuses_second_running_job(clock):
    timer = jobs.start_timer("JOB-001", clock.now())

    with pytest.raises(ValidationError):
        jobs.start_timer("JOB-002", clock.now(), timer)
    assert jobs.start_timer("JOB-001", clock.now(), timer) is timer


def test_timer_refuses_to_replace_a_paused_job(clock):
    timer = jobs.start_timer("JOB-001", clock.now())
    clock.advance(30)
    paused = jobs.pause_timer(timer, clock.now())

    with pytest.raises(ValidationError):
        jobs.start_timer("JOB-002", clock.now(), paused)

    clock.advance(10)
    restarted = jobs.start_timer("JOB-001", clock.now(), paused)
    assert restarted.is_running is True
    assert jobs.timer_elapsed(restarted, clock.now()) == 30
