"""
Unit tests for job state and record types.
"""

from datetime import UTC, datetime, timedelta

import pytest

from pg_jobs import Job, JobStatus, JobType, LifecycleEvent, NotificationType, PerformanceAnalysisInput
from pg_jobs.job_types import ALLOWED_TRANSITIONS, can_transition, truncate_error

CREATED = datetime(2025, 1, 6, 9, 0, tzinfo=UTC)


def make_job(**overrides) -> Job:
    fields = dict(
        id=1,
        owner_id="user-1",
        type=JobType.PERFORMANCE_ANALYSIS,
        status=JobStatus.QUEUED,
        priority=5,
        input=PerformanceAnalysisInput(domain="example.com"),
        max_retries=3,
        created_at=CREATED,
        updated_at=CREATED,
    )
    fields.update(overrides)
    return Job(**fields)


@pytest.mark.unit
class TestTransitions:

    @pytest.mark.parametrize("current,target", [
        (JobStatus.QUEUED, JobStatus.RUNNING),
        (JobStatus.QUEUED, JobStatus.CANCELLED),
        (JobStatus.RUNNING, JobStatus.COMPLETED),
        (JobStatus.RUNNING, JobStatus.FAILED),
        (JobStatus.RUNNING, JobStatus.RETRYING),
        (JobStatus.RUNNING, JobStatus.CANCELLED),
        (JobStatus.RETRYING, JobStatus.RUNNING),
        (JobStatus.RETRYING, JobStatus.CANCELLED),
    ])
    def test_allowed(self, current, target):
        assert can_transition(current, target)

    @pytest.mark.parametrize("current,target", [
        (JobStatus.QUEUED, JobStatus.COMPLETED),
        (JobStatus.RETRYING, JobStatus.FAILED),
        (JobStatus.COMPLETED, JobStatus.RUNNING),
        (JobStatus.FAILED, JobStatus.RETRYING),
        (JobStatus.CANCELLED, JobStatus.QUEUED),
    ])
    def test_forbidden(self, current, target):
        assert not can_transition(current, target)

    def test_terminal_statuses_have_no_exits(self):
        for status in JobStatus:
            assert status.is_terminal == (not ALLOWED_TRANSITIONS[status])


@pytest.mark.unit
class TestJob:

    def test_duration(self):
        job = make_job(started_at=CREATED, completed_at=CREATED + timedelta(seconds=42))
        assert job.duration == 42.0

    def test_duration_unknown(self):
        assert make_job(started_at=CREATED).duration is None

    def test_priority_level(self):
        assert make_job(priority=4).priority_level.value == "high"

    def test_to_dict_shape(self):
        data = make_job(progress=40, current_step="Scoring pages").to_dict()
        assert data["type"] == "performance_analysis"
        assert data["status"] == "queued"
        assert data["currentStep"] == "Scoring pages"
        assert data["input"]["domain"] == "example.com"
        assert data["createdAt"] == CREATED.isoformat()
        assert data["completedAt"] is None
        assert data["retryCount"] == 0


@pytest.mark.unit
class TestMisc:

    def test_lifecycle_event_maps_to_notification_type(self):
        assert LifecycleEvent.RETRYING.notification_type == NotificationType.JOB_RETRYING
        assert LifecycleEvent.STARTED.notification_type == NotificationType.JOB_STARTED

    def test_truncate_error(self):
        assert truncate_error("x" * 5000) == "x" * 1000
        assert truncate_error("") == "Unknown error"
