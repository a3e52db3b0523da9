"""
Unit tests for lifecycle notifications.
"""

from datetime import timedelta

import pytest

from pg_jobs import JobType, LifecycleEvent, NotificationType
from pg_jobs.notifications import NotificationPublisher, result_url
from pg_jobs.payloads import parse_job_input


async def queued_job(store, data):
    job_input = parse_job_input(data)
    job_id = await store.enqueue("user-1", job_input.job_type, job_input, 5, 3)
    return await store.get(job_id)


@pytest.mark.unit
class TestTemplates:

    async def test_started(self, store, clock, performance_input):
        job = await queued_job(store, performance_input)
        draft = NotificationPublisher(store, clock=clock).build(job, LifecycleEvent.STARTED)
        assert draft.type == NotificationType.JOB_STARTED
        assert draft.title == "Job Started"
        assert draft.message == ("Your Performance Analysis job has been queued "
                                 "and will start processing shortly.")
        assert draft.action_url == "/dashboard"
        assert draft.action_text == "View Progress"
        assert draft.auto_dismiss is False

    async def test_completed_dismisses_after_five_minutes(self, store, clock, performance_input):
        job = await queued_job(store, performance_input)
        draft = NotificationPublisher(store, clock=clock).build(job, LifecycleEvent.COMPLETED)
        assert draft.title == "Job Completed"
        assert draft.message == "Your Performance Analysis job has completed successfully."
        assert draft.action_url == "/dashboard/performance"
        assert draft.action_text == "View Results"
        assert draft.auto_dismiss is True
        assert draft.dismiss_at == clock() + timedelta(minutes=5)

    async def test_retrying(self, store, clock, serp_input):
        job = await queued_job(store, serp_input)
        draft = NotificationPublisher(store, clock=clock).build(job, LifecycleEvent.RETRYING)
        assert draft.title == "Job Retrying"
        assert draft.message == "Your SERP Tracking job failed and will retry automatically."
        assert draft.action_text == "View Details"
        assert draft.auto_dismiss is False

    async def test_failed_includes_error(self, store, clock, crawl_input):
        job = await queued_job(store, crawl_input)
        job.error = "DNS lookup failed"
        draft = NotificationPublisher(store, clock=clock).build(job, LifecycleEvent.FAILED)
        assert draft.title == "Job Failed"
        assert draft.message == "Your Website Crawl job failed: DNS lookup failed"
        assert draft.action_url == "/dashboard"
        assert draft.auto_dismiss is False

    async def test_cancelled_dismisses_after_two_minutes(self, store, clock, performance_input):
        job = await queued_job(store, performance_input)
        draft = NotificationPublisher(store, clock=clock).build(job, LifecycleEvent.CANCELLED)
        assert draft.title == "Job Cancelled"
        assert draft.message == "Your Performance Analysis job was cancelled."
        assert draft.action_url is None
        assert draft.dismiss_at == clock() + timedelta(minutes=2)

    def test_result_urls(self):
        assert result_url(JobType.COMPETITOR_MONITORING) == "/dashboard/competitors"
        for job_type in (JobType.WEBSITE_CRAWL, JobType.PERFORMANCE_ANALYSIS,
                         JobType.CONTENT_PERFORMANCE_TRACKING, JobType.SERP_TRACKING):
            assert result_url(job_type) == "/dashboard/performance"


@pytest.mark.unit
class TestPublish:

    async def test_publish_persists(self, store, clock, performance_input):
        job = await queued_job(store, performance_input)
        notification = await NotificationPublisher(store, clock=clock).publish(job, LifecycleEvent.STARTED)
        assert notification.id is not None
        assert notification.job_id == job.id
        assert [n.id for n in await store.list_notifications("user-1")] == [notification.id]

    async def test_publish_is_best_effort(self, store, clock, performance_input, caplog):
        job = await queued_job(store, performance_input)

        class BrokenStore:
            async def create_notification(self, draft):
                raise ConnectionError("database went away")

        publisher = NotificationPublisher(BrokenStore(), clock=clock)
        assert await publisher.publish(job, LifecycleEvent.COMPLETED) is None
        assert "Failed to publish completed notification" in caplog.text

    async def test_custom_dismiss_delays(self, store, clock, performance_input):
        job = await queued_job(store, performance_input)
        publisher = NotificationPublisher(store, completed_dismiss_after=10, clock=clock)
        notification = await publisher.publish(job, LifecycleEvent.COMPLETED)
        assert notification.dismiss_at == clock() + timedelta(seconds=10)
