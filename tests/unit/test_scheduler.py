"""
Unit tests for the scheduler control loop.

Ticks are driven by hand against the in-memory store so every scenario is
deterministic; the frozen clock controls when retries become due.
"""

import asyncio
from datetime import timedelta

import pytest

from pg_jobs import JobPriority, JobStatus, JobType, NotificationType, PersistenceError
from pg_jobs.scheduler import ORPHANED_JOB_ERROR


def notification_types(notifications):
    return [n.type for n in notifications]


@pytest.mark.unit
class TestDispatch:

    async def test_successful_job(self, manager, registry, store, performance_input):
        @registry.processor(JobType.PERFORMANCE_ANALYSIS)
        async def analyse(job_input, progress):
            await progress(50, "Scoring")
            return {"score": 88}

        job_id = await manager.enqueue("user-1", performance_input)
        dispatched = await manager.scheduler.tick()
        assert [job.id for job in dispatched] == [job_id]

        await manager.scheduler.wait_for_idle(timeout=2)
        job = await store.get(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.progress == 100
        assert job.result["score"] == 88
        assert job.result["type"] == "performance_analysis"

        notifications = await store.list_notifications("user-1")
        assert notification_types(notifications) == [NotificationType.JOB_COMPLETED, NotificationType.JOB_STARTED]

    async def test_tick_with_nothing_queued(self, manager):
        assert await manager.scheduler.tick() == []

    async def test_always_failing_job_without_retries(self, manager, registry, store, performance_input):
        attempts = []

        @registry.processor(JobType.PERFORMANCE_ANALYSIS)
        async def broken(job_input, progress):
            attempts.append(1)
            raise ValueError("Intentional test failure")

        job_id = await manager.enqueue("user-1", performance_input, max_retries=0)
        await manager.scheduler.tick()
        await manager.scheduler.wait_for_idle(timeout=2)

        job = await store.get(job_id)
        assert job.status == JobStatus.FAILED
        assert job.error == "Intentional test failure"
        assert job.retry_count == 1
        assert len(attempts) == 1

        # Nothing left to run
        assert await manager.scheduler.tick() == []
        failed = [n for n in await store.list_notifications("user-1") if n.type == NotificationType.JOB_FAILED]
        assert len(failed) == 1
        assert failed[0].message == "Your Performance Analysis job failed: Intentional test failure"

    async def test_timeout_schedules_retry(self, manager, registry, store, config, clock, performance_input):
        config.job_timeout = 0.05

        @registry.processor(JobType.PERFORMANCE_ANALYSIS)
        async def slow(job_input, progress):
            await asyncio.sleep(10)

        job_id = await manager.enqueue("user-1", performance_input, max_retries=2)
        await manager.scheduler.tick()
        await manager.scheduler.wait_for_idle(timeout=2)

        job = await store.get(job_id)
        assert job.status == JobStatus.RETRYING
        assert job.error == "Job timeout"
        assert job.next_retry_at == clock() + timedelta(seconds=config.retry_delay)
        notifications = await store.list_notifications("user-1")
        assert notifications[0].type == NotificationType.JOB_RETRYING

    async def test_retry_then_success(self, manager, registry, store, config, clock, performance_input):
        attempts = []

        @registry.processor(JobType.PERFORMANCE_ANALYSIS)
        async def flaky(job_input, progress):
            attempts.append(1)
            if len(attempts) == 1:
                raise ConnectionError("rate limited")
            return {"score": 50}

        job_id = await manager.enqueue("user-1", performance_input, max_retries=1)
        await manager.scheduler.tick()
        await manager.scheduler.wait_for_idle(timeout=2)
        assert (await store.get(job_id)).status == JobStatus.RETRYING

        # Not due yet
        assert await manager.scheduler.tick() == []

        clock.advance(config.retry_delay)
        assert len(await manager.scheduler.tick()) == 1
        await manager.scheduler.wait_for_idle(timeout=2)

        job = await store.get(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.retry_count == 1
        assert job.next_retry_at is None
        assert len(attempts) == 2

    async def test_retries_exhausted(self, manager, registry, store, config, clock, performance_input):
        @registry.processor(JobType.PERFORMANCE_ANALYSIS)
        async def broken(job_input, progress):
            raise RuntimeError("still broken")

        job_id = await manager.enqueue("user-1", performance_input, max_retries=2)
        for _ in range(3):
            await manager.scheduler.tick()
            await manager.scheduler.wait_for_idle(timeout=2)
            clock.advance(config.retry_delay)

        job = await store.get(job_id)
        assert job.status == JobStatus.FAILED
        assert job.retry_count == 3
        assert await manager.scheduler.tick() == []

    async def test_missing_processor_fails_attempt(self, manager, store, serp_input):
        job_id = await manager.enqueue("user-1", serp_input, max_retries=0)
        await manager.scheduler.tick()
        await manager.scheduler.wait_for_idle(timeout=2)

        job = await store.get(job_id)
        assert job.status == JobStatus.FAILED
        assert "No processor registered" in job.error


@pytest.mark.unit
class TestCapacity:

    async def test_never_exceeds_max_concurrent_jobs(self, manager, registry, store, performance_input):
        release = asyncio.Event()

        @registry.processor(JobType.PERFORMANCE_ANALYSIS)
        async def blocked(job_input, progress):
            await release.wait()
            return {}

        for _ in range(5):
            await manager.enqueue("user-1", performance_input)

        for _ in range(5):
            await manager.scheduler.tick()
            await asyncio.sleep(0)
            assert await store.count_running() <= 3

        jobs = await store.list_jobs("user-1")
        statuses = [job.status for job in jobs]
        assert statuses.count(JobStatus.RUNNING) == 3
        assert statuses.count(JobStatus.QUEUED) == 2

        release.set()
        await manager.scheduler.wait_for_idle(timeout=2)
        assert await store.count_running() == 0

    async def test_dispatches_per_tick(self, manager, registry, store, config, performance_input):
        config.max_dispatches_per_tick = 5

        @registry.processor(JobType.PERFORMANCE_ANALYSIS)
        async def quick(job_input, progress):
            return {}

        for _ in range(5):
            await manager.enqueue("user-1", performance_input)

        dispatched = await manager.scheduler.tick()
        assert len(dispatched) == 3
        await manager.scheduler.wait_for_idle(timeout=2)

    async def test_urgent_job_claimed_first(self, manager, registry, store, clock, performance_input):
        order = []

        @registry.processor(JobType.PERFORMANCE_ANALYSIS)
        async def record(job_input, progress):
            order.append(job_input.domain)
            return {}

        await manager.enqueue("user-1", {**performance_input, "domain": "low.example"}, priority=JobPriority.LOW)
        clock.advance(1)
        await manager.enqueue("user-1", {**performance_input, "domain": "urgent.example"},
                              priority=JobPriority.URGENT)

        first = await manager.scheduler.tick()
        assert first[0].input.domain == "urgent.example"
        await manager.scheduler.wait_for_idle(timeout=2)
        await manager.scheduler.tick()
        await manager.scheduler.wait_for_idle(timeout=2)
        assert order == ["urgent.example", "low.example"]


@pytest.mark.unit
class TestTickGuard:

    async def test_overlapping_tick_is_skipped(self, manager, store, monkeypatch, performance_input):
        entered = asyncio.Event()
        release = asyncio.Event()
        original = store.count_running

        async def slow_count_running():
            entered.set()
            await release.wait()
            return await original()

        monkeypatch.setattr(store, "count_running", slow_count_running)
        await manager.enqueue("user-1", performance_input)

        first = asyncio.create_task(manager.scheduler.tick())
        await entered.wait()
        assert await manager.scheduler.tick() == []

        release.set()
        assert len(await first) == 1
        await manager.scheduler.wait_for_idle(timeout=2)

    async def test_store_error_abandons_tick(self, manager, store, monkeypatch, caplog, performance_input):
        async def unavailable(max_running=None):
            raise PersistenceError("connection refused")

        monkeypatch.setattr(store, "claim_next_eligible", unavailable)
        await manager.enqueue("user-1", performance_input)

        assert await manager.scheduler.tick() == []
        assert "abandoning tick" in caplog.text

    async def test_failed_completion_write_is_retried(self, manager, registry, store, monkeypatch,
                                                      performance_input):
        @registry.processor(JobType.PERFORMANCE_ANALYSIS)
        async def analyse(job_input, progress):
            return {"score": 64}

        original = store.mark_completed
        calls = []

        async def flaky_mark_completed(job_id, result):
            calls.append(job_id)
            if len(calls) == 1:
                raise PersistenceError("connection reset")
            return await original(job_id, result)

        monkeypatch.setattr(store, "mark_completed", flaky_mark_completed)
        job_id = await manager.enqueue("user-1", performance_input)
        await manager.scheduler.tick()
        await manager.scheduler.wait_for_idle(timeout=2)

        assert (await store.get(job_id)).status == JobStatus.RUNNING
        assert manager.scheduler.active_count == 0
        assert job_id in manager.scheduler.unsettled_jobs

        await manager.scheduler.tick()
        job = await store.get(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.result["score"] == 64
        assert manager.scheduler.unsettled_jobs == {}
        assert await store.count_running() == 0

    async def test_failed_failure_write_is_retried(self, manager, registry, store, monkeypatch,
                                                   performance_input):
        @registry.processor(JobType.PERFORMANCE_ANALYSIS)
        async def broken(job_input, progress):
            raise RuntimeError("upstream timeout")

        original = store.mark_failed_or_retrying
        calls = []

        async def flaky_mark_failed(job_id, error_message, decision):
            calls.append(job_id)
            if len(calls) <= 2:
                raise PersistenceError("connection reset")
            return await original(job_id, error_message, decision)

        monkeypatch.setattr(store, "mark_failed_or_retrying", flaky_mark_failed)
        job_id = await manager.enqueue("user-1", performance_input, max_retries=0)
        await manager.scheduler.tick()
        await manager.scheduler.wait_for_idle(timeout=2)

        # Store still down on the next tick
        await manager.scheduler.tick()
        assert (await store.get(job_id)).status == JobStatus.RUNNING

        await manager.scheduler.tick()
        job = await store.get(job_id)
        assert job.status == JobStatus.FAILED
        assert job.error == "upstream timeout"
        assert manager.scheduler.unsettled_jobs == {}

    async def test_unexpected_error_does_not_escape(self, manager, store, monkeypatch, caplog):
        async def broken():
            raise RuntimeError("bug")

        monkeypatch.setattr(store, "count_running", broken)
        assert await manager.scheduler.tick() == []
        assert "Error in scheduler tick" in caplog.text


@pytest.mark.unit
class TestCancellation:

    async def test_result_of_cancelled_job_is_discarded(self, manager, registry, store, performance_input):
        started = asyncio.Event()
        release = asyncio.Event()

        @registry.processor(JobType.PERFORMANCE_ANALYSIS)
        async def long_running(job_input, progress):
            started.set()
            await release.wait()
            return {"score": 1}

        job_id = await manager.enqueue("user-1", performance_input)
        await manager.scheduler.tick()
        await started.wait()

        await manager.cancel(job_id)
        release.set()
        await manager.scheduler.wait_for_idle(timeout=2)

        job = await store.get(job_id)
        assert job.status == JobStatus.CANCELLED
        assert job.result is None
        types = notification_types(await store.list_notifications("user-1"))
        assert NotificationType.JOB_COMPLETED not in types
        assert NotificationType.JOB_CANCELLED in types


@pytest.mark.unit
class TestLifecycle:

    async def test_orphaned_jobs_are_recovered(self, manager, store, clock, performance_input):
        retry_id = await manager.enqueue("user-1", performance_input, max_retries=1)
        fail_id = await manager.enqueue("user-1", performance_input, max_retries=0)
        # Left RUNNING by a previous process
        await store.claim_next_eligible()
        await store.claim_next_eligible()

        recovered = await manager.scheduler.recover_orphaned_jobs()
        assert recovered == 2

        retrying = await store.get(retry_id)
        assert retrying.status == JobStatus.RETRYING
        assert retrying.error == ORPHANED_JOB_ERROR
        failed = await store.get(fail_id)
        assert failed.status == JobStatus.FAILED

    async def test_start_polls_until_stopped(self, manager, registry, store, performance_input):
        done = asyncio.Event()

        @registry.processor(JobType.PERFORMANCE_ANALYSIS)
        async def analyse(job_input, progress):
            done.set()
            return {}

        job_id = await manager.enqueue("user-1", performance_input)
        await manager.start()
        await asyncio.wait_for(done.wait(), timeout=2)
        await manager.scheduler.wait_for_idle(timeout=2)
        await manager.stop()

        assert (await store.get(job_id)).status == JobStatus.COMPLETED
        assert manager.scheduler.poll_task is None

    async def test_stop_cancels_jobs_past_shutdown_timeout(self, manager, registry, store, performance_input):
        started = asyncio.Event()

        @registry.processor(JobType.PERFORMANCE_ANALYSIS)
        async def stuck(job_input, progress):
            started.set()
            await asyncio.sleep(60)

        config = manager.config
        config.job_timeout = 60
        job_id = await manager.enqueue("user-1", performance_input)
        await manager.start()
        await asyncio.wait_for(started.wait(), timeout=2)
        await manager.stop(timeout=0.05)

        assert manager.scheduler.active_count == 0
        # Abandoned; recovered on the next start
        assert (await store.get(job_id)).status == JobStatus.RUNNING
