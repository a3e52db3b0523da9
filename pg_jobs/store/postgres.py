import asyncio
import datetime
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

import asyncpg

from ..errors import InvalidStateTransition, NotFoundError, PersistenceError
from ..job_types import (
    CANCELLABLE_STATUSES,
    Job,
    JobStatus,
    Notification,
    NotificationDraft,
    NotificationType,
    truncate_error,
)
from ..payloads import BaseJobInput, JobType, dump_job_input, parse_job_input
from ..retry_policy import RetryDecision, utcnow
from .base import (
    DEFAULT_RETENTION_STATUSES,
    JobStore,
    check_progress,
    validate_new_job,
)

logger = logging.getLogger(__name__)

# Serialises claims across every connection in the cluster
CLAIM_LOCK_KEY = 0x6A6F6273

TRANSIENT_ERRORS = (
    asyncpg.PostgresConnectionError,
    asyncpg.InterfaceError,
    asyncpg.TooManyConnectionsError,
    ConnectionError,
    OSError,
)

_JOB_COLUMNS = """
    id, owner_id, type, status, priority, progress, current_step,
    input::text AS input, result::text AS result, error, metadata::text AS metadata,
    retry_count, max_retries, next_retry_at,
    created_at, updated_at, started_at, completed_at
"""

_NOTIFICATION_COLUMNS = """
    id, owner_id, job_id, type, title, message, action_url, action_text,
    auto_dismiss, dismiss_at, created_at
"""

_CANCELLABLE = [s.value for s in CANCELLABLE_STATUSES]


def _load_json(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    return json.loads(raw) if raw is not None else None


def _dump_json(value: Optional[Dict[str, Any]]) -> Optional[str]:
    return json.dumps(value) if value is not None else None


def _job_from_row(row) -> Job:
    return Job(
        id=row['id'],
        owner_id=row['owner_id'],
        type=JobType(row['type']),
        status=JobStatus(row['status']),
        priority=row['priority'],
        input=parse_job_input(row['input']),
        max_retries=row['max_retries'],
        created_at=row['created_at'],
        updated_at=row['updated_at'],
        progress=row['progress'],
        current_step=row['current_step'],
        result=_load_json(row['result']),
        error=row['error'],
        metadata=_load_json(row['metadata']),
        retry_count=row['retry_count'],
        next_retry_at=row['next_retry_at'],
        started_at=row['started_at'],
        completed_at=row['completed_at'],
    )


def _notification_from_row(row) -> Notification:
    return Notification(
        id=row['id'],
        owner_id=row['owner_id'],
        job_id=row['job_id'],
        type=NotificationType(row['type']),
        title=row['title'],
        message=row['message'],
        created_at=row['created_at'],
        action_url=row['action_url'],
        action_text=row['action_text'],
        auto_dismiss=row['auto_dismiss'],
        dismiss_at=row['dismiss_at'],
    )


class PostgresJobStore(JobStore):
    """
    Job store backed by PostgreSQL through an asyncpg pool.

    Claims run in one transaction that takes a transaction-level advisory lock,
    counts RUNNING rows and updates the chosen row with ``FOR UPDATE SKIP
    LOCKED``, so concurrent schedulers never exceed the running cap or claim
    the same job twice.
    """

    def __init__(self,
                 db_pool: asyncpg.Pool,
                 clock: Callable[[], datetime.datetime] = utcnow,
                 max_attempts: int = 3):
        self.db_pool = db_pool
        self.clock = clock
        self.max_attempts = max_attempts

    async def initialize(self) -> None:
        """Create tables and indexes if they do not exist"""
        await self._execute_with_retry("""
            CREATE TABLE IF NOT EXISTS background_jobs (
                id BIGSERIAL PRIMARY KEY,
                owner_id TEXT NOT NULL,
                type TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'queued'
                    CHECK (status IN ('queued', 'running', 'retrying', 'completed', 'failed', 'cancelled')),
                priority INTEGER NOT NULL DEFAULT 5 CHECK (priority BETWEEN 1 AND 10),
                progress INTEGER NOT NULL DEFAULT 0 CHECK (progress BETWEEN 0 AND 100),
                current_step TEXT,
                input JSONB NOT NULL,
                result JSONB,
                error TEXT,
                metadata JSONB,
                retry_count INTEGER NOT NULL DEFAULT 0,
                max_retries INTEGER NOT NULL DEFAULT 3 CHECK (max_retries >= 0),
                next_retry_at TIMESTAMPTZ,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                started_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ
            );
        """)

        await self._execute_with_retry("""
            CREATE INDEX IF NOT EXISTS idx_background_jobs_queued
            ON background_jobs(priority ASC, created_at ASC, id ASC)
            WHERE status = 'queued';
        """)

        await self._execute_with_retry("""
            CREATE INDEX IF NOT EXISTS idx_background_jobs_retrying
            ON background_jobs(next_retry_at, priority)
            WHERE status = 'retrying';
        """)

        await self._execute_with_retry("""
            CREATE INDEX IF NOT EXISTS idx_background_jobs_owner
            ON background_jobs(owner_id, created_at DESC);
        """)

        await self._execute_with_retry("""
            CREATE INDEX IF NOT EXISTS idx_background_jobs_retention
            ON background_jobs(status, completed_at)
            WHERE completed_at IS NOT NULL;
        """)

        await self._execute_with_retry("""
            CREATE TABLE IF NOT EXISTS job_notifications (
                id BIGSERIAL PRIMARY KEY,
                owner_id TEXT NOT NULL,
                job_id BIGINT NOT NULL REFERENCES background_jobs(id) ON DELETE CASCADE,
                type TEXT NOT NULL,
                title TEXT NOT NULL,
                message TEXT NOT NULL,
                action_url TEXT,
                action_text TEXT,
                auto_dismiss BOOLEAN NOT NULL DEFAULT FALSE,
                dismiss_at TIMESTAMPTZ,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );
        """)

        await self._execute_with_retry("""
            CREATE INDEX IF NOT EXISTS idx_job_notifications_owner
            ON job_notifications(owner_id, created_at DESC);
        """)

        await self._execute_with_retry("""
            CREATE INDEX IF NOT EXISTS idx_job_notifications_dismiss
            ON job_notifications(dismiss_at)
            WHERE auto_dismiss;
        """)
        logger.debug("Job store schema initialized")

    async def close(self) -> None:
        await self.db_pool.close()

    async def _with_retry(self, operation: Callable[[], Awaitable[Any]], max_retries: Optional[int] = None):
        """Run a database operation, retrying transient connection failures"""
        max_retries = max_retries or self.max_attempts
        for attempt in range(max_retries):
            try:
                return await operation()
            except TRANSIENT_ERRORS as e:
                if attempt < max_retries - 1:
                    # Exponential backoff for retries
                    delay = (2 ** attempt) * 0.1  # 0.1s, 0.2s, 0.4s
                    logger.warning(f"Database operation failed (attempt {attempt + 1}/{max_retries}), "
                                   f"retrying in {delay}s: {e}")
                    await asyncio.sleep(delay)
                else:
                    logger.error(f"Database operation failed permanently after {max_retries} attempts: {e}")
                    raise PersistenceError(f"Database unavailable: {e}") from e
            except asyncpg.PostgresError as e:
                logger.error(f"Database operation rejected: {e}")
                raise PersistenceError(str(e)) from e

    async def _execute_with_retry(self, query: str, *args) -> List[asyncpg.Record]:
        return await self._with_retry(lambda: self.db_pool.fetch(query, *args))

    async def enqueue(self,
                      owner_id: str,
                      job_type: JobType,
                      job_input: BaseJobInput,
                      priority: int,
                      max_retries: int) -> int:
        validate_new_job(owner_id, job_type, job_input, priority, max_retries)
        now = self.clock()
        rows = await self._execute_with_retry("""
            INSERT INTO background_jobs
                (owner_id, type, status, priority, input, max_retries, created_at, updated_at)
            VALUES ($1, $2, 'queued', $3, $4::jsonb, $5, $6, $6)
            RETURNING id;
        """, owner_id, JobType(job_type).value, priority, dump_job_input(job_input), max_retries, now)
        job_id = rows[0]['id']
        logger.debug(f"Queued job {job_id} ({JobType(job_type).value}) for owner {owner_id}")
        return job_id

    async def get(self, job_id: int) -> Job:
        rows = await self._execute_with_retry(
            f"SELECT {_JOB_COLUMNS} FROM background_jobs WHERE id = $1;", job_id
        )
        if not rows:
            raise NotFoundError(job_id)
        return _job_from_row(rows[0])

    async def list_by_owner(self, owner_id: str, limit: int = 20, offset: int = 0) -> List[Job]:
        rows = await self._execute_with_retry(f"""
            SELECT {_JOB_COLUMNS} FROM background_jobs
            WHERE owner_id = $1
            ORDER BY created_at DESC, id DESC
            LIMIT $2 OFFSET $3;
        """, owner_id, limit, offset)
        return [_job_from_row(row) for row in rows]

    async def list_active_by_owner(self, owner_id: str) -> List[Job]:
        rows = await self._execute_with_retry(f"""
            SELECT {_JOB_COLUMNS} FROM background_jobs
            WHERE owner_id = $1 AND status = 'running'
            ORDER BY created_at DESC, id DESC;
        """, owner_id)
        return [_job_from_row(row) for row in rows]

    async def list_jobs(self, owner_id: Optional[str] = None) -> List[Job]:
        rows = await self._execute_with_retry(f"""
            SELECT {_JOB_COLUMNS} FROM background_jobs
            WHERE $1::text IS NULL OR owner_id = $1
            ORDER BY created_at DESC, id DESC;
        """, owner_id)
        return [_job_from_row(row) for row in rows]

    async def list_running(self) -> List[Job]:
        rows = await self._execute_with_retry(f"""
            SELECT {_JOB_COLUMNS} FROM background_jobs
            WHERE status = 'running'
            ORDER BY id;
        """)
        return [_job_from_row(row) for row in rows]

    async def update_progress(self,
                              job_id: int,
                              progress: int,
                              step: Optional[str] = None,
                              metadata: Optional[Dict[str, Any]] = None) -> bool:
        check_progress(progress)
        rows = await self._execute_with_retry("""
            UPDATE background_jobs
            SET progress = GREATEST(progress, LEAST($2, 99)),
                current_step = COALESCE($3, current_step),
                metadata = COALESCE($4::jsonb, metadata),
                updated_at = $5
            WHERE id = $1 AND status = 'running'
            RETURNING id;
        """, job_id, progress, step, _dump_json(metadata), self.clock())
        if rows:
            return True
        exists = await self._execute_with_retry("SELECT 1 FROM background_jobs WHERE id = $1;", job_id)
        if not exists:
            raise NotFoundError(job_id)
        logger.debug(f"Ignoring progress for job {job_id}: no longer running")
        return False

    async def claim_next_eligible(self, max_running: Optional[int] = None) -> Optional[Job]:
        async def claim():
            now = self.clock()
            async with self.db_pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute("SELECT pg_advisory_xact_lock($1);", CLAIM_LOCK_KEY)
                    if max_running is not None:
                        running = await conn.fetchval(
                            "SELECT COUNT(*) FROM background_jobs WHERE status = 'running';"
                        )
                        if running >= max_running:
                            return None
                    return await conn.fetchrow(f"""
                        WITH to_claim AS (
                            SELECT id AS claim_id
                            FROM background_jobs
                            WHERE status = 'queued'
                               OR (status = 'retrying' AND next_retry_at <= $1)
                            ORDER BY CASE WHEN status = 'queued' THEN 0 ELSE 1 END,
                                     priority ASC,
                                     CASE WHEN status = 'queued' THEN created_at ELSE next_retry_at END ASC,
                                     id ASC
                            FOR UPDATE SKIP LOCKED
                            LIMIT 1
                        )
                        UPDATE background_jobs
                        SET status = 'running',
                            started_at = $1,
                            next_retry_at = NULL,
                            updated_at = $1
                        FROM to_claim
                        WHERE id = to_claim.claim_id
                        RETURNING {_JOB_COLUMNS};
                    """, now)

        row = await self._with_retry(claim)
        return _job_from_row(row) if row is not None else None

    async def mark_completed(self, job_id: int, result: Dict[str, Any]) -> Optional[Job]:
        now = self.clock()
        rows = await self._execute_with_retry(f"""
            UPDATE background_jobs
            SET status = 'completed',
                progress = 100,
                result = $2::jsonb,
                error = NULL,
                completed_at = $3,
                updated_at = $3
            WHERE id = $1 AND status = 'running'
            RETURNING {_JOB_COLUMNS};
        """, job_id, json.dumps(result), now)
        return _job_from_row(rows[0]) if rows else None

    async def mark_failed_or_retrying(self,
                                      job_id: int,
                                      error_message: str,
                                      decision: RetryDecision) -> Optional[Job]:
        now = self.clock()
        if decision.retry:
            rows = await self._execute_with_retry(f"""
                UPDATE background_jobs
                SET status = 'retrying',
                    retry_count = retry_count + 1,
                    error = $2,
                    next_retry_at = $3,
                    updated_at = $4
                WHERE id = $1 AND status = 'running'
                RETURNING {_JOB_COLUMNS};
            """, job_id, truncate_error(error_message), decision.next_retry_at, now)
        else:
            rows = await self._execute_with_retry(f"""
                UPDATE background_jobs
                SET status = 'failed',
                    retry_count = retry_count + 1,
                    error = $2,
                    next_retry_at = NULL,
                    completed_at = $3,
                    updated_at = $3
                WHERE id = $1 AND status = 'running'
                RETURNING {_JOB_COLUMNS};
            """, job_id, truncate_error(error_message), now)
        return _job_from_row(rows[0]) if rows else None

    async def mark_cancelled(self, job_id: int) -> Job:
        now = self.clock()
        rows = await self._execute_with_retry(f"""
            UPDATE background_jobs
            SET status = 'cancelled',
                next_retry_at = NULL,
                completed_at = $2,
                updated_at = $2
            WHERE id = $1 AND status = ANY($3::text[])
            RETURNING {_JOB_COLUMNS};
        """, job_id, now, _CANCELLABLE)
        if rows:
            return _job_from_row(rows[0])

        current = await self._execute_with_retry("SELECT status FROM background_jobs WHERE id = $1;", job_id)
        if not current:
            raise NotFoundError(job_id)
        raise InvalidStateTransition(job_id, current[0]['status'], JobStatus.CANCELLED.value)

    async def count_running(self) -> int:
        rows = await self._execute_with_retry(
            "SELECT COUNT(*) AS running FROM background_jobs WHERE status = 'running';"
        )
        return rows[0]['running']

    async def delete_terminal_older_than(self,
                                         cutoff: datetime.datetime,
                                         statuses: Iterable[JobStatus] = DEFAULT_RETENTION_STATUSES) -> int:
        statuses = [JobStatus(s).value for s in statuses if JobStatus(s).is_terminal]
        if not statuses:
            return 0
        # job_notifications rows go with their job (ON DELETE CASCADE)
        rows = await self._execute_with_retry("""
            DELETE FROM background_jobs
            WHERE status = ANY($1::text[])
            AND completed_at IS NOT NULL
            AND completed_at < $2
            RETURNING id;
        """, statuses, cutoff)
        return len(rows)

    async def create_notification(self, draft: NotificationDraft) -> Notification:
        rows = await self._execute_with_retry(f"""
            INSERT INTO job_notifications
                (owner_id, job_id, type, title, message, action_url, action_text,
                 auto_dismiss, dismiss_at, created_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            RETURNING {_NOTIFICATION_COLUMNS};
        """, draft.owner_id, draft.job_id, draft.type.value, draft.title, draft.message,
            draft.action_url, draft.action_text, draft.auto_dismiss,
            draft.dismiss_at if draft.auto_dismiss else None, self.clock())
        return _notification_from_row(rows[0])

    async def list_notifications(self, owner_id: str, limit: int = 20, offset: int = 0) -> List[Notification]:
        rows = await self._execute_with_retry(f"""
            SELECT {_NOTIFICATION_COLUMNS} FROM job_notifications
            WHERE owner_id = $1
            ORDER BY created_at DESC, id DESC
            LIMIT $2 OFFSET $3;
        """, owner_id, limit, offset)
        return [_notification_from_row(row) for row in rows]

    async def delete_expired_notifications(self, now: datetime.datetime) -> int:
        rows = await self._execute_with_retry("""
            DELETE FROM job_notifications
            WHERE auto_dismiss AND dismiss_at IS NOT NULL AND dismiss_at < $1
            RETURNING id;
        """, now)
        return len(rows)
