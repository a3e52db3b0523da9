from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .job_types import Job, JobStatus
from .payloads import JobType
from .store.base import JobStore

RECENT_JOBS_LIMIT = 10


@dataclass(frozen=True)
class RecentJob:
    id: int
    type: JobType
    status: JobStatus
    created_at: datetime
    completed_at: Optional[datetime]
    duration: Optional[float]

    @classmethod
    def from_job(cls, job: Job) -> 'RecentJob':
        return cls(job.id, job.type, job.status, job.created_at, job.completed_at, job.duration)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "status": self.status.value,
            "createdAt": self.created_at.isoformat(),
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "duration": self.duration,
        }


@dataclass(frozen=True)
class JobStatistics:
    total: int
    by_status: Dict[JobStatus, int]
    by_type: Dict[JobType, int]
    success_rate: float
    average_duration: Optional[float]
    recent_jobs: List[RecentJob] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "byStatus": {status.value: count for status, count in self.by_status.items()},
            "byType": {job_type.value: count for job_type, count in self.by_type.items()},
            "successRate": self.success_rate,
            "averageDuration": self.average_duration,
            "recentJobs": [job.to_dict() for job in self.recent_jobs],
        }


def summarize(jobs: List[Job]) -> JobStatistics:
    """Roll up a snapshot of jobs; pure, so it can be used on any job list"""
    by_status = {status: 0 for status in JobStatus}
    by_type = {job_type: 0 for job_type in JobType}
    for job in jobs:
        by_status[job.status] += 1
        by_type[job.type] += 1

    total = len(jobs)
    success_rate = by_status[JobStatus.COMPLETED] / total if total else 0.0

    durations = [
        job.duration for job in jobs
        if job.status == JobStatus.COMPLETED and job.duration is not None
    ]
    average_duration = sum(durations) / len(durations) if durations else None

    newest = sorted(jobs, key=lambda j: (j.created_at, j.id), reverse=True)[:RECENT_JOBS_LIMIT]
    return JobStatistics(
        total=total,
        by_status=by_status,
        by_type=by_type,
        success_rate=success_rate,
        average_duration=average_duration,
        recent_jobs=[RecentJob.from_job(job) for job in newest],
    )


class StatisticsAggregator:
    """Read-only rollups over the job store"""

    def __init__(self, store: JobStore):
        self.store = store

    async def collect(self, owner_id: Optional[str] = None) -> JobStatistics:
        jobs = await self.store.list_jobs(owner_id)
        return summarize(jobs)
