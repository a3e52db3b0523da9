"""
HTTP API over a ``JobManager``.

The owner of every request is taken from the ``X-Owner-Id`` header; verifying
that identity is left to whatever sits in front of this app.

    manager = JobManager(PostgresJobStore(db_pool), registry)
    app = create_app(manager)
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .errors import InvalidStateTransition, NotFoundError, PersistenceError, ValidationError
from .job_priority import JobPriority
from .job_types import Job
from .manager import JobManager

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 50


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


def get_manager(request: Request) -> JobManager:
    return request.app.state.manager


def get_owner_id(x_owner_id: Optional[str] = Header(default=None)) -> str:
    if not x_owner_id or not x_owner_id.strip():
        raise HTTPException(status_code=401, detail="Unauthorized")
    return x_owner_id


def _parse_priority(value: Any):
    if value is None or isinstance(value, JobPriority):
        return value
    if isinstance(value, str):
        try:
            return JobPriority(value.lower())
        except ValueError as e:
            raise ValidationError(f"Unknown priority '{value}'") from e
    return value


def _owned_job_dict(manager: JobManager, job: Job) -> Dict[str, Any]:
    data = job.to_dict()
    estimate = manager.estimated_completion(job)
    if estimate is not None:
        data["estimatedCompletion"] = estimate.isoformat()
    return data


async def _get_owned_job(manager: JobManager, job_id: int, owner_id: str) -> Job:
    job = await manager.get(job_id)
    if job.owner_id != owner_id:
        raise HTTPException(status_code=403, detail="Access denied")
    return job


def create_app(manager: JobManager, manage_lifecycle: bool = True) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        manager: The job manager serving requests
        manage_lifecycle: Start and stop the manager with the app's lifespan
    """
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_lifecycle:
            await manager.start()
        yield
        if manage_lifecycle:
            await manager.stop()

    app = FastAPI(title="PG Jobs", lifespan=lifespan)
    app.state.manager = manager

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return _error(400, str(exc))

    @app.exception_handler(RequestValidationError)
    async def request_validation_error_handler(request: Request, exc: RequestValidationError):
        return _error(400, "Invalid request")

    @app.exception_handler(InvalidStateTransition)
    async def invalid_transition_handler(request: Request, exc: InvalidStateTransition):
        return _error(400, str(exc))

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return _error(404, "Job not found")

    @app.exception_handler(PersistenceError)
    async def persistence_error_handler(request: Request, exc: PersistenceError):
        logger.error(f"Job store error while handling {request.url.path}: {exc}")
        return _error(503, "Job store unavailable")

    @app.get("/jobs")
    async def list_jobs(limit: int = Query(default=20, ge=1),
                        offset: int = Query(default=0, ge=0),
                        active_only: bool = False,
                        include_stats: bool = False,
                        owner_id: str = Depends(get_owner_id),
                        manager: JobManager = Depends(get_manager)):
        limit = min(limit, MAX_PAGE_SIZE)
        if active_only:
            jobs = await manager.list_active_jobs(owner_id)
            pagination = None
        else:
            jobs = await manager.list_jobs(owner_id, limit, offset)
            pagination = {
                "limit": limit,
                "offset": offset,
                "total": len(jobs),
                "hasMore": len(jobs) == limit,
            }

        data = {"jobs": [job.to_dict() for job in jobs], "pagination": pagination}
        if include_stats:
            statistics = await manager.get_statistics(owner_id)
            data["statistics"] = statistics.to_dict()
        return {"success": True, "data": data}

    @app.post("/jobs")
    async def create_job(body: Dict[str, Any] = Body(...),
                         owner_id: str = Depends(get_owner_id),
                         manager: JobManager = Depends(get_manager)):
        job_input = dict(body)
        priority = _parse_priority(job_input.pop("priority", None))
        max_retries = job_input.pop("max_retries", None)
        if "type" not in job_input:
            raise ValidationError("Job type is required")

        job_id = await manager.enqueue(owner_id, job_input, priority=priority, max_retries=max_retries)
        return {
            "success": True,
            "data": {
                "jobId": job_id,
                "status": "queued",
                "message": "Job has been queued for processing",
            },
        }

    # Registered before /jobs/{job_id} so "notifications" is not parsed as an id
    @app.get("/jobs/notifications")
    async def list_notifications(limit: int = Query(default=20, ge=1),
                                 offset: int = Query(default=0, ge=0),
                                 owner_id: str = Depends(get_owner_id),
                                 manager: JobManager = Depends(get_manager)):
        notifications = await manager.list_notifications(owner_id, min(limit, MAX_PAGE_SIZE), offset)
        return {"success": True, "data": {"notifications": [n.to_dict() for n in notifications]}}

    @app.get("/jobs/{job_id}")
    async def get_job(job_id: int,
                      owner_id: str = Depends(get_owner_id),
                      manager: JobManager = Depends(get_manager)):
        job = await _get_owned_job(manager, job_id, owner_id)
        return {"success": True, "data": _owned_job_dict(manager, job)}

    @app.delete("/jobs/{job_id}")
    async def cancel_job(job_id: int,
                         owner_id: str = Depends(get_owner_id),
                         manager: JobManager = Depends(get_manager)):
        await _get_owned_job(manager, job_id, owner_id)
        job = await manager.cancel(job_id)
        return {
            "success": True,
            "data": {
                "id": job.id,
                "status": job.status.value,
                "message": "Job has been cancelled successfully",
            },
        }

    return app
