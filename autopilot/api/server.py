"""FastAPI layer over the task orchestrator.

This module only marshals requests into Orchestrator calls:
- Task submission, inspection and the approval gate
- Ad hoc validation outside a task lifecycle
- Audit trail and health endpoints

Architecture Notes:
- Caller identity comes from the ``X-User-Id`` header. Authentication
  is handled upstream; this layer only enforces task ownership.
- Tasks run as asyncio tasks on the server's event loop. Tasks left
  mid-flight by a previous server are recovered on startup.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field
from starlette.concurrency import run_in_threadpool

from autopilot import __version__
from autopilot.core.errors import AutopilotError, RateLimitExceeded
from autopilot.core.models import Task
from autopilot.core.orchestrator import Orchestrator

logger = logging.getLogger(__name__)

router = APIRouter()


# ========== API Models ==========


class SubmitRequest(BaseModel):
    """Request to start an autonomous task"""

    model_config = ConfigDict(populate_by_name=True)

    prompt: str
    auto_approve: bool = Field(default=False, alias="autoApprove")


class SubmitResponse(BaseModel):
    task_id: str = Field(serialization_alias="taskId")
    status: str


class RejectRequest(BaseModel):
    reason: str = ""


class ValidateRequest(BaseModel):
    """Files to check, relative to the repository root"""

    files: list[str] = Field(..., min_length=1)


class TaskSummary(BaseModel):
    id: str
    status: str
    prompt: str
    error: str | None = None
    created_at: str
    updated_at: str


def _summary(task: Task) -> TaskSummary:
    return TaskSummary(
        id=task.id,
        status=task.status.value,
        prompt=task.prompt,
        error=task.error,
        created_at=task.created_at.isoformat(),
        updated_at=task.updated_at.isoformat(),
    )


def _projection(task: Task) -> dict[str, Any]:
    return task.model_dump(mode="json")


# ========== Dependencies ==========


def get_orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


def require_user(x_user_id: str | None = Header(default=None)) -> str:
    """Caller id from the X-User-Id header."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=400, detail="X-User-Id header is required")
    return x_user_id.strip()


# ========== Task Endpoints ==========


@router.post("/tasks", status_code=202, response_model=SubmitResponse)
async def submit_task(
    body: SubmitRequest,
    user: str = Depends(require_user),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> SubmitResponse:
    """Start a task; work continues after the response is sent."""
    task = await orchestrator.submit(body.prompt, user, auto_approve=body.auto_approve)
    return SubmitResponse(task_id=task.id, status=task.status.value)


@router.get("/tasks")
def list_tasks(
    user: str = Depends(require_user),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> list[TaskSummary]:
    """List the caller's tasks, newest first."""
    return [_summary(t) for t in orchestrator.list_tasks(owner=user)]


@router.get("/tasks/{task_id}")
def get_task(
    task_id: str,
    user: str = Depends(require_user),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    return _projection(orchestrator.get_task(task_id, owner=user))


@router.post("/tasks/{task_id}/approve")
async def approve_task(
    task_id: str,
    user: str = Depends(require_user),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Apply a validated task. Only valid from awaiting_approval."""
    return _projection(await orchestrator.approve(task_id, owner=user))


@router.post("/tasks/{task_id}/reject")
async def reject_task(
    task_id: str,
    body: RejectRequest | None = None,
    user: str = Depends(require_user),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    reason = body.reason if body else ""
    return _projection(await orchestrator.reject(task_id, reason, owner=user))


@router.post("/tasks/{task_id}/cancel")
async def cancel_task(
    task_id: str,
    user: str = Depends(require_user),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    return _projection(await orchestrator.cancel(task_id, owner=user))


@router.post("/tasks/{task_id}/rollback")
async def rollback_task(
    task_id: str,
    user: str = Depends(require_user),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Revert a completed task's changes from its snapshot."""
    return _projection(await orchestrator.rollback(task_id, owner=user))


@router.get("/tasks/{task_id}/events")
def get_task_events(
    task_id: str,
    user: str = Depends(require_user),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> list[dict[str, Any]]:
    return [e.model_dump(mode="json") for e in orchestrator.get_events(task_id, owner=user)]


# ========== Validation, Audit, Health ==========


@router.post("/validate")
async def validate_files(
    body: ValidateRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Diagnostics and tests for existing files, outside any task."""
    report = await orchestrator.validate_files(body.files)
    return report.model_dump(mode="json")


@router.get("/audit")
def get_audit_log(
    limit: int = Query(default=100, ge=1, le=1000),
    operation: str | None = None,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> list[dict[str, Any]]:
    return [e.model_dump(mode="json") for e in orchestrator.get_audit_log(limit, operation)]


@router.get("/health")
async def health(orchestrator: Orchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    remaining = await run_in_threadpool(orchestrator.tools.get_remaining_operations)
    return {"status": "ok", "version": __version__, "remaining_operations": remaining}


# ========== Error Mapping ==========


async def _autopilot_error_handler(request: Request, exc: Exception) -> Response:
    """Translate core errors into HTTP errors by their ``http_status``."""
    assert isinstance(exc, AutopilotError)
    headers = None
    if isinstance(exc, RateLimitExceeded) and exc.retry_after:
        headers = {"Retry-After": str(max(1, round(exc.retry_after)))}
    if exc.http_status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return await http_exception_handler(
        request,
        HTTPException(
            status_code=exc.http_status,
            detail={"error": type(exc).__name__, "message": str(exc)},
            headers=headers,
        ),
    )


async def _request_validation_handler(request: Request, exc: Exception) -> Response:
    assert isinstance(exc, RequestValidationError)
    return JSONResponse(status_code=400, content={"detail": exc.errors()})


async def _unexpected_error_handler(request: Request, exc: Exception) -> Response:
    logger.exception(f"{request.method} {request.url.path} raised an unexpected error")
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def create_app(orchestrator: Orchestrator | None = None, repo_path: Path | None = None) -> FastAPI:
    """Build the application around ``orchestrator``.

    Without one, an orchestrator is wired from ``repo_path`` (default: the
    current directory).
    """
    orchestrator = orchestrator or Orchestrator.from_repo(repo_path or Path.cwd())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        requeued = await orchestrator.start()
        if requeued:
            logger.info(f"Resumed {len(requeued)} interrupted task(s)")
        yield

    app = FastAPI(
        title="Autopilot API",
        description="Autonomous change requests with an approval gate",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator
    app.add_exception_handler(AutopilotError, _autopilot_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
    app.add_exception_handler(Exception, _unexpected_error_handler)
    app.include_router(router)
    return app
