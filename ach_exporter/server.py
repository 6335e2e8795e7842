"""HTTP trigger for the export job.

``POST /run`` starts one job in the background and returns immediately; a
second request while a job is in flight is acknowledged but not started.
``/status`` and ``/last`` report the outcome of the most recent run,
including the failure kind so operators can tell a missing 2FA email
(``code_timeout``) from a code the portal refused (``code_rejected``).
"""

from __future__ import annotations

import asyncio
import secrets
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from ach_exporter.config import Config, get_config
from ach_exporter.json_logger import JsonLogger, get_logger, log_event
from ach_exporter.pipeline import JobOutcome, PrerequisiteError, run_net_ach_once

Runner = Callable[[], Awaitable[JobOutcome]]


class StatusResponse(BaseModel):
    ok: bool = True
    running: bool
    last_run: Optional[Dict[str, Any]] = None
    last_error: Optional[str] = None


class LastRunResponse(BaseModel):
    running: bool
    last_run: Optional[Dict[str, Any]] = None
    last_error: Optional[str] = None


class RunResponse(BaseModel):
    ok: bool = True
    accepted: Optional[bool] = None
    started_at: Optional[str] = None
    message: Optional[str] = None


class CancelResponse(BaseModel):
    ok: bool
    cancelled: bool
    message: Optional[str] = None


class JobState:
    """Run flag and last outcome for the single job slot."""

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.running = False
        self.started_at: datetime | None = None
        self.last_run: Dict[str, Any] | None = None
        self.last_error: str | None = None
        self.task: asyncio.Task[None] | None = None


async def _run_job(state: JobState, runner: Runner, logger: JsonLogger) -> None:
    try:
        outcome = await runner()
        state.last_run = outcome.as_dict()
        state.last_error = outcome.error
    except PrerequisiteError as exc:
        state.last_run = {"status": "error", "failure_kind": "prerequisites", "error": str(exc)}
        state.last_error = str(exc)
    except asyncio.CancelledError:
        state.last_run = {"status": "cancelled", "failure_kind": "cancelled", "error": "cancelled by operator"}
        state.last_error = "cancelled by operator"
        log_event(logger=logger, phase="server", status="warn", message="Job cancelled")
        raise
    except Exception as exc:
        state.last_run = {"status": "error", "failure_kind": "unexpected", "error": str(exc)}
        state.last_error = str(exc)
        log_event(
            logger=logger,
            phase="server",
            status="error",
            message="Job crashed",
            error=str(exc),
            exc_type=type(exc).__name__,
        )
    finally:
        state.running = False
        state.task = None
        log_event(logger=logger, phase="server", message="Job finished", last_run=state.last_run)


def create_app(
    *,
    config: Config | None = None,
    runner: Runner | None = None,
    state: JobState | None = None,
    logger: JsonLogger | None = None,
) -> FastAPI:
    app_config = config or get_config()
    job_state = state or JobState()
    server_logger = logger or get_logger()
    job_runner: Runner = runner or (lambda: run_net_ach_once(app_config))

    app = FastAPI(title="Net ACH Exporter", description="Trigger for the Elevate Net ACH export job")
    app.state.job = job_state

    def require_api_key(x_api_key: Optional[str] = Header(None)) -> None:
        expected = app_config.job_api_key
        if not expected:
            return
        if not x_api_key or not secrets.compare_digest(x_api_key, expected):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unauthorized")

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code == status.HTTP_404_NOT_FOUND:
            return JSONResponse({"ok": False, "error": "not found"}, status_code=exc.status_code)
        return JSONResponse({"ok": False, "error": exc.detail}, status_code=exc.status_code)

    def _status() -> StatusResponse:
        return StatusResponse(
            running=job_state.running,
            last_run=job_state.last_run,
            last_error=job_state.last_error,
        )

    @app.get("/health", response_model=StatusResponse)
    async def health() -> StatusResponse:
        return _status()

    @app.get("/status", response_model=StatusResponse)
    async def job_status() -> StatusResponse:
        return _status()

    @app.get("/last", response_model=LastRunResponse)
    async def last() -> LastRunResponse:
        return LastRunResponse(
            running=job_state.running,
            last_run=job_state.last_run,
            last_error=job_state.last_error,
        )

    @app.post(
        "/run",
        status_code=status.HTTP_202_ACCEPTED,
        response_model=RunResponse,
        response_model_exclude_none=True,
        dependencies=[Depends(require_api_key)],
    )
    async def run(response: Response) -> RunResponse:
        async with job_state.lock:
            if job_state.running:
                response.status_code = status.HTTP_200_OK
                return RunResponse(message="already running")
            job_state.running = True
            job_state.started_at = datetime.now(timezone.utc)
            job_state.task = asyncio.create_task(_run_job(job_state, job_runner, server_logger))
        log_event(logger=server_logger, phase="server", message="Job accepted")
        return RunResponse(accepted=True, started_at=job_state.started_at.isoformat())

    @app.post(
        "/cancel",
        status_code=status.HTTP_202_ACCEPTED,
        response_model=CancelResponse,
        response_model_exclude_none=True,
        dependencies=[Depends(require_api_key)],
    )
    async def cancel(response: Response) -> CancelResponse:
        async with job_state.lock:
            task = job_state.task
            if not job_state.running or task is None or task.done():
                response.status_code = status.HTTP_409_CONFLICT
                return CancelResponse(ok=False, cancelled=False, message="no job running")
            task.cancel()
        log_event(logger=server_logger, phase="server", status="warn", message="Job cancel requested")
        return CancelResponse(ok=True, cancelled=True)

    return app


def run_server(config: Config | None = None) -> None:
    app_config = config or get_config()
    logger = get_logger()
    log_event(
        logger=logger,
        phase="server",
        message="Trigger server listening",
        host=app_config.job_host,
        port=app_config.job_port,
        api_key_required=bool(app_config.job_api_key),
    )
    uvicorn.run(
        create_app(config=app_config, logger=logger),
        host=app_config.job_host,
        port=app_config.job_port,
        log_level="info",
    )
