import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timezone
import logging
import time
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from schedule_engine.db import engine
from schedule_engine.errors import ApiError, ConfigurationError, TransientStorageError, error_response, get_request_id
from schedule_engine.logging_utils import setup_json_logging
from schedule_engine.routers import jobs, schedules
from schedule_engine.services.job_queue import run_sweep_tick
from schedule_engine.services.schema_guard import SchemaGuardResult, verify_runtime_schema
from schedule_engine.settings import get_cors_origins, get_settings

setup_json_logging()
logger = logging.getLogger("schedule_engine.request")
sweep_worker_logger = logging.getLogger("schedule_engine.sweep_worker")
settings = get_settings()

MIN_SWEEP_INTERVAL_SECONDS = 15

_HTTP_ERROR_CODES = {404: "NOT_FOUND", 405: "METHOD_NOT_ALLOWED"}


class SweepWorker:
    """Background loop that dispatches due sweeps and drains the job queue."""

    def __init__(self, interval_seconds: int) -> None:
        self.interval_seconds = max(MIN_SWEEP_INTERVAL_SECONDS, int(interval_seconds))
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop())
        sweep_worker_logger.info(
            "sweep_worker_started",
            extra={"interval_seconds": self.interval_seconds, "concurrency": settings.sweep_concurrency},
        )

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is None:
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                summary = await asyncio.to_thread(run_sweep_tick, datetime.now(timezone.utc))
            except Exception:
                sweep_worker_logger.exception("sweep_worker_tick_failed")
            else:
                if summary.get("enqueued") or summary.get("processed"):
                    sweep_worker_logger.info("sweep_worker_tick", extra=summary)

            with suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)


async def _guard_schema(app: FastAPI) -> None:
    result = await asyncio.to_thread(verify_runtime_schema, engine)
    app.state.schema_guard_result = result
    if result.ok:
        sweep_worker_logger.info("schema_guard_ok", extra=result.to_dict())
        return

    sweep_worker_logger.error("schema_guard_failed", extra=result.to_dict())
    if settings.schema_guard_strict:
        raise RuntimeError(f"Runtime schema guard failed: {'; '.join(result.issues)}")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    await _guard_schema(app)
    worker = SweepWorker(settings.sweep_worker_interval_seconds)
    app.state.sweep_worker = worker
    if settings.sweep_worker_enabled:
        worker.start()
    try:
        yield
    finally:
        await worker.stop()


app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = request_id

    start = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        response.headers["X-Request-Id"] = request_id
        return response
    finally:
        logger.info(
            "request_complete",
            extra={
                "request_id": request_id,
                "path": request.url.path,
                "method": request.method,
                "status_code": status_code,
                "latency_ms": round((time.perf_counter() - start) * 1000, 2),
            },
        )


@app.exception_handler(ApiError)
async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
    return error_response(request, status_code=exc.status_code, code=exc.code, message=exc.message)


@app.exception_handler(HTTPException)
async def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=_HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR"),
        message=str(exc.detail) if exc.detail else "Request failed.",
    )


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(request, status_code=422, code="VALIDATION_ERROR", message=str(exc.errors()))


@app.exception_handler(ConfigurationError)
async def handle_configuration_error(request: Request, exc: ConfigurationError) -> JSONResponse:
    logger.warning(
        "schedule_configuration_error",
        extra={"request_id": get_request_id(request), "error_code": exc.code, **exc.details},
    )
    return error_response(request, status_code=409, code=exc.code, message=exc.message)


@app.exception_handler(TransientStorageError)
async def handle_transient_storage_error(request: Request, exc: TransientStorageError) -> JSONResponse:
    logger.warning(
        "storage_unavailable",
        extra={"request_id": get_request_id(request), "path": request.url.path},
    )
    return error_response(
        request,
        status_code=503,
        code="STORAGE_UNAVAILABLE",
        message="Storage temporarily unavailable.",
    )


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled_error",
        extra={"request_id": get_request_id(request), "path": request.url.path, "method": request.method},
    )
    return error_response(request, status_code=500, code="INTERNAL_ERROR", message="Unexpected server error.")


app.include_router(schedules.router)
app.include_router(jobs.router)


@app.get("/health")
def health() -> dict[str, Any]:
    schema_guard_result: SchemaGuardResult | None = getattr(app.state, "schema_guard_result", None)
    if schema_guard_result is None:
        schema_guard_result = SchemaGuardResult(
            ok=False,
            checked_at_utc=datetime.now(timezone.utc),
            issues=["SCHEMA_GUARD_NOT_RUN"],
        )
    worker: SweepWorker | None = getattr(app.state, "sweep_worker", None)
    return {
        "status": "ok",
        "schema_guard": schema_guard_result.to_dict(),
        "sweep_worker_enabled": settings.sweep_worker_enabled,
        "sweep_worker_running": bool(worker and worker.running),
    }
