import asyncio
import os
import time
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from chatbridge.config import settings
from chatbridge.dependencies import build_container, current_container, set_container
from chatbridge.logging_config import get_logger, setup_logging
from chatbridge.routers import brevo_webhook, messages, stream, telegram_webhook
from chatbridge.schemas.api import HealthResponse
from chatbridge.services.alert_service import alert_warning
from chatbridge.services.storage_service import StoreAuthExhaustedError, StoreError

setup_logging(settings.log_level, settings.log_format)

logger = get_logger("main")

app = FastAPI(
    title="Chatbridge API",
    description="Unified inbox for Telegram and Brevo conversations with assistant auto-replies",
    version="0.1.0",
)

cors_origins = ["http://localhost:3000"]
if settings.cors_origin_remote:
    cors_origins.append(settings.cors_origin_remote)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-API-Key"],
    expose_headers=["Content-Length"],
    max_age=86400,
)

app.include_router(brevo_webhook.router)
app.include_router(telegram_webhook.router)
app.include_router(messages.router)
app.include_router(stream.router)

_background_tasks: list[asyncio.Task] = []


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    logger.info(
        "Request handled",
        extra={
            "context": {
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "duration_ms": round((time.perf_counter() - started) * 1000, 1),
            }
        },
    )
    return response


@app.exception_handler(StoreAuthExhaustedError)
async def store_auth_exhausted_handler(request: Request, exc: StoreAuthExhaustedError):
    return JSONResponse(status_code=503, content={"success": False, "message": "Record store unavailable"})


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    logger.error(f"Store error on {request.url.path}: {exc}", extra={"context": {"status": exc.status}})
    return JSONResponse(status_code=500, content={"success": False, "message": "Record store error"})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(status_code=500, content={"success": False, "message": "Internal server error"})


def _are_workers_enabled() -> bool:
    return not os.environ.get("PYTEST_CURRENT_TEST")


@app.on_event("startup")
async def start_services() -> None:
    container = build_container(settings)
    set_container(container)

    try:
        await container.store.authenticate()
    except StoreError as e:
        # store calls re-authenticate on their first rejected request
        logger.error(f"Initial store authentication failed: {e}")
        await alert_warning("Record store login failed at startup", {"url": settings.pocketbase_url, "error": str(e)})

    if not _are_workers_enabled():
        return

    _background_tasks.append(
        asyncio.create_task(container.dedup.run_sweeper(settings.dedup_sweep_interval_seconds))
    )
    if settings.telegram_polling_enabled and settings.telegram_token:
        _background_tasks.append(
            asyncio.create_task(
                container.telegram.run_polling(
                    lambda update: telegram_webhook.process_telegram_update(container, update),
                    timeout=settings.telegram_polling_timeout_seconds,
                )
            )
        )
    logger.info("Background workers started", extra={"context": {"tasks": len(_background_tasks)}})


@app.on_event("shutdown")
async def stop_services() -> None:
    for task in _background_tasks:
        task.cancel()
    for task in _background_tasks:
        try:
            await task
        except asyncio.CancelledError:
            pass
    _background_tasks.clear()

    container = current_container()
    if container is not None:
        await container.aclose()
        set_container(None)


@app.get("/health", response_model=HealthResponse)
async def health():
    container = current_container()
    connected = container is not None and container.store.is_connected
    return HealthResponse(
        status="ok",
        timestamp=datetime.now(timezone.utc).isoformat(),
        service="chatbridge",
        database="connected" if connected else "disconnected",
    )
