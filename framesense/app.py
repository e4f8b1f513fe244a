from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from framesense.api.error_handling import register_exception_handlers
from framesense.api.routes import router, webhook_router
from framesense.config import get_settings
from framesense.logging import get_logger, set_correlation_id
from framesense.service.runtime import get_runtime, shutdown_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3

_maintenance_task: asyncio.Task | None = None


async def _run_maintenance(interval_seconds: int) -> None:
    """Sweep expired sessions and roll daily usage on a fixed interval."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(get_runtime().run_maintenance)
        except Exception as exc:
            logger.error("maintenance_failed", error_type=type(exc).__name__, error=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _maintenance_task
    runtime = get_runtime()
    interval = runtime.settings.maintenance_interval_seconds
    if interval > 0:
        _maintenance_task = asyncio.create_task(_run_maintenance(interval))
        logger.info("maintenance_scheduled", interval_seconds=interval)

    yield

    if _maintenance_task:
        _maintenance_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _maintenance_task
        _maintenance_task = None
    shutdown_runtime()
    logger.info("runtime_cleanup_complete")


app = FastAPI(title="FrameSense Backend", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    origins = get_settings().cors_allow_origins
    if origins:
        return origins
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID", "Stripe-Signature"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag the request with a correlation id.

    Taken from ``X-Request-ID`` when the client sends one, generated
    otherwise; logged with every event and echoed back in the response.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    if request.url.path.startswith("/api/"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)
app.include_router(webhook_router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}
    healthy = True
    probe = getattr(runtime.store, "verify_connection", None)
    if probe is None:
        checks["database"] = {"status": "healthy", "type": "memory"}
    else:
        try:
            await asyncio.wait_for(asyncio.to_thread(probe), HEALTH_CHECK_TIMEOUT_SECONDS)
            checks["database"] = {"status": "healthy", "type": "postgres"}
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component="database")
            checks["database"] = {"status": "unhealthy", "type": "postgres"}
            healthy = False
        except Exception as exc:
            logger.error("health_check_database_failed", error=str(exc))
            checks["database"] = {"status": "unhealthy", "type": "postgres"}
            healthy = False
    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
