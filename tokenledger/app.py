from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from tokenledger.api.error_handling import register_exception_handlers
from tokenledger.api.routes import router
from tokenledger.logging import get_logger, set_correlation_id
from tokenledger.service.tokens import TokenService

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 5.0
MIN_CLEANUP_INTERVAL_SECONDS = 60

_cleanup_task: asyncio.Task | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime eagerly so bad signing config aborts startup."""
    global _cleanup_task
    from tokenledger.service.runtime import get_runtime

    runtime = get_runtime()
    _cleanup_task = asyncio.create_task(
        _run_token_cleanup(runtime.tokens, runtime.settings.cleanup_interval_seconds)
    )

    yield

    try:
        if _cleanup_task:
            _cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _cleanup_task
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Token Ledger", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of a request with X-Request-ID (or a fresh id)."""

    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    if request.url.path.startswith("/v1/"):
        # Responses carry bearer tokens
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> JSONResponse:
    """Liveness plus a bounded ledger check."""
    from tokenledger.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    if hasattr(runtime.store, "_connect"):
        def _db_ping() -> None:
            with runtime.store._connect() as conn:
                conn.execute("SELECT 1").fetchone()

        try:
            await asyncio.wait_for(asyncio.to_thread(_db_ping), HEALTH_CHECK_TIMEOUT_SECONDS)
            checks["database"] = {"status": "healthy", "type": "postgres"}
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component="database")
            checks["database"] = {"status": "unhealthy", "type": "postgres"}
        except Exception as exc:
            logger.error("health_check_database_failed", error=str(exc))
            checks["database"] = {"status": "unhealthy", "type": "postgres"}
    else:
        checks["database"] = {"status": "healthy", "type": "memory"}

    healthy = all(check["status"] == "healthy" for check in checks.values())
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "version": __version__,
            "checks": checks,
        },
    )


async def _run_token_cleanup(tokens: TokenService, interval_seconds: int) -> None:
    """Background loop that retires expired tokens and purges old revoked rows."""

    interval = max(interval_seconds, MIN_CLEANUP_INTERVAL_SECONDS)
    try:
        while True:
            try:
                await tokens.cleanup_expired_tokens()
                await tokens.purge_revoked_tokens()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("token_cleanup_failed", error=str(exc))
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info("token_cleanup_task_cancelled")


def create_app() -> FastAPI:
    return app
