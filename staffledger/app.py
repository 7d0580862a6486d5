from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI, Request

from staffledger.api.error_handling import register_exception_handlers
from staffledger.api.routes import router
from staffledger.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 2.0

_prune_task: asyncio.Task | None = None


async def _run_revocation_prune(revocations, interval_seconds: int) -> None:
    """Background loop dropping revocation records whose token has expired."""

    interval = max(interval_seconds, 60)
    try:
        while True:
            try:
                pruned = await revocations.prune_expired()
                if pruned:
                    logger.info("revocation_prune_completed", pruned=pruned)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - best-effort housekeeping
                logger.warning("revocation_prune_failed", error=str(exc))
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info("revocation_prune_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the revocation sweep on startup; stop it and release pools on shutdown."""
    global _prune_task
    from staffledger.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        _prune_task = asyncio.create_task(
            _run_revocation_prune(
                runtime.revocations,
                runtime.settings.revocation_prune_interval_seconds,
            )
        )
    except Exception as exc:
        logger.error("startup_failed", error=str(exc))

    yield

    try:
        if _prune_task:
            _prune_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _prune_task
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Staffledger Auth", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def authenticate_request(request: Request, call_next):
    """Attach an Anonymous/Authenticated result to ``request.state.auth``.

    Handlers read it through dependencies; nothing here rejects a request.
    """
    from staffledger.service.runtime import get_runtime

    runtime = get_runtime()
    request.state.auth = await runtime.authenticator.authenticate(
        request.headers.get("Authorization"),
        getattr(request.state, "auth", None),
    )
    return await call_next(request)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Take X-Request-ID from the client or mint one, and echo it back."""
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault(
            "Cache-Control", "no-store, no-cache, must-revalidate, private"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report principal store and revocation store reachability."""
    from staffledger.service.runtime import get_runtime

    checks: Dict[str, Dict[str, Any]] = {}
    overall_healthy = True

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    runtime = get_runtime()
    if hasattr(runtime.store, "verify_connection"):
        db_ok = await _run_bounded("database", runtime.store.verify_connection)
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
        overall_healthy = overall_healthy and db_ok
    else:
        checks["database"] = {"status": "healthy", "type": "memory"}

    if hasattr(runtime.revocations, "verify_connection"):
        redis_ok = await _run_bounded("redis", runtime.revocations.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
        overall_healthy = overall_healthy and redis_ok
    else:
        checks["redis"] = {"status": "not_configured"}

    return {
        "status": "healthy" if overall_healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
