from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI, Request

from authflow.api.error_handling import register_exception_handlers
from authflow.api.routes import router
from authflow.logging import bind_request_context, get_logger
from authflow.storage.models import utcnow

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


async def _purge_records_forever(interval_seconds: int) -> None:
    """Delete expired and resolved records on a fixed interval until cancelled."""
    from authflow.service.runtime import get_runtime

    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(get_runtime().auth.purge_expired_records)
        except Exception as exc:
            logger.error("record_purge_failed", error_type=type(exc).__name__, error=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    from authflow.service.runtime import get_runtime

    runtime = get_runtime()
    purge = asyncio.create_task(
        _purge_records_forever(runtime.settings.challenge_purge_interval_seconds)
    )
    logger.info("authflow_started", version=__version__)
    try:
        yield
    finally:
        purge.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await purge
        # Pending code deliveries are drained before channels close
        await get_runtime().aclose()
        logger.info("authflow_stopped")


app = FastAPI(title="authflow", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def request_context(request: Request, call_next):
    """Bind a request id to every log line of the request and echo it back."""
    request_id = bind_request_context(
        request.headers.get("X-Request-ID"), method=request.method, path=request.url.path
    )
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    # Responses carry tokens and challenge handles
    response.headers.setdefault("Cache-Control", "no-store")
    response.headers.setdefault("API-Version", __version__)
    return response


register_exception_handlers(app)
app.include_router(router)


def _filesystem_probe(fs_root: str) -> Callable[[], None]:
    def probe() -> None:
        marker = Path(fs_root) / ".health_check"
        marker.write_text(utcnow().isoformat())
        marker.unlink(missing_ok=True)

    return probe


async def _probe(component: str, check: Callable[[], Any]) -> bool:
    try:
        await asyncio.wait_for(asyncio.to_thread(check), HEALTH_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component=component)
        return False
    except Exception as exc:
        logger.error("health_check_failed", component=component, error=str(exc))
        return False
    return True


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report whether the store, Redis and the state directory are usable."""
    from authflow.service.runtime import get_runtime

    runtime = get_runtime()
    fs_root: Optional[str] = getattr(runtime.store, "fs_root", None)
    probes: Dict[str, Optional[Callable[[], Any]]] = {
        "store": runtime.store.verify_connection,
        "redis": runtime.cache.verify_connection if runtime.cache is not None else None,
        "filesystem": _filesystem_probe(fs_root) if fs_root else None,
    }

    checks: Dict[str, str] = {}
    for component, check in probes.items():
        if check is None:
            checks[component] = "not_configured"
            continue
        checks[component] = "healthy" if await _probe(component, check) else "unhealthy"

    return {
        "status": "unhealthy" if "unhealthy" in checks.values() else "healthy",
        "checks": checks,
        "store_type": "memory" if runtime.settings.use_memory_store else "postgres",
        "version": __version__,
        "timestamp": utcnow().isoformat(),
    }
