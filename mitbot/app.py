from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI

from mitbot.api.error_handling import register_exception_handlers
from mitbot.api.routes import router
from mitbot.logging import bind_request_context, get_logger
from mitbot.storage.redis_store import RedisStore

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 2.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release its connections on shutdown."""
    from mitbot.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", version=__version__)

    yield

    await runtime.close()
    logger.info("runtime_cleanup_complete")


app = FastAPI(title="mitbot", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_request_id(request, call_next):
    """Tag every log line of a request with its id and echo it back.

    The id comes from the X-Request-ID header when the client sends one.
    """
    request_id = bind_request_context(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.middleware("http")
async def add_cache_headers(request, call_next):
    response = await call_next(request)
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report store connectivity and version info."""
    from mitbot.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}
    healthy = True

    if isinstance(runtime.store, RedisStore):
        try:
            await asyncio.wait_for(
                asyncio.to_thread(runtime.store.verify_connection),
                HEALTH_CHECK_TIMEOUT_SECONDS,
            )
            checks["store"] = {"status": "healthy", "type": "redis"}
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component="store")
            checks["store"] = {"status": "unhealthy", "type": "redis"}
            healthy = False
        except Exception as exc:
            logger.error("health_check_store_failed", error=str(exc))
            checks["store"] = {"status": "unhealthy", "type": "redis"}
            healthy = False
    else:
        checks["store"] = {"status": "healthy", "type": "memory"}

    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
