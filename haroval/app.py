from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from haroval.api.error_handling import register_exception_handlers
from haroval.api.routes import router
from haroval.config import get_settings
from haroval.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime before serving so a bad key or store fails startup."""
    from haroval.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("startup_complete", environment=runtime.settings.environment)

    yield

    try:
        await runtime.aclose()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Haroval Auth", version=__version__, lifespan=lifespan)

_settings = get_settings()

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_allow_origins or [_settings.app_base_url],
    # Cookies are the only credential, so CORS must allow them
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "OPTIONS"],
    allow_headers=["Content-Type", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation id for log tracing.

    A client supplied ``X-Request-ID`` is reused, otherwise a UUID is
    generated. The id is echoed back in the response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> JSONResponse:
    from haroval.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Any] = {}

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

    checks["database"] = {"ok": await _run_bounded("database", runtime.store.verify_connection)}
    verify_cache = getattr(runtime.cache, "verify_connection", None)
    if verify_cache is not None:
        checks["redis"] = {"ok": await _run_bounded("redis", verify_cache)}
    if runtime.cache is not None:
        checks["cache"] = await _cache_check(runtime.cache)
    healthy = all(check["ok"] for check in checks.values())
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={"status": "ok" if healthy else "degraded", "version": __version__, "checks": checks},
    )


async def _cache_check(cache) -> Dict[str, Any]:
    # Entry count only; keys embed user ids
    try:
        stats = await asyncio.wait_for(cache.stats(), HEALTH_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="cache", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        return {"ok": False, "backend": type(cache).__name__}
    except Exception as exc:
        logger.error("health_check_failed", component="cache", error=str(exc))
        return {"ok": False, "backend": type(cache).__name__}
    return {"ok": True, "backend": type(cache).__name__, "entries": stats["size"]}
