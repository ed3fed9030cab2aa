from __future__ import annotations

import asyncio
import contextlib
import os
import sys
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, List

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import ValidationError as SettingsValidationError

from karass.api.error_handling import register_exception_handlers
from karass.api.routes import router
from karass.config import get_settings
from karass.logging import bind_request_id, get_logger

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


async def _run_periodic(
    label: str, interval_seconds: float, func: Callable[[], int]
) -> None:
    """Call ``func`` every ``interval_seconds`` until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            removed = func()
        except Exception as exc:
            logger.error("maintenance_failed", task=label, error=str(exc))
            continue
        if removed:
            logger.debug("maintenance_ran", task=label, removed=removed)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime and start sweeps; a bad configuration aborts startup."""
    from karass.service.runtime import get_runtime

    try:
        runtime = get_runtime()
    except SettingsValidationError as exc:
        logger.critical("startup_config_invalid", error=str(exc))
        raise SystemExit(1) from exc

    tasks: List[asyncio.Task] = [
        asyncio.create_task(
            _run_periodic(
                "pkce_sweep",
                runtime.settings.pkce_sweep_interval_seconds,
                runtime.pkce.sweep,
            )
        )
    ]
    for name, limiter in runtime.rate_limiters.items():
        tasks.append(
            asyncio.create_task(
                _run_periodic(
                    f"rate_limit_sweep_{name}",
                    limiter.policy.window_seconds,
                    limiter.sweep,
                )
            )
        )
    logger.info("startup_complete", version=__version__, maintenance_tasks=len(tasks))

    yield

    for task in tasks:
        task.cancel()
    for task in tasks:
        with contextlib.suppress(asyncio.CancelledError):
            await task
    try:
        runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Karass Identity", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_request_id(request, call_next):
    """Tag each request with an id that every log line of the request carries.

    Taken from the X-Request-ID header when the client sends one, otherwise
    generated, and echoed back in the X-Request-ID response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    request_id = bind_request_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    response.headers.setdefault("Cache-Control", "no-store")
    response.headers.setdefault(
        "Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'"
    )
    if request.url.scheme == "https" and get_settings().enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Any:
    """Report store reachability and version."""
    from karass.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}
    healthy = True
    try:
        await asyncio.wait_for(
            asyncio.to_thread(runtime.store.ping), HEALTH_CHECK_TIMEOUT_SECONDS
        )
        checks["store"] = {"status": "healthy"}
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="store")
        checks["store"] = {"status": "unhealthy", "error": "timeout"}
        healthy = False
    except Exception as exc:
        logger.error("health_check_store_failed", error=str(exc))
        checks["store"] = {"status": "unhealthy", "error": "unreachable"}
        healthy = False
    checks["oauth"] = {
        name: {"configured": provider.is_configured}
        for name, provider in runtime.providers.items()
    }
    body = {
        "status": "healthy" if healthy else "unhealthy",
        "version": __version__,
        "checks": checks,
    }
    return JSONResponse(status_code=200 if healthy else 503, content=body)


def main() -> None:
    """Console entry point: validate settings, then serve with uvicorn."""
    try:
        get_settings()
    except SettingsValidationError as exc:
        logger.critical("startup_config_invalid", error=str(exc))
        sys.exit(1)

    import uvicorn

    uvicorn.run(
        "karass.app:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "3000")),
        log_config=None,
    )


if __name__ == "__main__":
    main()
