from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from coopadmin.api.error_handling import register_exception_handlers
from coopadmin.api.routes import router
from coopadmin.config import Settings, get_settings
from coopadmin.logging import get_logger, set_correlation_id
from coopadmin.service.runtime import Runtime, get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 2.0


def _allowed_origins(settings: Settings) -> List[str]:
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    # Default to common local dev hosts; avoid wildcard when credentials are enabled.
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        settings.frontend_url,
    ]


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        runtime = await asyncio.to_thread(Runtime(settings).connect)
        app.state.runtime = runtime
        logger.info("app_started", environment=settings.environment.value)
        try:
            yield
        finally:
            await runtime.close()
            app.state.runtime = None
            logger.info("runtime_cleanup_complete")

    app = FastAPI(title="Coop Admin Auth", version=__version__, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Bind a correlation id to the request's logs and echo it as ``X-Request-ID``."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if request.url.path.startswith("/api/"):
            response.headers.setdefault("Cache-Control", "no-store")
        return response

    register_exception_handlers(app, settings)
    app.include_router(router)

    @app.get("/healthz")
    async def health(runtime: Runtime = Depends(get_runtime)) -> Dict[str, Any]:
        """Report store and cache reachability."""

        async def _run_bounded(label: str, func) -> bool:
            try:
                await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
                return True
            except asyncio.TimeoutError:
                logger.error(
                    "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
                )
            except Exception as exc:
                logger.error(f"health_check_{label}_failed", error=str(exc))
            return False

        store_ok = await _run_bounded("store", runtime.store.verify_connection)
        cache_ok = await _run_bounded("cache", runtime.cache.verify_connection)
        checks = {
            "store": {
                "status": "healthy" if store_ok else "unhealthy",
                "type": type(runtime.store).__name__,
            },
            "cache": {
                "status": "healthy" if cache_ok else "unhealthy",
                "type": type(runtime.cache).__name__,
            },
        }
        return {
            "status": "healthy" if store_ok and cache_ok else "unhealthy",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app


app = create_app()
