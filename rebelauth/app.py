from __future__ import annotations

from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from rebelauth.api.error_handling import register_exception_handlers
from rebelauth.api.routes import router
from rebelauth.config import get_settings
from rebelauth.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release its connections on shutdown."""
    from rebelauth.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", version=__version__)

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def _allowed_origins() -> list[str]:
    configured = get_settings().allowed_origins
    if configured:
        return configured
    # Local dev hosts only; no wildcard while credentials are allowed
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


async def add_correlation_id(request, call_next):
    """Propagate X-Request-ID into structured logs and back to the client."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # Auth responses carry bearer tokens
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault(
            "Cache-Control", "no-store, no-cache, must-revalidate, private"
        )
    return response


def create_app() -> FastAPI:
    app = FastAPI(title="watchRebel Auth", version=__version__, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )
    app.middleware("http")(add_correlation_id)
    app.middleware("http")(add_security_headers)
    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def healthz():
        from rebelauth.service.runtime import get_runtime

        runtime = get_runtime()
        return {
            "status": "healthy",
            "version": __version__,
            "store": type(runtime.store).__name__,
            "redis": runtime.cache is not None,
        }

    return app


app = create_app()


def main() -> None:
    """Serve the API with uvicorn; ``rebelauth-server`` on the command line."""
    settings = get_settings()
    uvicorn.run(
        "rebelauth.app:app",
        host=settings.server_host,
        port=settings.server_port,
        proxy_headers=True,
        reload=False,
    )


if __name__ == "__main__":
    main()
