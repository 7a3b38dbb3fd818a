"""Yoyaku application entry point.

Quick Start:
    $ yoyaku serve             # Start the API server
    $ yoyaku init-db           # Create tables
    $ yoyaku promote <user-id> # Make someone an admin

Environment:
    YOYAKU_ENV                 # development/production (default: development)
    YOYAKU_LOG_LEVEL           # DEBUG/INFO/WARNING/ERROR (default: INFO)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Callable, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from yoyaku import __version__
from yoyaku.api.routes import router, set_orchestrator
from yoyaku.config import get_settings
from yoyaku.database import close_db, init_db
from yoyaku.errors import YoyakuError
from yoyaku.logging_config import get_logger, setup_logging
from yoyaku.orchestrator import Orchestrator

setup_logging()
logger = get_logger(__name__)


async def yoyaku_error_handler(request: Request, exc: YoyakuError) -> JSONResponse:
    """Render domain errors as ``{"error": code, "detail": message}``."""
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, error=exc.code, detail=exc.message)
    else:
        logger.info("request_rejected", path=request.url.path, error=exc.code, detail=exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app(orchestrator_factory: Optional[Callable[[], Orchestrator]] = None) -> FastAPI:
    """Build the FastAPI application.

    ``orchestrator_factory`` is called once the database is up; tests use it
    to swap in a fake calendar gateway or a fixed clock.
    """
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info("yoyaku_starting", version=__version__, env=get_settings().yoyaku_env)
        await init_db()
        orch = orchestrator_factory() if orchestrator_factory else Orchestrator()
        set_orchestrator(orch)
        logger.info("yoyaku_ready", version=__version__)

        yield

        logger.info("yoyaku_shutting_down")
        await orch.shutdown()
        set_orchestrator(None)
        await close_db()
        logger.info("yoyaku_stopped")

    app = FastAPI(
        title="Yoyaku",
        description="Meeting booking on top of Google Calendar availability",
        version=__version__,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(YoyakuError, yoyaku_error_handler)
    app.include_router(router, prefix="/api")
    return app


app = create_app()


def main() -> None:
    """Start the API server."""
    settings = get_settings()
    uvicorn.run(
        "yoyaku.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.yoyaku_env == "development",
        log_level=settings.yoyaku_log_level.lower(),
    )


if __name__ == "__main__":
    main()
