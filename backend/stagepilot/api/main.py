"""
StagePilot - FastAPI Application
================================

HTTP routes for chats and stages, the /ws notification socket and the
error rendering shared by both routers.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request, WebSocket, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from stagepilot.api import chats, stages
from stagepilot.api.deps import get_agent_gateway
from stagepilot.core.config import settings
from stagepilot.core.database import close_db, init_db
from stagepilot.core.exceptions import StagePilotError, ValidationError
from stagepilot.core.pipeline.notifications import websocket_endpoint
from stagepilot.core.schemas import ErrorResponse, HealthResponse


def configure_logging() -> None:
    """Route structlog through stdlib logging; JSON lines in production."""
    logging.basicConfig(
        format="%(message)s",
        level=logging.DEBUG if settings.DEBUG else logging.INFO,
    )
    renderer = (
        structlog.processors.JSONRenderer()
        if settings.is_production
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Create tables and the agent gateway on startup; release both on shutdown."""
    logger.info(
        "stagepilot_starting",
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
        agent_gateway=settings.AGENT_GATEWAY_MODE,
    )
    await init_db()
    gateway = get_agent_gateway()

    yield

    await gateway.close()
    await close_db()
    logger.info("stagepilot_stopped")


def error_response(exc: StagePilotError) -> JSONResponse:
    body = ErrorResponse(error=exc.title, detail=exc.message, code=exc.code)
    return JSONResponse(status_code=exc.status_code, content=body.model_dump())


def create_app() -> FastAPI:
    """Build the application; API docs are served in development only."""
    docs = settings.is_development
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Approval-gated, chat-driven software delivery pipeline",
        docs_url="/docs" if docs else None,
        redoc_url="/redoc" if docs else None,
        openapi_url="/openapi.json" if docs else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ==========================================================================
    # Error Rendering
    # ==========================================================================

    @app.exception_handler(StagePilotError)
    async def stagepilot_error_handler(request: Request, exc: StagePilotError) -> JSONResponse:
        # Agent failures are worth a warning; client mistakes are not
        log = logger.warning if exc.status_code >= 500 else logger.info
        log(
            "request_failed",
            code=exc.code,
            detail=exc.message,
            method=request.method,
            path=request.url.path,
        )
        return error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in exc.errors()
        )
        return error_response(ValidationError(problems))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "request_crashed",
            exc_info=exc,
            method=request.method,
            path=request.url.path,
        )
        body = ErrorResponse(
            error="Internal Server Error",
            detail=str(exc) if settings.is_development else "An unexpected error occurred",
            code="INTERNAL_ERROR",
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=body.model_dump(),
        )

    # ==========================================================================
    # Routes
    # ==========================================================================

    app.include_router(chats.router, prefix=settings.API_PREFIX)
    app.include_router(stages.router, prefix=settings.API_PREFIX)

    @app.websocket("/ws")
    async def notifications_socket(websocket: WebSocket):
        """Stage message and status events for live viewers."""
        await websocket_endpoint(websocket)

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health() -> HealthResponse:
        return HealthResponse(
            status="healthy",
            version=settings.APP_VERSION,
            environment=settings.ENVIRONMENT,
            database="sqlite" if settings.is_sqlite else "external",
            agent_gateway=settings.AGENT_GATEWAY_MODE,
        )

    @app.get("/", tags=["Root"])
    async def root() -> dict:
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "api": settings.API_PREFIX,
            "websocket": "/ws",
            "health": "/health",
            "docs": "/docs" if docs else None,
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "stagepilot.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.is_development,
    )
