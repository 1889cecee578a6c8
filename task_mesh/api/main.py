"""
Main FastAPI application for Task Mesh.
"""

import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .. import __version__
from ..models.errors import (
    AgentCommunicationError,
    NoAgentsAvailableError,
    PersistenceError,
    ValidationError,
)
from ..utils.config import SystemConfig, get_config
from ..utils.logging import get_logger
from .dependencies import ServiceComponents, build_components
from .models import ErrorResponse
from .routes import router

logger = get_logger(__name__)


def create_app(
    config: Optional[SystemConfig] = None,
    components: Optional[ServiceComponents] = None,
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        config: System configuration (defaults to the global configuration)
        components: Pre-built components, e.g. for tests

    Returns:
        FastAPI: Configured application
    """
    config = config or (components.config if components else get_config())
    components = components or build_components(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        logger.info("Starting Task Mesh API...")
        await components.start()
        yield
        logger.info("Shutting down Task Mesh API...")
        await components.stop()

    app = FastAPI(
        title="Task Mesh API",
        description="Capability-based task orchestration for agent meshes",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.components = components

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log requests and add a processing time header."""
        start_time = time.time()
        response = await call_next(request)
        process_time = time.time() - start_time
        response.headers["X-Process-Time"] = str(process_time)
        logger.info(
            "Request handled",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(process_time * 1000, 2),
        )
        return response

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        """Invalid request bodies are 400s, not 422s."""
        issues = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg", ""), "type": err.get("type", "")}
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=400,
            content=ErrorResponse(
                error="VALIDATION_ERROR",
                message="Invalid request",
                details={"issues": issues},
            ).to_wire(),
        )

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return JSONResponse(
            status_code=400,
            content=ErrorResponse(
                error="VALIDATION_ERROR",
                message=exc.message,
                details={"issues": exc.issues},
            ).to_wire(),
        )

    @app.exception_handler(NoAgentsAvailableError)
    async def no_agents_handler(request: Request, exc: NoAgentsAvailableError):
        logger.warning("No agents available", capability=exc.capability, path=request.url.path)
        return JSONResponse(
            status_code=503,
            content={"error": exc.message, "capability": exc.capability},
        )

    @app.exception_handler(AgentCommunicationError)
    async def communication_error_handler(request: Request, exc: AgentCommunicationError):
        return JSONResponse(
            status_code=503,
            content=ErrorResponse(error="DISPATCH_FAILED", message=exc.message).to_wire(),
        )

    @app.exception_handler(PersistenceError)
    async def persistence_error_handler(request: Request, exc: PersistenceError):
        return JSONResponse(
            status_code=503,
            content=ErrorResponse(error="STORE_UNAVAILABLE", message=exc.message).to_wire(),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        error = "NOT_FOUND" if exc.status_code == 404 else "HTTP_ERROR"
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(
                error=error,
                message=str(exc.detail),
                details={"path": str(request.url.path)},
            ).to_wire(),
        )

    @app.exception_handler(Exception)
    async def internal_error_handler(request: Request, exc: Exception):
        logger.error("Internal server error", error=str(exc), error_type=type(exc).__name__, path=request.url.path)
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error="INTERNAL_ERROR",
                message="An internal server error occurred",
            ).to_wire(),
        )

    app.include_router(router)

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "message": "Task Mesh API",
            "version": __version__,
            "docs": "/docs",
            "health": "/healthz",
        }

    return app
