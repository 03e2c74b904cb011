"""
FastAPI Application Entry Point for the Law Firm Case Chat service.

This module builds the FastAPI application that hosts the real-time case
chat: the authenticated chat socket, the case chat history endpoints and a
handful of admin endpoints for inspecting connections, rooms and the batch
persistence scheduler.

Lifecycle:
- Startup validates configuration, connects to MongoDB, wires the chat
  components and starts the batch persistence scheduler
- Shutdown closes open sockets, then stops the scheduler (its final flush
  runs until the buffer is empty) and disconnects the database
"""

import sys
import traceback
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from lawfirm_chat.app.api.middleware.logging import CORRELATION_HEADER, RequestContextMiddleware
from lawfirm_chat.app.api.routes import chat, websocket
from lawfirm_chat.app.core.component_manager import ChatComponents
from lawfirm_chat.app.core.exceptions import (
    BaseCustomException,
    ConfigurationError,
    ErrorCode,
    get_exception_response_data
)
from lawfirm_chat.app.utils.logging import get_logger, initialize_logging_from_settings
from lawfirm_chat.config.settings import Settings, get_settings

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup and shutdown of the chat service.

    Components placed on app.state before startup (as tests do) are used
    as-is; otherwise they are built against MongoDB.
    """
    settings: Settings = app.state.settings
    logger.info("=== Case Chat Service Starting Up ===", version=settings.app_version)

    config_errors = settings.validate_configuration()
    if config_errors:
        logger.error("Invalid configuration", errors=config_errors)
        raise ConfigurationError(
            "Configuration validation failed",
            config_errors=config_errors
        )

    components: Optional[ChatComponents] = getattr(app.state, "components", None)
    if components is None:
        components = await ChatComponents.from_database(settings)
        app.state.components = components

    await components.start()
    logger.info("=== Case Chat Service Started Successfully ===")

    try:
        yield
    finally:
        logger.info("=== Case Chat Service Shutting Down ===")
        await components.shutdown()
        logger.info("=== Case Chat Service Shutdown Complete ===")


def create_application(
    settings: Optional[Settings] = None,
    components: Optional[ChatComponents] = None
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings: Application settings, loaded from the environment if omitted
        components: Pre-built chat components, built at startup if omitted

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or get_settings()
    initialize_logging_from_settings(settings)

    app = FastAPI(
        title=settings.app_name,
        description="Real-time case chat for law firm clients, lawyers and admins",
        version=settings.app_version,
        debug=settings.debug,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan
    )
    app.state.settings = settings
    if components is not None:
        app.state.components = components

    configure_middleware(app, settings)
    configure_routes(app)
    configure_exception_handlers(app, settings)

    return app


def configure_middleware(app: FastAPI, settings: Settings) -> None:
    """Configure application middleware stack."""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=[CORRELATION_HEADER]
    )
    app.add_middleware(RequestContextMiddleware)


def configure_routes(app: FastAPI) -> None:
    """Configure application routes and API endpoints."""

    @app.get("/health", tags=["system"], include_in_schema=False)
    async def health_check(request: Request):
        """System health check endpoint."""
        components: Optional[ChatComponents] = getattr(request.app.state, "components", None)
        if components is None:
            return JSONResponse(status_code=503, content={"status": "starting"})

        try:
            health = await components.health_check()
        except Exception as e:
            logger.error("Health check failed", error=str(e))
            return JSONResponse(
                status_code=503,
                content={"status": "unhealthy", "error": "Health check failed"}
            )

        status_code = 200 if health["status"] == "healthy" else 503
        return JSONResponse(status_code=status_code, content=health)

    @app.get("/", tags=["system"], include_in_schema=False)
    async def root(request: Request):
        """Root endpoint with API information."""
        settings: Settings = request.app.state.settings
        return {
            "name": settings.app_name,
            "version": settings.app_version,
            "chat_socket": "/ws/chat",
            "health_url": "/health"
        }

    app.include_router(chat.router, prefix="/api/chat", tags=["chat"])
    app.include_router(websocket.router, prefix="/ws", tags=["websocket"])


def configure_exception_handlers(app: FastAPI, settings: Settings) -> None:
    """Configure global exception handlers."""

    @app.exception_handler(BaseCustomException)
    async def custom_exception_handler(request: Request, exc: BaseCustomException):
        """Handle application exceptions."""
        log = logger.warning if exc.http_status_code < 500 else logger.error
        log(
            f"Application exception: {exc.error_code.name}",
            error_code=exc.error_code.value,
            message=exc.message,
            path=request.url.path,
            method=request.method,
            correlation_id=exc.correlation_id
        )
        return JSONResponse(
            status_code=exc.http_status_code,
            content=get_exception_response_data(exc)
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Handle request validation errors."""
        logger.warning(
            "Request validation failed",
            path=request.url.path,
            method=request.method,
            errors=exc.errors()
        )
        return JSONResponse(
            status_code=422,
            content={
                "success": False,
                "error": {
                    "code": ErrorCode.MESSAGE_INVALID.value,
                    "message": "Request validation failed",
                    "details": jsonable_errors(exc)
                }
            }
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Handle FastAPI HTTP exceptions."""
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "success": False,
                "error": {
                    "code": f"HTTP_{exc.status_code}",
                    "message": exc.detail,
                    "details": {}
                }
            }
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions."""
        logger.error(
            "Unexpected exception occurred",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            traceback=traceback.format_exc()
        )
        error_detail = str(exc) if settings.debug else "Internal server error"
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": {
                    "code": "INTERNAL_SERVER_ERROR",
                    "message": error_detail,
                    "details": {}
                }
            }
        )


def jsonable_errors(exc: RequestValidationError) -> list:
    """Validation errors without the raw input and context objects."""
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]


app = create_application()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    logger.info("Starting case chat development server...")

    try:
        uvicorn.run(
            "lawfirm_chat.main:app",
            host="0.0.0.0",
            port=8000,
            reload=settings.debug,
            access_log=False
        )
    except KeyboardInterrupt:
        logger.info("Development server stopped by user")
    except Exception as e:
        logger.error(f"Failed to start development server: {e}")
        sys.exit(1)
