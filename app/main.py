"""FastAPI application entry point."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any, cast

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.v1.router import api_router
from app.config import Settings, get_settings
from app.core.database import Database
from app.core.exceptions import BackupServiceError, ErrorKind, SessionNotFoundError
from app.core.field_encryption import configure_token_cipher
from app.core.logging import setup_logging
from app.repositories.account_repository import AccountRepository
from app.schemas.auth import ErrorBody, ErrorResponse
from app.services.reconciliation import ReconciliationService

logger = logging.getLogger(__name__)

STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.UPSTREAM: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.INVALID: status.HTTP_400_BAD_REQUEST,
    ErrorKind.INTERNAL: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def error_response(
    kind: ErrorKind,
    message: str,
    details: dict[str, Any],
    status_code: int,
) -> JSONResponse:
    body = ErrorResponse(error=ErrorBody(kind=kind.value, message=message, details=details))
    return JSONResponse(status_code=status_code, content=body.model_dump())


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    settings: Settings = app.state.settings
    setup_logging(settings.log_level)
    configure_token_cipher(settings.get_token_encryption_key())

    logger.info(
        "Starting Spotify Backup",
        extra={
            "environment": settings.environment,
            "version": settings.app_version,
        },
    )

    database = Database(settings)
    app.state.database = database
    app.state.reconciliation_service = ReconciliationService(
        AccountRepository(database),
        deletion_phrase=settings.account_deletion_phrase,
    )

    if settings.environment == "development":
        await database.init_models()
        logger.info("Development database initialized")

    yield

    logger.info("Shutting down Spotify Backup")
    await database.dispose()


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Links a Spotify account and a GitHub account for playlist backups",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )
    app.state.settings = settings

    # CORS middleware
    app.add_middleware(
        cast(Any, CORSMiddleware),
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(BackupServiceError)
    async def handle_service_error(request: Request, exc: BackupServiceError) -> JSONResponse:
        if isinstance(exc, SessionNotFoundError):
            status_code = status.HTTP_401_UNAUTHORIZED
        else:
            status_code = STATUS_BY_KIND[exc.kind]
        if exc.kind is ErrorKind.INTERNAL:
            logger.error(
                "Request failed",
                extra={"path": request.url.path, "error": exc.message},
            )
        return error_response(exc.kind, exc.message, exc.details, status_code)

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error", extra={"path": request.url.path})
        return error_response(
            ErrorKind.INTERNAL,
            "Internal server error",
            {},
            status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    app.include_router(api_router, prefix=settings.api_v1_prefix)

    @app.get(
        "/health",
        summary="Health check",
        description="Return service health status and backend version information.",
    )
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "healthy", "version": settings.app_version}

    return app


app = create_app()
