import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from funnelos.config import settings
from funnelos.db.base import init_db
from funnelos.errors import (
    FunnelNotFoundError,
    FunnelOSError,
    JobNotFoundError,
    LockConflictError,
    MissingDependencyError,
    SectionNotFoundError,
    UnknownSectionError,
    VersionConflictError,
)
from funnelos.routers import funnels, regenerate

logger = logging.getLogger(__name__)

_ERROR_STATUS: dict[type[FunnelOSError], int] = {
    UnknownSectionError: status.HTTP_400_BAD_REQUEST,
    FunnelNotFoundError: status.HTTP_404_NOT_FOUND,
    SectionNotFoundError: status.HTTP_404_NOT_FOUND,
    JobNotFoundError: status.HTTP_404_NOT_FOUND,
    MissingDependencyError: status.HTTP_409_CONFLICT,
    LockConflictError: status.HTTP_409_CONFLICT,
    VersionConflictError: status.HTTP_409_CONFLICT,
}


def _status_for(exc: FunnelOSError) -> int:
    for error_type, status_code in _ERROR_STATUS.items():
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@asynccontextmanager
async def _app_lifespan(_app: FastAPI) -> AsyncIterator[None]:
    init_db()
    yield


def create_app() -> FastAPI:
    app = FastAPI(
        title="FunnelOS Regeneration API",
        default_response_class=ORJSONResponse,
        lifespan=_app_lifespan,
    )

    allow_origins = sorted(set(settings.BACKEND_CORS_ORIGINS))

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(FunnelOSError)
    async def funnelos_error_handler(_request: Request, exc: FunnelOSError) -> ORJSONResponse:
        status_code = _status_for(exc)
        if status_code >= 500:
            logger.exception("Unhandled regeneration error", exc_info=exc)
            return ORJSONResponse(
                status_code=status_code,
                content={"error": "Internal server error.", "code": exc.code},
            )
        return ORJSONResponse(status_code=status_code, content=exc.to_payload())

    @app.exception_handler(RequestValidationError)
    async def request_validation_error_handler(_request: Request, exc: RequestValidationError) -> ORJSONResponse:
        return ORJSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "error": "Request validation failed.",
                "code": "VALIDATION_ERROR",
                "details": [
                    {"loc": list(error.get("loc", ())), "msg": error.get("msg")} for error in exc.errors()
                ],
            },
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(_request: Request, exc: Exception) -> ORJSONResponse:
        logger.exception("Unhandled server exception", exc_info=exc)
        return ORJSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Internal server error.", "code": "INTERNAL_ERROR"},
        )

    @app.get("/health")
    async def health() -> dict[str, bool]:
        return {"ok": True}

    app.include_router(regenerate.router)
    app.include_router(funnels.router)
    return app


app = create_app()
