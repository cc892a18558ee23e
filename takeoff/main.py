from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from takeoff.core.config import settings
from takeoff.core.exceptions import (
    ConflictError,
    NotFoundError,
    TakeoffError,
    TransientExternalError,
    ValidationError,
)
from takeoff.core.logging import configure_logging
from takeoff.modules.extraction.router import router as extraction_router
from takeoff.modules.suppliers.router import router as suppliers_router

logger = structlog.get_logger()

ERROR_STATUS: list[tuple[type[TakeoffError], int, str]] = [
    (ValidationError, status.HTTP_400_BAD_REQUEST, "VALIDATION_ERROR"),
    (NotFoundError, status.HTTP_404_NOT_FOUND, "NOT_FOUND"),
    (ConflictError, status.HTTP_409_CONFLICT, "CONFLICT"),
    (TransientExternalError, status.HTTP_503_SERVICE_UNAVAILABLE, "UPSTREAM_UNAVAILABLE"),
]


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    configure_logging(settings.debug)
    logger.info("Starting Takeoff Extraction API")
    yield
    logger.info("Shutting down Takeoff Extraction API")


app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/api/docs",
    openapi_url="/api/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(TakeoffError)
async def takeoff_exception_handler(request: Request, exc: TakeoffError) -> JSONResponse:
    """Map the error taxonomy to HTTP statuses."""
    for error_type, status_code, code in ERROR_STATUS:
        if isinstance(exc, error_type):
            break
    else:
        status_code, code = status.HTTP_500_INTERNAL_SERVER_ERROR, "INTERNAL_ERROR"

    log = logger.warning if status_code < 500 else logger.error
    log("Request failed", path=request.url.path, error=code, message=exc.message)
    return JSONResponse(
        status_code=status_code,
        content={"error": code, "message": exc.message, "details": exc.details},
    )


# Mount routers
app.include_router(extraction_router, prefix=settings.api_prefix)
app.include_router(suppliers_router, prefix=settings.api_prefix)


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}
