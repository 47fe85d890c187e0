"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from fhirstore.config import settings
from fhirstore.database import engine
from fhirstore.errors import (
    ConflictError,
    FhirStoreError,
    ForbiddenError,
    InvalidSearchError,
    PreconditionFailedError,
    ResourceNotFoundError,
    TransactionTimeoutError,
    ValidationError,
)
from fhirstore.projections.extractors import register_all_projections
from fhirstore.routes import resources

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events for startup/shutdown."""
    logging.basicConfig(level=settings.log_level.upper())
    register_all_projections()
    logger.info("Resource projections registered")

    yield  # Application runs here

    await engine.dispose()


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)
        # Prevent clickjacking
        response.headers["X-Frame-Options"] = "DENY"
        # Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # Clinical data must never be cached by intermediaries
        response.headers["Cache-Control"] = "no-store"
        return response


def _outcome(
    status_code: int,
    code: str,
    issues: list[tuple[str, str | None]],
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    """Render an OperationOutcome listing every issue."""
    return JSONResponse(
        status_code=status_code,
        headers=headers,
        content={
            "resourceType": "OperationOutcome",
            "issue": [
                {
                    "severity": "error",
                    "code": code,
                    "diagnostics": message,
                    **({"expression": [path]} if path else {}),
                }
                for message, path in issues
            ],
        },
    )


# Status and OperationOutcome issue code per error type
_ERROR_STATUS: dict[type[FhirStoreError], tuple[int, str]] = {
    ResourceNotFoundError: (status.HTTP_404_NOT_FOUND, "not-found"),
    ForbiddenError: (status.HTTP_403_FORBIDDEN, "forbidden"),
    ConflictError: (status.HTTP_409_CONFLICT, "conflict"),
    PreconditionFailedError: (status.HTTP_412_PRECONDITION_FAILED, "duplicate"),
    InvalidSearchError: (status.HTTP_400_BAD_REQUEST, "invalid"),
    TransactionTimeoutError: (status.HTTP_504_GATEWAY_TIMEOUT, "timeout"),
}


async def fhirstore_error_handler(request: Request, exc: FhirStoreError) -> JSONResponse:
    """Map lifecycle errors to HTTP responses."""
    if isinstance(exc, ValidationError):
        return _outcome(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            "invalid",
            [(f.message, f.path) for f in exc.failures],
        )

    status_code, code = next(
        (value for error_type, value in _ERROR_STATUS.items() if isinstance(exc, error_type)),
        (status.HTTP_500_INTERNAL_SERVER_ERROR, "exception"),
    )
    headers = None
    if isinstance(exc, ConflictError) and exc.current_version_id is not None:
        headers = {"ETag": f'W/"{exc.current_version_id}"'}
    if status_code >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc)
    return _outcome(status_code, code, [(str(exc), None)], headers=headers)


app = FastAPI(
    title="fhirstore",
    description="Versioned clinical resource store with role- and compartment-based access control",
    version="0.1.0",
    lifespan=lifespan,
)

# Security headers middleware (applied to all responses)
app.add_middleware(SecurityHeadersMiddleware)

app.add_exception_handler(FhirStoreError, fhirstore_error_handler)

app.include_router(resources.router)


@app.get("/health")
async def health_check() -> dict:
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/")
async def root() -> dict:
    """Root endpoint with API info."""
    return {
        "name": "fhirstore",
        "version": "0.1.0",
        "docs": "/docs",
    }
