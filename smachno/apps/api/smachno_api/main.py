"""Smachno API - FastAPI Application Entry Point.

Inbound boundary of the generation entitlement ledger: WayForPay service URL
notifications, checkout return page, widget checkout form and health checks.
"""

import logging
import os
import time
import uuid

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from smachno_api.context import reference_var, request_id_var, user_id_var
from smachno_api.routers import health, payments
from smachno_api.schemas import ProblemDetail
from smachno_api.utils import configure_json_logging

app = FastAPI(
    title="Smachno API",
    description="Generation entitlements and WayForPay payment reconciliation.",
    version="0.1.0",
    docs_url="/api-docs",
    redoc_url=None,
)

# Structured JSON logging
# Set SMACHNO_JSON_LOGS=false to disable (defaults to true for production)
if os.getenv("SMACHNO_JSON_LOGS", "true").lower() != "false":
    configure_json_logging(log_level=os.getenv("LOG_LEVEL", "INFO"))
    logger = logging.getLogger(__name__)
    logger.info("Structured JSON logging enabled")


# ============================================================================
# HTTP Request Completion Logging Middleware
# ============================================================================


@app.middleware("http")
async def http_completion_logging_middleware(request: Request, call_next):
    """Log every HTTP request completion with observability fields.

    - Every HTTP request emits "http.request.completed"
    - Fields: method, path, status_code, duration_ms (+ request_id from context)
    - Logs even on exceptions (status_code=500)
    - Clears per-request contextvars at start and end to prevent leakage
    """
    user_id_var.set("")
    reference_var.set("")

    start_time = time.perf_counter()
    status_code = 500  # Default to 500 in case of unhandled exception

    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        duration_ms = (time.perf_counter() - start_time) * 1000

        logging.getLogger(__name__).info(
            "http.request.completed",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": status_code,
                "duration_ms": round(duration_ms, 2),
            },
        )

        user_id_var.set("")
        reference_var.set("")


# ============================================================================
# Request ID Middleware (MUST BE OUTERMOST)
# ============================================================================


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """Generate and propagate request_id for observability.

    - Accepts X-Request-ID header from client (optional)
    - Generates new UUID if not provided
    - Returns X-Request-ID in response headers

    IMPORTANT: Registered LAST (outermost middleware) so request_id is set in
    the parent async context before other middlewares execute.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request_id_var.set(request_id)

    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id

    return response


# ============================================================================
# RFC 9457 Global Exception Handlers
# ============================================================================


def _instance() -> str:
    request_id = request_id_var.get()
    return f"urn:smachno:trace:{request_id}" if request_id else f"urn:smachno:trace:{uuid.uuid4()}"


def _problem_response(
    status_code: int,
    *,
    type_: str,
    title: str,
    detail: str | dict,
) -> JSONResponse:
    problem = ProblemDetail(
        type=type_,
        title=title,
        status=status_code,
        detail=detail,
        instance=_instance(),
    )
    return JSONResponse(
        status_code=status_code,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Handle HTTP exceptions with RFC 9457 Problem Details format.

    Returns application/problem+json with top-level RFC 9457 fields.
    """
    detail_value = exc.detail if exc.detail is not None else _get_title_for_status(exc.status_code)
    return _problem_response(
        exc.status_code,
        type_=f"urn:smachno:problems:http-{exc.status_code}",
        title=_get_title_for_status(exc.status_code),
        detail=detail_value,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle request validation errors with RFC 9457 Problem Details format."""
    first_error = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(loc) for loc in first_error.get("loc", []))
    msg = first_error.get("msg", "Validation error")

    return _problem_response(
        422,
        type_="urn:smachno:problems:validation-error",
        title="Request Validation Failed",
        detail=f"Invalid field '{field}': {msg}",
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle uncaught exceptions with RFC 9457 Problem Details format."""
    logging.getLogger(__name__).error(f"Unhandled exception: {type(exc).__name__}", exc_info=exc)

    return _problem_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        type_="urn:smachno:problems:internal-error",
        title="Internal Server Error",
        detail="An unexpected error occurred. Please try again later.",
    )


def _get_title_for_status(status_code: int) -> str:
    """Get human-readable title for HTTP status code."""
    titles = {
        400: "Bad Request",
        404: "Not Found",
        405: "Method Not Allowed",
        409: "Conflict",
        500: "Internal Server Error",
        503: "Service Unavailable",
    }
    return titles.get(status_code, f"HTTP {status_code}")


# Include routers
app.include_router(health.router, tags=["health"])
app.include_router(payments.router)
