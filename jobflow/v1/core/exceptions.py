import uuid
from datetime import UTC, datetime
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from jobflow.config.logging import get_logger

logger = get_logger(__name__)


class JobflowError(Exception):
    """Base exception for the workflow engine."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class NotFoundError(JobflowError):
    """Raised when a resource is not found."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, status.HTTP_404_NOT_FOUND, details)


# Configuration errors: always fatal, never retried


class JobflowConfigurationError(JobflowError):
    """A workflow or job is declared or persisted inconsistently."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, status.HTTP_422_UNPROCESSABLE_ENTITY, details)


class UnknownRecoveryPoint(JobflowConfigurationError):
    def __init__(self, recovery_point: str, known: list[str] | None = None):
        super().__init__(
            f"Unknown recovery point: {recovery_point}",
            {"recovery_point": recovery_point, "known_steps": known or []},
        )


class NoDefinedSteps(JobflowConfigurationError):
    def __init__(self, job_name: str):
        super().__init__(
            f"Job {job_name} declared a workflow without any steps",
            {"job_name": job_name},
        )


class UnknownJobAdapter(JobflowConfigurationError):
    def __init__(self, adapter: str, job_name: str | None = None):
        super().__init__(
            f"Unknown job adapter '{adapter}'",
            {"adapter": adapter, "job_name": job_name},
        )


class UnknownJob(JobflowConfigurationError):
    def __init__(self, job_name: str):
        super().__init__(f"No job registered with name '{job_name}'", {"job_name": job_name})


class MissingStepHandler(JobflowConfigurationError):
    def __init__(self, job_name: str, handler: str):
        super().__init__(
            f"Job {job_name} has no step handler named '{handler}'",
            {"job_name": job_name, "handler": handler},
        )


class RecordValidationError(JobflowConfigurationError):
    def __init__(self, errors: dict[str, list[str]]):
        fields = ", ".join(sorted(errors))
        super().__init__(f"Invalid execution record: {fields}", {"errors": errors})
        self.errors = errors


# Concurrency errors: fatal to this attempt, retried later by the queue


class JobflowConcurrencyError(JobflowError):
    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, status.HTTP_409_CONFLICT, details)


class LockedIdempotencyKey(JobflowConcurrencyError):
    """Another worker holds a fresh lock on the same run."""

    def __init__(self, idempotency_key: str, locked_at: datetime | None = None):
        super().__init__(
            f"Run with idempotency key {idempotency_key} is already in flight",
            {
                "idempotency_key": idempotency_key,
                "locked_at": locked_at.isoformat() if locked_at else None,
            },
        )


class LockLost(JobflowConcurrencyError):
    """The lock was stolen (went stale) while this worker was running a step."""

    def __init__(self, run_id: uuid.UUID | str):
        super().__init__(
            f"Lock on run {run_id} is no longer held by this worker",
            {"run_id": str(run_id)},
        )


class AwaitedJobsPending(JobflowConcurrencyError):
    """Some awaited jobs have not finished, so the batch callback cannot fire yet."""

    def __init__(self, callback_key: str, job_ids: list[str]):
        super().__init__(
            f"Awaited jobs of {callback_key} have not finished",
            {"callback_key": callback_key, "job_ids": job_ids},
        )


# Consistency errors: a caller bug


class JobflowConsistencyError(JobflowError):
    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, status.HTTP_409_CONFLICT, details)


class MismatchedIdempotencyKeyAndJobArguments(JobflowConsistencyError):
    def __init__(self, idempotency_key: str, job_name: str):
        super().__init__(
            f"Idempotency key {idempotency_key} was already used by {job_name} "
            "with different arguments",
            {"idempotency_key": idempotency_key, "job_name": job_name},
        )


def create_error_response(
    status_code: int,
    message: str,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> dict[str, Any]:
    """Create standardized error response envelope."""
    return {
        "ok": False,
        "error": {
            "message": message,
            "code": status_code,
            "details": details or {},
        },
        "request_id": request_id,
        "timestamp": datetime.now(UTC).isoformat(),
    }


def create_success_response(
    data: Any, message: str | None = None, request_id: str | None = None
) -> dict[str, Any]:
    """Create standardized success response envelope."""
    return {
        "ok": True,
        "data": data,
        "message": message,
        "request_id": request_id,
        "timestamp": datetime.now(UTC).isoformat(),
    }


async def jobflow_exception_handler(request: Request, exc: JobflowError) -> JSONResponse:
    """Handle engine specific exceptions."""
    request_id = getattr(request.state, "request_id", str(uuid.uuid4()))

    logger.error(
        "Application exception",
        exception=exc.__class__.__name__,
        message=exc.message,
        status_code=exc.status_code,
        details=exc.details,
        request_id=request_id,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(
            status_code=exc.status_code,
            message=exc.message,
            details=exc.details,
            request_id=request_id,
        ),
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle FastAPI HTTP exceptions."""
    request_id = getattr(request.state, "request_id", str(uuid.uuid4()))

    logger.warning(
        "HTTP exception",
        status_code=exc.status_code,
        detail=exc.detail,
        request_id=request_id,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(
            status_code=exc.status_code,
            message=str(exc.detail),
            request_id=request_id,
        ),
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    request_id = getattr(request.state, "request_id", str(uuid.uuid4()))

    logger.error(
        "Unhandled exception",
        exception=exc.__class__.__name__,
        message=str(exc),
        request_id=request_id,
        exc_info=True,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=create_error_response(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            message="Internal server error",
            request_id=request_id,
        ),
    )


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Middleware to add request context and correlation IDs."""

    async def dispatch(self, request: Request, call_next):
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id

        from jobflow.config.logging import add_request_context

        add_request_context(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id

        return response
