from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class StagingError(Exception):
    code = "internal_error"
    status_code = 500

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        self.message = message
        self.context = context or {}
        super().__init__(message)


class ValidationError(StagingError):
    code = "validation_error"
    status_code = 400


class InsufficientCredits(StagingError):
    code = "insufficient_credits"
    status_code = 402

    def __init__(self, required: int, available: int) -> None:
        self.required = required
        self.available = available
        self.missing = max(required - available, 0)
        super().__init__(
            f"Insufficient credits. Required: {required}, available: {available}, missing: {self.missing}",
            {"required": required, "available": available, "missing": self.missing},
        )


class ExternalProviderError(StagingError):
    code = "external_provider_error"
    status_code = 502


class ReservationConfirmationError(StagingError):
    """The costed work succeeded but the reservation could not be settled.

    Needs reconciliation: the caller must not report plain success.
    """

    code = "billing_failed"
    status_code = 500

    def __init__(self, reservation_id: str, cause: BaseException, result: Any = None) -> None:
        self.reservation_id = reservation_id
        self.cause = cause
        self.result = result
        super().__init__(
            "Operation succeeded but credit deduction failed",
            {"reservation_id": reservation_id, "cause": str(cause)},
        )


class InvalidJobState(StagingError):
    code = "invalid_job_state"
    status_code = 409

    def __init__(self, job_id: str, status: str, action: str) -> None:
        self.job_id = job_id
        self.status = status
        super().__init__(
            f"Cannot {action} job with status: {status}",
            {"job_id": job_id, "status": status, "action": action},
        )


class JobNotFound(StagingError):
    code = "job_not_found"
    status_code = 404

    def __init__(self, job_id: str) -> None:
        super().__init__("job not found", {"job_id": job_id})


class ReservationNotFound(StagingError):
    code = "reservation_not_found"
    status_code = 404

    def __init__(self, reservation_id: str) -> None:
        super().__init__("reservation not found", {"reservation_id": reservation_id})


class ReservationNotPending(StagingError):
    code = "reservation_not_pending"
    status_code = 409

    def __init__(self, reservation_id: str, status: str) -> None:
        self.reservation_id = reservation_id
        self.status = status
        super().__init__(
            f"Reservation {reservation_id} is already {status}",
            {"reservation_id": reservation_id, "status": status},
        )


class InvalidSignature(StagingError):
    code = "invalid_signature"
    status_code = 401


def error_body(exc: StagingError) -> dict:
    return {
        "success": False,
        "error": {"code": exc.code, "message": exc.message, "context": exc.context},
    }


async def staging_exception_handler(request: Request, exc: StagingError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s - %s", request.method, request.url.path, exc.code, exc.message)
    else:
        logger.warning("%s %s rejected: %s - %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=error_body(exc))


def add_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StagingError, staging_exception_handler)
