"""
errors.py — Tagged service errors.

Handlers raise ServiceError with an explicit ErrorKind; the HTTP status is
looked up from the kind so no caller ever has to sniff message text.
"""

from enum import Enum

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse


class ErrorKind(str, Enum):
    UNAUTHORIZED         = "unauthorized"
    FORBIDDEN            = "forbidden"
    PENDING_APPROVAL     = "pending_approval"
    BANNED               = "banned"
    NOT_FOUND            = "not_found"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    INVALID_REQUEST      = "invalid_request"
    RATE_LIMITED         = "rate_limited"
    EXTERNAL_FAILURE     = "external_failure"
    STORE_FAILURE        = "store_failure"
    MISCONFIGURED        = "misconfigured"
    DEVICE_NOT_APPROVED  = "device_not_approved"
    DEVICE_REQUIRES_APPROVAL = "device_requires_approval"


STATUS_BY_KIND = {
    ErrorKind.UNAUTHORIZED:         401,
    ErrorKind.FORBIDDEN:            403,
    ErrorKind.PENDING_APPROVAL:     403,
    ErrorKind.BANNED:               403,
    ErrorKind.NOT_FOUND:            404,
    ErrorKind.INSUFFICIENT_CREDITS: 400,
    ErrorKind.INVALID_REQUEST:      400,
    ErrorKind.RATE_LIMITED:         429,
    ErrorKind.EXTERNAL_FAILURE:     502,
    ErrorKind.STORE_FAILURE:        500,
    ErrorKind.MISCONFIGURED:        500,
    ErrorKind.DEVICE_NOT_APPROVED:  403,
    ErrorKind.DEVICE_REQUIRES_APPROVAL: 403,
}


class ServiceError(Exception):
    def __init__(self, kind: ErrorKind, message: str, **extra):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.extra = extra            # merged into the JSON body

    @property
    def status_code(self) -> int:
        return STATUS_BY_KIND[self.kind]


async def service_error_handler(request: Request, exc: ServiceError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message, "kind": exc.kind.value, **exc.extra},
    )


def install_error_handler(app: FastAPI):
    app.add_exception_handler(ServiceError, service_error_handler)
