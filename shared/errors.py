import logging
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class RideshareError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(RideshareError):
    status_code = 422


class NotFoundError(RideshareError):
    status_code = 404


class InvalidTransitionError(RideshareError):
    status_code = 409


class InsufficientSeatsError(RideshareError):
    status_code = 409


class DuplicateRequestError(RideshareError):
    status_code = 409


class PermissionDeniedError(RideshareError):
    status_code = 403


class RetryableError(RideshareError):
    """Lock or transaction contention. The caller may retry with backoff."""
    status_code = 503

    def __init__(self, message: str = "Please try again."):
        super().__init__(message)


async def rideshare_error_handler(request: Request, exc: RideshareError):
    if isinstance(exc, RetryableError):
        logger.warning(f"Contention on {request.method} {request.url.path}: {exc.message}")
        detail = "Please try again."
    else:
        detail = exc.message
    return JSONResponse(status_code=exc.status_code, content={"detail": detail})


def install_error_handlers(app: FastAPI):
    app.add_exception_handler(RideshareError, rideshare_error_handler)
