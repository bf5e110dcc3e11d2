"""
Mapping of payments engine exceptions to HTTP responses
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..exceptions import (
    LendingError, ValidationError, NotFoundError, InvalidTransition, TransitionConflict,
    GatewayError, ProcessorTimeout, ProcessorRejected
)
from ..logging_config import get_logger

logger = get_logger("lending.api")

# Most specific first
STATUS_CODES = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (TransitionConflict, 409),
    (InvalidTransition, 409),
    (ProcessorTimeout, 504),
    (GatewayError, 502),
)


def status_code_for(error: LendingError) -> int:
    for error_type, status_code in STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 500


def _error_body(error: LendingError) -> dict:
    body = {"detail": str(error), "error": type(error).__name__}
    if isinstance(error, ProcessorRejected):
        body["error_code"] = error.code
    current = getattr(error, "current", None)
    if current is not None:
        body["current_status"] = getattr(current, "value", current)
    return body


async def lending_error_handler(request: Request, exc: LendingError) -> JSONResponse:
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status_code, content=_error_body(exc))


def register_exception_handlers(app: FastAPI) -> None:
    """Install the LendingError handler on an app"""
    app.add_exception_handler(LendingError, lending_error_handler)
