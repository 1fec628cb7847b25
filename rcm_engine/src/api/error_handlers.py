from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.encoders import jsonable_encoder
import structlog

from ..core.exceptions import RCMError

logger = structlog.get_logger(__name__)


def error_envelope(message: str, retryable: bool = False, details=None) -> dict:
    body = {"success": False, "message": message, "retryable": retryable}
    if details:
        body["details"] = details
    return body


async def rcm_error_handler(request: Request, exc: RCMError) -> JSONResponse:
    log = logger.warning if exc.status_code < 500 else logger.error
    log("Request failed", path=request.url.path, error_type=type(exc).__name__,
        status_code=exc.status_code, error=exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content=jsonable_encoder(error_envelope(exc.message, exc.retryable, exc.details)),
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg')}" for err in exc.errors()
    ]
    logger.info("Request body rejected", path=request.url.path, errors=errors)
    return JSONResponse(status_code=400, content=error_envelope("Request validation failed.", details={"errors": errors}))


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled error", path=request.url.path, error=str(exc), exc_info=exc)
    return JSONResponse(status_code=500, content=error_envelope("Internal server error."))


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(RCMError, rcm_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)


def success_envelope(data) -> dict:
    return {"success": True, "data": data}
