import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from bloodnode.errors import BloodNodeError

logger = logging.getLogger(__name__)


async def _blood_node_error_handler(request: Request, exc: BloodNodeError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )


async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={
            "detail": jsonable_encoder(exc.errors()),
            "code": "validation_error",
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(BloodNodeError, _blood_node_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
