from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse

from unitrack.app.core.logging_config import get_logger
from unitrack.services.errors import TrackingError

logger = get_logger("api.errors")

STATUS_BY_CODE = {
    "NOT_FOUND": 404,
    "INVALID_TRANSITION": 409,
    "LOCATION_MISMATCH": 409,
    "CONVERSION_NOT_ALLOWED": 409,
    "CONCURRENCY_CONFLICT": 409,
    "IMMUTABLE_RECORD": 409,
    "VALIDATION_ERROR": 422,
    "NETWORK_ERROR": 503,
    "TIMEOUT": 503,
}


def status_for(code: str | None) -> int:
    return STATUS_BY_CODE.get(code or "", 400)


async def tracking_error_handler(request: Request, exc: TrackingError) -> JSONResponse:
    logger.info("request_rejected", extra={"path": request.url.path, "error_code": exc.code})
    return JSONResponse(status_code=status_for(exc.code), content=exc.to_dict())
