import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from unitrack.app.api.errors import tracking_error_handler
from unitrack.app.api.v1.router import router as v1_router
from unitrack.app.core.config import settings
from unitrack.app.core.logging_config import LogContext, configure_logging, get_logger
from unitrack.services.errors import TrackingError

logger = get_logger("app")


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(level=settings.log_level, json_output=settings.log_json)
    logger.info("app_started", extra={"version": app.version})
    yield


app = FastAPI(title="UNITRACK", version="0.1.0", lifespan=lifespan)
app.add_exception_handler(TrackingError, tracking_error_handler)


@app.middleware("http")
async def correlation_id(request: Request, call_next):
    cid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    with LogContext.bind(correlation_id=cid):
        response = await call_next(request)
    response.headers["X-Request-ID"] = cid
    return response


app.include_router(v1_router, prefix="/v1")
