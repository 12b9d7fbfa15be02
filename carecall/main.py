import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from carecall.core.config import settings
from carecall.core.errors import CareCallError, ErrorCode
from carecall.core.logging_config import configure_logging
from carecall.db.base import Base
from carecall.db.session import engine
from carecall.ratelimit.api import router as ratelimit_router
from carecall.reminders.api import router as reminders_router
from carecall.schedules.api import router as schedules_router

logger = logging.getLogger(__name__)

STATUS_BY_CODE = {
    ErrorCode.INVALID_INPUT: 400,
    ErrorCode.INVALID_TIMEZONE: 400,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.REMINDER_NOT_PAUSABLE: 409,
    ErrorCode.SNOOZE_LIMIT_REACHED: 409,
    ErrorCode.INVALID_TRANSITION: 409,
    ErrorCode.SCHEDULE_CONFLICT: 409,
    ErrorCode.CONCURRENT_MODIFICATION: 409,
    ErrorCode.LEAD_TIME_TOO_SHORT: 422,
    ErrorCode.RATE_LIMITED: 429,
    ErrorCode.DATABASE_ERROR: 503,
}


async def carecall_error_handler(request: Request, exc: CareCallError) -> JSONResponse:
    status_code = STATUS_BY_CODE.get(exc.code, 400)
    headers = None
    if exc.code == ErrorCode.RATE_LIMITED and exc.details.get("retry_after_seconds"):
        headers = {"Retry-After": str(exc.details["retry_after_seconds"])}
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code.value} {exc.message}")
    return JSONResponse(status_code=status_code, content=exc.to_dict(), headers=headers)


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title=settings.PROJECT_NAME, version=settings.VERSION)
    app.add_exception_handler(CareCallError, carecall_error_handler)
    app.include_router(reminders_router, prefix=f"{settings.API_V1_STR}/reminders", tags=["reminders"])
    app.include_router(schedules_router, prefix=f"{settings.API_V1_STR}/schedules", tags=["schedules"])
    app.include_router(ratelimit_router, prefix=f"{settings.API_V1_STR}/ratelimit", tags=["ratelimit"])

    @app.get("/health")
    def health():
        return {"status": "ok", "environment": settings.ENVIRONMENT.value}

    if settings.METRICS_ENABLED:
        Instrumentator().instrument(app).expose(app, endpoint="/metrics")
    return app


def init_db() -> None:
    """Create tables for local development; production schemas are managed by migrations."""
    Base.metadata.create_all(bind=engine)


app = create_app()


if __name__ == "__main__":
    import uvicorn

    init_db()
    uvicorn.run(app, host="0.0.0.0", port=8000)
