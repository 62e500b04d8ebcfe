import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from app.api.routes import permissions, schedules
from app.core.config import get_settings
from app.database.connection import Base, engine
import app.database.models.models  # noqa: F401

logger = logging.getLogger(__name__)


async def wait_for_db_connection(retries: int = 10, delay_seconds: float = 3) -> None:
    """Retry database connection to handle startup ordering in containers."""
    for attempt in range(1, retries + 1):
        try:
            with engine.connect() as connection:
                connection.execute(text("SELECT 1"))
            logger.info("Database connection established.")
            return
        except OperationalError as exc:
            if attempt == retries:
                logger.exception("Database unavailable after %s attempts.", retries)
                raise
            logger.info(
                "Database not ready (attempt %s/%s): %s. Retrying in %.1fs.",
                attempt,
                retries,
                exc,
                delay_seconds,
            )
            await asyncio.sleep(delay_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await wait_for_db_connection()
    Base.metadata.create_all(bind=engine)
    yield


settings = get_settings()

app = FastAPI(
    title="Message Scheduler API",
    version=settings.backend_version,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "detail": {
                "error": "validation_error",
                "message": "Request validation failed",
                "details": {"errors": _validation_errors(exc)},
            }
        },
    )


def _validation_errors(exc: RequestValidationError) -> list:
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg", ""), "type": error.get("type", "")}
        for error in exc.errors()
    ]


app.include_router(schedules.router)
app.include_router(permissions.router)


@app.get("/config")
async def get_config():
    """Get scheduler configuration."""
    return {
        "auth": {
            "enabled": settings.auth_enabled,
            "elevated_roles": settings.elevated_roles,
        },
        "scheduler": {
            "default_timezone": settings.scheduler_default_timezone,
            "query_default_limit": settings.schedule_query_default_limit,
            "query_max_limit": settings.schedule_query_max_limit,
            "log_fetch_limit": settings.schedule_log_fetch_limit,
        },
        "dispatch": {
            "max_concurrency": settings.dispatch_max_concurrency,
            "send_timeout_seconds": settings.dispatch_send_timeout_seconds,
            "configured_channels": [
                channel for channel, url in settings.gateway_urls().items() if url
            ],
        },
    }


@app.get("/")
def root():
    return {"message": "Message Scheduler API", "version": settings.backend_version}
