# labbo/main.py
from contextlib import asynccontextmanager

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from fastapi import FastAPI, HTTPException, Request, status as fastapi_status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from loguru import logger
from pydantic import ValidationError
from pymongo.errors import PyMongoError
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

from labbo.core import config
from labbo.core.config import setup_logging
from labbo.core.rate_limiter import get_rate_limiter, rate_limit_exception_handler
from labbo.middleware.logging import RequestLoggingMiddleware
from labbo.middleware.authentication import AuthMiddleware
from labbo.db.database import init_db, close_db, get_client
from labbo.api.v1.api import api_router_v1
from labbo.scheduler.jobs import send_due_reminders, notify_overdue_borrowings, cleanup_expired_tokens

setup_logging()

# --- Scheduler Instance ---
scheduler = AsyncIOScheduler(timezone=config.SCHEDULER_TIMEZONE)


def register_jobs() -> None:
    scheduler.add_job(
        send_due_reminders,
        trigger=CronTrigger(hour=8, minute=0),
        id="due_reminders_job",
        name="Send Due Date Reminders",
        replace_existing=True,
        misfire_grace_time=60 * 60,
    )
    scheduler.add_job(
        notify_overdue_borrowings,
        trigger=CronTrigger(hour=9, minute=0),
        id="overdue_notices_job",
        name="Notify Overdue Borrowings",
        replace_existing=True,
        misfire_grace_time=60 * 60,
    )
    scheduler.add_job(
        cleanup_expired_tokens,
        trigger=IntervalTrigger(hours=6),
        id="token_cleanup_job",
        name="Remove Expired Tokens",
        replace_existing=True,
        misfire_grace_time=60 * 15,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application startup...")
    await init_db()
    logger.info("Database initialized.")
    if config.SCHEDULER_ENABLED:
        register_jobs()
        scheduler.start()
        logger.info(f"Scheduler started with timezone: {scheduler.timezone}")
    else:
        logger.info("Scheduler disabled (SCHEDULER_ENABLED=false).")
    yield
    logger.info("Application shutdown...")
    if scheduler.running:
        scheduler.shutdown()
    close_db()


app = FastAPI(
    title="Labbo Inventory API",
    description="Laboratory equipment catalog, borrowing workflow and analytics.",
    version="0.1.0",
    lifespan=lifespan,
)

# --- Error handling ---
app.add_exception_handler(RateLimitExceeded, rate_limit_exception_handler)


@app.exception_handler(RequestValidationError)
@app.exception_handler(ValidationError)
async def validation_exception_handler(request: Request, exc: ValidationError):
    # ctx may hold exception instances that JSON cannot encode
    errors = [{k: v for k, v in error.items() if k not in ("ctx", "url", "input")} for error in exc.errors()]
    logger.warning(f"Validation Error on {request.url.path}: {errors}")
    return JSONResponse(
        status_code=fastapi_status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": "Validation Error", "errors": errors},
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.warning(f"HTTP Exception: Status={exc.status_code}, Detail={exc.detail}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail},
                        headers=getattr(exc, "headers", None))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled Exception: {exc}", exc_info=True)
    return JSONResponse(status_code=fastapi_status.HTTP_500_INTERNAL_SERVER_ERROR,
                        content={"detail": "An internal server error occurred."})


# --- Middleware (last added runs first) ---
app.add_middleware(AuthMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(GZipMiddleware, minimum_size=500)
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.state.limiter = get_rate_limiter()

app.include_router(api_router_v1)
app.mount(config.MEDIA_URL, StaticFiles(directory=str(config.MEDIA_ROOT), check_dir=False), name="media")


@app.get("/")
async def read_root():
    return {"message": "Labbo Inventory API", "docs": "/docs"}


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/ping-mongodb")
async def ping_mongodb():
    try:
        await get_client().admin.command("ping")
        return {"status": "success", "message": "MongoDB connection is healthy."}
    except PyMongoError:
        raise HTTPException(status_code=503, detail="MongoDB connection failed.")
