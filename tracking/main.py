# backend/tracking/main.py
import logging
import asyncio
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError
from filelock import FileLock, Timeout

from tracking.api.v1.router import api_router_v1
from tracking.core.config import settings
from tracking.core.db import engine
from tracking.models.analytics import Base
from tracking.services.meta_capi import MetaCAPIService, run_periodically

# --- Logging ---
log_level = settings.LOGGING_LEVEL.upper()
logging.basicConfig(
    level=log_level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)
logger.info(f"Starting application with log level: {log_level}")


async def init_models():
    """Creates reporting tables. Guarded by a file lock so only one worker runs DDL."""
    lock = FileLock("db_init.lock", timeout=10)
    try:
        with lock:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            logger.info("Database tables ensured.")
    except Timeout:
        logger.info("Could not acquire lock, another worker is creating tables. Skipping.")


# --- Lifespan ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application startup: Initializing resources...")
    await init_models()

    # One delivery engine per process: it owns the dedup store and the retry queue.
    capi_service = MetaCAPIService.from_settings()
    app.state.capi_service = capi_service

    background_jobs = [
        asyncio.create_task(run_periodically(
            "dedup-sweep", settings.DEDUP_SWEEP_INTERVAL_SECONDS, capi_service.deduplicator.sweep
        )),
    ]
    if settings.RETRY_QUEUE_INTERVAL_SECONDS > 0:
        background_jobs.append(asyncio.create_task(run_periodically(
            "retry-queue", settings.RETRY_QUEUE_INTERVAL_SECONDS, capi_service.retry_queued_events
        )))
    logger.info("Services initialized in current worker.")

    try:
        yield
    finally:
        logger.info("Application shutdown in this worker: Cleaning up resources...")
        for job in background_jobs:
            job.cancel()
        await asyncio.gather(*background_jobs, return_exceptions=True)
        if len(capi_service.retry_queue):
            logger.warning(f"Shutting down with {len(capi_service.retry_queue)} undelivered events in the retry queue.")
        await capi_service.close_client()
        await engine.dispose()
        logger.info("Resources cleaned up successfully in this worker.")


app = FastAPI(
    title=settings.PROJECT_NAME,
    version="1.0.0",
    description="Conversion tracking backend for the storefront: Meta Conversions API relay, page views and lead clicks.",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url=f"{settings.API_V1_STR}/openapi.json"
)

# --- CORS ---
origins = [
    settings.CLIENT_URL,
    "http://localhost:5173",  # Vite dev server
    "http://127.0.0.1:5173",
]
origins = [origin.strip('/# ') for origin in origins if origin]

logger.info(f"Allowed CORS origins: {origins}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,  # the _fbp cookie must reach /events/*
    allow_methods=["*"],
    allow_headers=["*", "X-Admin-API-Key"],
)

# --- Error handlers ---
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Request validation error: {exc.errors()} for {request.method} {request.url}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": "Invalid request data", "errors": jsonable_encoder(exc.errors())},
    )

@app.exception_handler(ValidationError)
async def pydantic_validation_exception_handler(request: Request, exc: ValidationError):
    logger.error(f"Pydantic model validation error: {exc.errors()} for {request.method} {request.url}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Data validation error", "errors": jsonable_encoder(exc.errors())},
    )

@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled exception: {exc} for {request.method} {request.url}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error."},
    )

# --- Routers ---
app.include_router(api_router_v1, prefix=settings.API_V1_STR)
logger.info(f"Included API router at prefix: {settings.API_V1_STR}")

@app.get("/", tags=["Root"], summary="Health check")
async def read_root():
    """Simple liveness endpoint."""
    return {"status": "ok", "project": settings.PROJECT_NAME}
