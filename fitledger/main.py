"""
Main FastAPI application
"""
import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from fitledger.config.database import db_config
from fitledger.config.settings import settings
from fitledger.routes import analytics, invoices, lab_bookings, partners
from fitledger.services.billing_scheduler import run_billing_scheduler
from fitledger.utils.errors import BillingError

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown events"""
    # Startup
    await db_config.connect_db()
    scheduler = None
    if settings.BILLING_SCHEDULER_ENABLED:
        scheduler = asyncio.create_task(
            run_billing_scheduler(settings.BILLING_SCHEDULER_INTERVAL_SECONDS)
        )
    print(f"🚀 {settings.APP_NAME} v{settings.VERSION} started")
    yield
    # Shutdown
    if scheduler:
        scheduler.cancel()
    await db_config.close_db()
    print("👋 Application shutdown")


# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    log = logger.error if exc.status_code >= 500 else logger.info
    log("⚠️  %s %s → %s %s", request.method, request.url.path, exc.status_code, exc.code)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    body = None
    try:
        body = await request.json()
    except Exception:
        pass
    # Round-trip through json with default=str to handle non-serializable objects (e.g. ValueError)
    safe_errors = json.loads(json.dumps(exc.errors(), default=str))
    logger.warning("❌ 422 VALIDATION ERROR on %s %s: %s", request.method, request.url.path,
                   json.dumps(safe_errors))
    if body:
        logger.debug("📦 BODY SENT: %s", json.dumps(body, default=str))
    return JSONResponse(status_code=422, content={"detail": safe_errors})


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    duration = time.time() - start_time
    logger.info("🌐 %s %s - %s (%.2fs)", request.method, request.url.path, response.status_code, duration)
    return response


# Include routers
app.include_router(lab_bookings.router, prefix="/api")
app.include_router(invoices.router, prefix="/api")
app.include_router(partners.router, prefix="/api")
app.include_router(analytics.router, prefix="/api")
app.include_router(analytics.class_bookings_router, prefix="/api")
app.include_router(analytics.events_router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "app": settings.APP_NAME,
        "version": settings.VERSION,
        "status": "running",
    }


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy"}
