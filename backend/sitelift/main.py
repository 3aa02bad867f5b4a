"""Main FastAPI application."""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from sitelift.config import get_settings
from sitelift.middleware.logging import LoggingMiddleware, configure_logging, get_logger
from sitelift.api import analytics, experiments, health, optimizer
from sitelift.database import engine, Base
from sitelift.jobs.scheduler import OptimizerScheduler
from sitelift.services.publisher import close_publisher

settings = get_settings()
configure_logging(settings.debug)
logger = get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan - startup and shutdown."""
    # Startup
    Base.metadata.create_all(bind=engine)
    logger.info("database_ready")

    scheduler = OptimizerScheduler(settings=settings)
    app.state.scheduler = scheduler
    if settings.scheduler_enabled:
        scheduler.start()

    yield  # App runs here

    # Shutdown
    await scheduler.stop()
    await close_publisher()
    logger.info("shutdown_complete", service=settings.app_name)

# Create FastAPI app
app = FastAPI(
    title="SiteLift",
    description="Autonomous A/B testing optimizer for restaurant websites",
    version="0.1.0",
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    lifespan=lifespan
)

# CORS middleware - operator dashboard origins, any origin in debug
allowed_origins = [
    "http://localhost:5173",  # Local development
    "http://localhost:3000",  # Alternative local port
    settings.frontend_url,     # Operator dashboard
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_origin_regex=".*" if settings.debug else None,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Trace-ID"]
)

# Logging middleware
app.add_middleware(LoggingMiddleware)

# Include routers
app.include_router(health.router, tags=["health"])
app.include_router(optimizer.router, tags=["optimizer"])
app.include_router(experiments.router, tags=["experiments"])
app.include_router(analytics.router, tags=["analytics"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": settings.app_name,
        "version": "0.1.0",
        "docs": "/docs" if settings.debug else "disabled",
        "endpoints": {
            "health": "/health",
            "status": "GET /optimizer/{restaurant_id}",
            "run": "POST /optimizer/{restaurant_id}/run",
            "events": "POST /events"
        }
    }


# uvicorn sitelift.main:app --reload
