"""Health check endpoints."""
from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
import redis

from sitelift.database import get_db
from sitelift.services.locks import get_redis

router = APIRouter()


@router.get("/health")
@router.head("/health")
async def health_check():
    """Basic health check."""
    return {"status": "healthy", "service": "sitelift-backend"}


@router.get("/health/detailed")
async def detailed_health_check(request: Request, db: Session = Depends(get_db)):
    """
    Database and Redis connectivity plus scheduler state.
    """
    checks = {
        "api": "healthy",
        "database": "unknown",
        "redis": "unknown"
    }

    try:
        db.execute(text("SELECT 1"))
        checks["database"] = "healthy"
    except SQLAlchemyError as e:
        checks["database"] = f"unhealthy: {str(e)}"

    try:
        get_redis().ping()
        checks["redis"] = "healthy"
    except redis.RedisError as e:
        checks["redis"] = f"unhealthy: {str(e)}"

    overall_status = "healthy" if all(
        v == "healthy" for v in checks.values()
    ) else "degraded"

    scheduler = getattr(request.app.state, "scheduler", None)
    return {
        "status": overall_status,
        "checks": checks,
        "scheduler": "running" if scheduler is not None and scheduler.running else "stopped"
    }
