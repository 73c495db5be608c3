"""
Inventory Engine — Health endpoint
"""
from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text

from inventory_engine.core.config import get_settings
from inventory_engine.core.redis_client import get_redis
from inventory_engine.db.database import engine

settings = get_settings()
router = APIRouter(tags=["health"])


@router.get("/health")
def health_check():
    deps: dict[str, str] = {}
    healthy = True

    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        deps["database"] = "ok"
    except Exception as e:
        deps["database"] = f"error: {str(e)[:100]}"
        healthy = False

    if settings.BROADCAST_TRANSPORT == "redis":
        try:
            get_redis().ping()
            deps["redis"] = "ok"
        except Exception as e:
            deps["redis"] = f"error: {str(e)[:100]}"
            healthy = False

    return JSONResponse(
        content={
            "status": "healthy" if healthy else "degraded",
            "service": settings.SERVICE_NAME,
            "version": settings.SERVICE_VERSION,
            "dependencies": deps,
        },
        status_code=200 if healthy else 503,
    )
