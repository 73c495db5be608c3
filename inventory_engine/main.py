"""
Inventory Engine — FastAPI entrypoint
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from inventory_engine.api import health, orders, stock
from inventory_engine.core.config import get_settings
from inventory_engine.core.errors import (
    ConcurrencyConflict, InsufficientStock, InventoryError, NotFound, ValidationError,
)
from inventory_engine.core.redis_client import close_redis
from inventory_engine.db.database import Base, engine
from inventory_engine.engine.broadcast import configure_broadcasting

settings = get_settings()
logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)
    configure_broadcasting()
    yield
    close_redis()
    engine.dispose()


app = FastAPI(
    title="Inventory Engine",
    description="FEFO batch consumption, deduplicated stock alerts and order pricing.",
    version=settings.SERVICE_VERSION,
    lifespan=lifespan,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url=None,
)

app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_credentials=True,
                   allow_methods=["*"], allow_headers=["*"])

if settings.METRICS_ENABLED:
    Instrumentator().instrument(app).expose(app, endpoint="/metrics")

app.include_router(stock.router)
app.include_router(orders.router)
app.include_router(health.router)


@app.exception_handler(InventoryError)
async def inventory_error_handler(request: Request, exc: InventoryError):
    if isinstance(exc, NotFound):
        return JSONResponse(status_code=404, content={"detail": str(exc)})
    if isinstance(exc, ValidationError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})
    if isinstance(exc, InsufficientStock):
        return JSONResponse(
            status_code=409,
            content={
                "detail": str(exc),
                "material_id": exc.material_id,
                "requested": str(exc.requested),
                "available": str(exc.available),
                "shortfall": str(exc.shortfall),
            },
        )
    if isinstance(exc, ConcurrencyConflict):
        return JSONResponse(status_code=409, content={"detail": str(exc)})
    logger.error("Unhandled inventory error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": str(exc)})


@app.get("/")
async def root():
    return {"service": settings.SERVICE_NAME, "version": settings.SERVICE_VERSION}
