"""
Tafweej Ops API — FastAPI Application Entry Point
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from core.config import get_settings

settings = get_settings()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info(
        "Tafweej Ops API starting up",
        version=settings.app_version,
        stage_timezone=settings.stage_timezone,
        allocator_queue_policy=settings.allocator_queue_policy,
    )
    yield
    logger.info("Tafweej Ops API shutting down")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Stage admission and center capacity engine for pilgrim movement",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Import and register routers
from alerts.websocket import router as ws_router
from api.v1.routers import centers, pilgrim_groups, rpc, stage_alerts, stages

app.include_router(pilgrim_groups.router)
app.include_router(stages.router)
app.include_router(centers.router)
app.include_router(stage_alerts.router)
app.include_router(rpc.router)
app.include_router(ws_router)


@app.get("/health")
async def health_check():
    """Health check endpoint for load balancers."""
    return {"status": "healthy", "version": settings.app_version}
