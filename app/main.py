import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from app.core.config import settings
from app.core.database import AsyncSessionLocal, SchemaCapabilities, create_tables, engine
from app.core.email import email_service
from app.core.logging_config import setup_logging
from app.core.redis import redis_client
from app.core.websocket import connection_manager
from app.api.v1.router import api_router
from app.api.v1.endpoints.websocket import websocket_endpoint
from app.services.realtime import RealtimeHub
from app.utils.exceptions import CircleException

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle"""
    # Startup
    setup_logging()
    logger.info(f"Starting {settings.APP_NAME} {settings.APP_VERSION} ({settings.ENVIRONMENT})")

    if settings.DB_AUTO_CREATE:
        await create_tables()
    capabilities = await SchemaCapabilities.probe()

    if settings.REDIS_ENABLED:
        try:
            await redis_client.connect()
        except Exception as e:
            logger.error(f"Redis unavailable, continuing without it: {e}")

    # Tests install their own hub before startup
    if getattr(app.state, "hub", None) is None:
        app.state.hub = RealtimeHub(
            settings,
            AsyncSessionLocal,
            connection_manager,
            capabilities,
            redis_client=redis_client,
            email_service=email_service,
        )
    await app.state.hub.start()

    yield

    # Shutdown
    logger.info("Shutting down...")
    await app.state.hub.stop()
    await redis_client.disconnect()
    await engine.dispose()


# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    openapi_url="/api/v1/openapi.json",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    lifespan=lifespan
)

# Set up CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CircleException)
async def circle_exception_handler(request: Request, exc: CircleException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.message, "code": exc.code}
    )


# Include API router
app.include_router(api_router, prefix="/api/v1")

# WebSocket endpoint for presence, notifications and activity
app.websocket("/ws")(websocket_endpoint)


# Root endpoint
@app.get("/")
async def root():
    return {
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "docs": "/api/docs",
        "redoc": "/api/redoc",
        "health": "/health",
        "api": "/api/v1",
        "websocket": "/ws"
    }


# Health check endpoint
@app.get("/health")
async def health_check(request: Request):
    hub = request.app.state.hub

    database_status = "healthy"
    try:
        async with hub.session_factory() as db:
            await db.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning(f"Database health check failed: {e}")
        database_status = "unhealthy"

    if not settings.REDIS_ENABLED:
        redis_status = "disabled"
    else:
        redis_status = "healthy"
        try:
            if not await redis_client.ping():
                redis_status = "unhealthy"
        except Exception as e:
            logger.warning(f"Redis health check failed: {e}")
            redis_status = "unhealthy"

    healthy = database_status == "healthy" and redis_status != "unhealthy"
    return {
        "status": "healthy" if healthy else "degraded",
        "services": {
            "database": database_status,
            "redis": redis_status
        },
        "realtime": hub.stats()
    }
