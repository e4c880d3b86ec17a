"""FastAPI main application."""
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from typing import Optional
import os
import logging

from request_manager.config import Config, init_config, set_config
from request_manager.db.database import init_db
from request_manager.api.routes import router
from request_manager.core.dispatch import build_dispatchers
from request_manager.core.executor import get_supervisor
from request_manager.core.lifecycle import RequestLifecycle
from request_manager.services.notifications import build_notification_manager
from request_manager.services.tmdb import TmdbService

# Setup logging (level is adjusted from config in create_app)
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def find_config_path() -> str:
    """Support both /config/config.yaml (Docker) and ./config/config.yaml (local dev)."""
    config_path = os.getenv("CONFIG_PATH", "/config/config.yaml")
    possible_paths = [
        config_path,
        "/config/config.yaml",
        "./config/config.yaml",
        os.path.join(os.path.dirname(__file__), "..", "config", "config.yaml"),
    ]

    for path in possible_paths:
        if os.path.exists(path):
            return path

    error_msg = f"""
ERROR: Configuration file not found!

Tried the following paths:
{chr(10).join(f'  - {p}' for p in possible_paths)}

Please ensure:
1. The config directory is mounted in Docker: -v ./config:/config:ro
2. The file config/config.yaml exists (copy from config.example.yaml)
3. The CONFIG_PATH environment variable points to the correct file
"""
    logger.error(error_msg)
    raise FileNotFoundError(error_msg)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    supervisor = get_supervisor()
    if supervisor.pending:
        logger.info(f"Waiting for {supervisor.pending} background task(s) before shutdown")
        await supervisor.drain(timeout=30)


def create_app(app_config: Optional[Config] = None) -> FastAPI:
    """Build the application: config, database, services and routes."""
    if app_config is None:
        config_path = find_config_path()
        logger.info(f"Loading configuration from: {config_path}")
        app_config = init_config(config_path)
    else:
        set_config(app_config)

    logging.getLogger().setLevel(app_config.app.log_level.upper())

    data_dir = os.getenv("DATA_DIR", app_config.app.data_dir)
    try:
        init_db(data_dir, app_config.app.database_url)
    except Exception as e:
        logger.error(f"Failed to initialize database: {str(e)}")
        logger.error(f"Data directory: {data_dir}")
        logger.error("Please ensure the data volume is mounted and writable (-v ./data:/data)")
        raise

    if app_config.tmdb is None:
        raise ValueError("TMDB is not configured (tmdb.api_key is required)")

    metadata = TmdbService(app_config.tmdb)
    notifier = build_notification_manager(app_config.notifications)
    dispatchers = build_dispatchers(metadata, notifier)

    app = FastAPI(title="Request Manager", version="1.0.0", lifespan=lifespan)
    app.state.lifecycle = RequestLifecycle(dispatchers, notifier, metadata)
    app.include_router(router)

    # Global exception handler for unhandled exceptions
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle all unhandled exceptions with detailed logging."""
        logger.exception(f"Unhandled exception in {request.method} {request.url}")
        return JSONResponse(
            status_code=500,
            content={
                "error": str(exc),
                "type": exc.__class__.__name__,
                "message": f"Internal server error: {str(exc)}",
                "path": str(request.url),
                "method": request.method,
            }
        )

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {"message": "Request Manager API"}

    return app
