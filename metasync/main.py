"""MetaSync - FastAPI Application Entry Point.

Incremental Meta leads & ad insights sync service.
"""

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from metasync.database import test_connection, _mask_url
from metasync.container import Container
from metasync.scheduler.jobs import start_scheduler, stop_scheduler
from metasync.api.errors import register_error_handlers
from metasync.api.meta_routes import router as meta_router
from metasync.api.sync_routes import router as sync_router
from metasync.core.logging import get_logger

logger = get_logger("main")


IS_SERVERLESS = bool(
    os.environ.get("VERCEL") or os.environ.get("AWS_LAMBDA_FUNCTION_NAME")
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle."""
    logger.info("🚀 MetaSync starting up...")
    logger.info(f"🌍 Environment: {'SERVERLESS' if IS_SERVERLESS else 'LOCAL'}")
    container: Container = getattr(app.state, "container", None) or Container()
    app.state.container = container
    # Test connection first
    db_ok = test_connection(container.engine)
    if db_ok:
        try:
            container.startup()
        except Exception as e:
            logger.error(f"❌ Table creation failed: {e}")
    else:
        logger.error("❌ Database NOT connected; endpoints will fail")
    scheduler = None if IS_SERVERLESS else start_scheduler(container)
    yield
    stop_scheduler(scheduler)
    await container.close()
    logger.info("MetaSync shut down")


def create_app(container: Container | None = None) -> FastAPI:
    app = FastAPI(
        title="MetaSync",
        description="Incremental Meta lead-form and ad insights sync with backfill and credential management.",
        version="1.0.0",
        lifespan=lifespan,
    )
    if container is not None:
        app.state.container = container

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    # Routers
    app.include_router(meta_router)
    app.include_router(sync_router)

    @app.get("/health", tags=["System"])
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "service": "metasync",
            "version": "1.0.0",
        }

    @app.get("/debug/db", tags=["System"])
    async def debug_db():
        """Debug endpoint - check database connectivity."""
        engine = app.state.container.engine
        url = engine.url.render_as_string(hide_password=False)

        error = None
        connected = False
        try:
            connected = test_connection(engine)
        except Exception as e:
            error = str(e)

        backend = "postgresql" if url.startswith("postgresql") else "sqlite"
        return {
            "connected": connected,
            "backend": backend,
            "url": _mask_url(url),
            "environment": "serverless" if IS_SERVERLESS else "local",
            "error": error,
        }

    return app


app = create_app()
