"""
FastAPI Application Entry Point

This is the main application module that sets up the FastAPI app,
configures middleware, and includes all routers.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from audit_ledger.config import Settings, get_settings
from audit_ledger.database import Database
from audit_ledger.routers import access, admin, events, health
from audit_ledger.service import AuditService
from audit_ledger.services.store import AuditStore

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown events:
    - Startup: connect the pool, ensure the schema, start the audit pipeline
    - Shutdown: drain pending audit events, then close connections

    An audit service already placed on `app.state.audit` is used as is.
    """
    config: Settings = app.state.settings
    database: Optional[Database] = None

    logger.info("Starting Audit Ledger Service...")
    if getattr(app.state, "audit", None) is None:
        database = Database(config)
        await database.connect()
        await database.init_schema()
        app.state.audit = AuditService(AuditStore(database), config)

    await app.state.audit.start()
    logger.info("Audit Ledger Service started successfully")

    yield

    logger.info("Shutting down Audit Ledger Service...")
    await app.state.audit.stop()
    if database is not None:
        await database.disconnect()
    logger.info("Audit Ledger Service stopped")


def create_app(config: Optional[Settings] = None, audit: Optional[AuditService] = None) -> FastAPI:
    """
    Build the application.

    Args:
        config: Settings to use; defaults to the environment
        audit: Pre-built audit service (its lifecycle is still driven by
            the app lifespan)
    """
    config = config or settings

    app = FastAPI(
        title=config.app_name,
        version=config.app_version,
        description="""
    # Hospital Audit Ledger API

    Tamper-evident audit trail for a hospital platform:

    - **Hash Chaining**: every entry is chained to its predecessor
    - **Risk Classification**: deterministic, server-side
    - **Asynchronous Persistence**: batched writes, immediate flush for HIGH/CRITICAL
    - **Misuse Detection**: failed logins, patient record access, IP spread

    ## Compliance

    - Six-year retention with retention checkpoints
    - Weekly compliance reports
    - Monthly chain verification with an integrity hold on violation
    """,
        docs_url="/docs" if config.debug else None,
        redoc_url="/redoc" if config.debug else None,
        openapi_url="/openapi.json" if config.debug else None,
        lifespan=lifespan
    )
    app.state.settings = config
    app.state.audit = audit

    # CORS (configure appropriately for production)
    if config.debug:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.middleware("http")
    async def add_request_timing(request: Request, call_next):
        """Add request timing header for monitoring."""
        start_time = time.time()
        response = await call_next(request)
        process_time = time.time() - start_time
        response.headers["X-Process-Time"] = str(process_time)
        return response

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """
        Global exception handler.

        Returns generic error responses to prevent information leakage.
        Detailed errors are logged internally.
        """
        logger.exception(f"Unhandled exception: {exc}")

        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"}
        )

    app.include_router(events.router)
    app.include_router(access.router)
    app.include_router(admin.router)
    app.include_router(health.router)

    @app.get("/", tags=["root"])
    async def root():
        """
        Root endpoint.

        Returns basic service information.
        """
        return {
            "service": config.app_name,
            "version": config.app_version,
            "status": "running"
        }

    return app


app = create_app()


# ============================================================================
# Development Server
# ============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "audit_ledger.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.workers
    )
