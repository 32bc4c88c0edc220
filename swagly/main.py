"""
Main FastAPI application for the Swagly proof review service
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from swagly.config import settings
from swagly.db.database import Database
from swagly.errors import SwaglyError
from swagly.api import system, proofs, passports, admin

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.APP_DEBUG else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def create_app(database: Optional[Database] = None) -> FastAPI:
    """Build the application around an explicitly owned storage handle"""
    db_handle = database or Database(
        settings.DATABASE_URL,
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager"""
        # Startup
        logger.info("Starting Swagly proof review service...")
        db_handle.open()
        if settings.APP_ENV != "production":
            db_handle.create_all()
        app.state.db = db_handle

        yield

        # Shutdown
        logger.info("Shutting down Swagly proof review service...")
        db_handle.close()

    app = FastAPI(
        title="Swagly",
        description="Activity proof review and SWAG token awards for event passports",
        version="1.0.0",
        lifespan=lifespan
    )
    # Available before startup as well, so tests can inject an opened handle
    app.state.db = db_handle

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(SwaglyError)
    async def swagly_error_handler(request: Request, exc: SwaglyError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "success": False,
                "error": {"code": exc.code, "message": exc.message},
                **exc.extras()
            }
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle uncaught exceptions."""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": {
                    "code": "INTERNAL_ERROR",
                    "message": str(exc) if settings.APP_DEBUG else "An unexpected error occurred"
                }
            }
        )

    # Include routers
    app.include_router(system.router, tags=["System"])
    app.include_router(proofs.router, prefix="/proofs", tags=["Proofs"])
    app.include_router(passports.router, prefix="/passports", tags=["Passports"])
    app.include_router(admin.router, prefix="/admin", tags=["Admin"])

    @app.get("/")
    async def root():
        """Root endpoint"""
        return {
            "service": "Swagly",
            "version": "1.0.0",
            "status": "running"
        }

    return app


app = create_app()
