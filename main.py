import logging

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from consent_lineage.config import settings
from consent_lineage.database import create_tables
from consent_lineage.exception_handlers import register_exception_handlers
from consent_lineage.middleware.logging import StructuredLoggingMiddleware, setup_structured_logging
from consent_lineage.routes import consent_sync
from consent_lineage.services.scope_matrix import ScopeMatrix
from consent_lineage.services.validity_engine import build_validity_engine

setup_structured_logging(log_level=settings.log_level, json_format=settings.log_json)
logger = logging.getLogger(__name__)


def create_app(scope_matrix: ScopeMatrix | None = None) -> FastAPI:
    """Create the FastAPI application, optionally with a scope matrix for the validity engine."""
    app = FastAPI(
        title=settings.app_name,
        description="Consent lineage synchronization server",
        debug=settings.debug,
        version=settings.app_version,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    app.add_middleware(StructuredLoggingMiddleware)

    register_exception_handlers(app)

    app.include_router(consent_sync.router, prefix="/api/v1")

    @app.get("/health", tags=["Health"])
    async def health():
        return {"status": "healthy", "version": settings.app_version}

    @app.on_event("startup")
    async def startup_event():
        logger.info("Starting up the application...")
        if settings.debug or settings.database_url.startswith("sqlite"):
            await create_tables()
            logger.info("Database tables created (if not existing).")
        app.state.validity_engine = build_validity_engine(scope_matrix=scope_matrix)

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("Shutting down the application...")

    if settings.debug:
        logger.info(f"Running in {settings.environment} mode")
        logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO)

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=settings.debug)
