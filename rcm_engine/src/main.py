from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Response
from prometheus_client import REGISTRY, generate_latest
from prometheus_client.exposition import CONTENT_TYPE_LATEST
from sqlalchemy import text
import structlog

from .api.dependencies import get_container
from .api.error_handlers import register_error_handlers
from .api.routes import (
    account_routes,
    ar_routes,
    claims_routes,
    collection_routes,
    denial_routes,
    remittance_routes,
)
from .core.config.settings import get_settings
from .core.container import ServiceContainer
from .core.logging_config import setup_logging
from .core.scheduler import JobScheduler

setup_logging()
logger = structlog.get_logger(__name__)


def create_app(container: Optional[ServiceContainer] = None, start_scheduler: Optional[bool] = None) -> FastAPI:
    """
    Builds the API. A pre-built container (tests) is used as is and left open on
    shutdown; otherwise one is created from settings at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_container = container is None
        app.state.container = container or ServiceContainer(get_settings())
        settings = app.state.container.settings
        run_scheduler = settings.SCHEDULER_ENABLED if start_scheduler is None else start_scheduler

        scheduler = None
        if run_scheduler:
            scheduler = JobScheduler(app.state.container)
            scheduler.start()
        logger.info("Application startup complete", scheduler_enabled=run_scheduler)
        try:
            yield
        finally:
            if scheduler is not None:
                scheduler.shutdown()
            if owns_container:
                await app.state.container.close()
            logger.info("Application shutdown complete")

    app = FastAPI(title="RCM Engine", version="1.0.0", lifespan=lifespan)
    register_error_handlers(app)

    app.include_router(claims_routes.router, prefix="/api/v1/claims", tags=["Claims"])
    app.include_router(remittance_routes.router, prefix="/api/v1/remittances", tags=["Remittances"])
    app.include_router(denial_routes.router, prefix="/api/v1", tags=["Denials"])
    app.include_router(account_routes.router, prefix="/api/v1/accounts", tags=["Accounts"])
    app.include_router(ar_routes.router, prefix="/api/v1/ar", tags=["AR Aging"])
    app.include_router(collection_routes.router, prefix="/api/v1/collections", tags=["Collections"])

    @app.get("/health", tags=["Monitoring"])
    async def health_check():
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": "1.0.0",
        }

    @app.get("/ready", tags=["Monitoring"])
    async def readiness_check(container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
        checks = {"database": {"status": "unhealthy", "details": "Check not performed"}}
        try:
            async with container.engine.connect() as conn:
                result = await conn.execute(text("SELECT 1"))
                if result.scalar_one() == 1:
                    checks["database"] = {"status": "healthy", "details": "Successfully connected and queried."}
                else:
                    checks["database"]["details"] = "Query executed but result was unexpected."
        except Exception as e:
            logger.error("Readiness check: Database connection failed", error=str(e))
            checks["database"]["details"] = f"Connection failed: {e}"

        if checks["database"]["status"] != "healthy":
            logger.warning("Readiness check failed", overall_status=checks)
            raise HTTPException(status_code=503, detail=checks)
        return checks

    @app.get("/metrics", tags=["Monitoring"])
    async def get_metrics():
        """Exposes Prometheus metrics."""
        return Response(generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()
