"""Main FastAPI application"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from leadsync.api import dashboard, ingest, leads, sync
from leadsync.config import settings
from leadsync.models.base import init_db
from leadsync.scheduler import scheduler
from leadsync.security import BasicAuthMiddleware

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    # Startup
    logger.info(f"Starting LeadSync ({settings.system_tag} <-> {settings.remote_project_name})")
    init_db()
    scheduler.start()
    yield
    # Shutdown
    logger.info("Stopping LeadSync")
    scheduler.stop()


app = FastAPI(
    title="LeadSync",
    description="Bidirectional lead synchronization with a partner system",
    version="1.0.0",
    lifespan=lifespan,
)

# Optional built-in auth for the operator API; partner routes use their bearer token.
if settings.auth_enabled:
    if not settings.auth_username or not settings.auth_password:
        raise RuntimeError("AUTH_ENABLED=true requires AUTH_USERNAME and AUTH_PASSWORD to be set")
    app.add_middleware(
        BasicAuthMiddleware,
        username=settings.auth_username,
        password=settings.auth_password,
        allow_paths={"/health"},
        allow_prefixes=("/sync-ingest", "/sync-records"),
    )

# Include API routers
app.include_router(ingest.router)
app.include_router(leads.router)
app.include_router(sync.router)
app.include_router(dashboard.router)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "service": "LeadSync"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "leadsync.main:app",
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level=settings.log_level.lower(),
    )
