"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware

from bonsai.api import messages, websocket
from bonsai.core.config import settings
from bonsai.core.db import init_db
from bonsai.core.metrics import get_metrics
from bonsai.core.structured_logging import configure_structlog, get_logger
from bonsai.services.session_service import get_bonsai_session

# Configure structured logging
configure_structlog(log_level=settings.log_level)
struct_logger = get_logger(__name__)

# Also configure standard logging for compatibility
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Initialize database tables
init_db()

struct_logger.info(
    "application_starting",
    project_name=settings.project_name,
    version=settings.project_version,
    database_type="SQLite" if settings.is_sqlite else "other",
    log_level=settings.log_level,
    llm_base_url=settings.llm_base_url,
    llm_model=settings.llm_model,
    retry_cap=settings.llm_max_attempts if settings.has_retry_cap else "unbounded"
)

logger.info(f"Starting {settings.project_name} v{settings.project_version}")
if settings.is_sqlite:
    logger.info(f"Database: SQLite - {settings.database_url}")
else:
    # Hide credentials in logs
    db_url_display = settings.database_url.split("@")[-1] if "@" in settings.database_url else settings.database_url
    logger.info(f"Database: {db_url_display}")
logger.info(f"LLM endpoint: {settings.llm_base_url} ({settings.llm_model})")
if not settings.has_retry_cap:
    logger.warning("LLM retries are unbounded; set BONSAI_LLM_MAX_ATTEMPTS to cap them.")


@asynccontextmanager
async def lifespan(app: FastAPI):
    session = get_bonsai_session()
    restored = await session.startup()
    struct_logger.info(
        "session_started",
        session_id=session.store.session_id,
        restored=restored,
        nodes=len(session.store.history())
    )
    yield


# Create FastAPI app
app = FastAPI(
    title=settings.project_name,
    description="Branching version tree for LLM-assisted code evolution",
    version=settings.project_version,
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(messages.router)
app.include_router(websocket.router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "BonsAIDE API",
        "version": settings.project_version,
        "docs": "/docs",
        "events": "/events"
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    session = get_bonsai_session()
    return {
        "status": "healthy",
        "database": "connected",
        "session_started": session.started
    }


@app.get("/metrics")
async def metrics():
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format for scraping.
    Metrics include:
    - Generated nodes, durations and token usage by activity
    - LLM call outcomes (success, retry, error)
    - Trims, snapshot imports/exports and analyzer availability
    """
    metrics_data = get_metrics()
    return Response(content=metrics_data, media_type="text/plain; version=0.0.4; charset=utf-8")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "bonsai.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.api_reload
    )
