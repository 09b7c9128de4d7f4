"""
Adpulse: FastAPI backend for the ads sync and insight pipeline.

The API manages provider connections and exposes sync runs, the change
ledger and recommendations. Syncs and recommendation generation run in the
worker process (python -m adpulse.worker); /api/cron/* lets an external cron
enqueue the same jobs.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from adpulse.auth import require_auth
from adpulse.config import get_settings
from adpulse.database import check_db_connection, init_db
from adpulse.routers import changes, connections, cron, recommendations, sync_runs

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Adpulse API...")
    try:
        await init_db()
        logger.info("Database initialized, all tables ready.")
    except Exception as e:
        logger.error(f"Startup failed (DB/init): {e}", exc_info=True)
        # Still yield so /api/health can report degraded
    yield
    logger.info("Shutting down...")


app = FastAPI(
    title="Adpulse",
    description="Meta and Google Ads sync, insights and playbook recommendations",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Register Routers (all require auth) ──────────────────────────────
_auth = [Depends(require_auth)]
app.include_router(connections.router, prefix="/api/connections", tags=["Connections"], dependencies=_auth)
app.include_router(sync_runs.router, prefix="/api/sync-runs", tags=["Sync Runs"], dependencies=_auth)
app.include_router(changes.router, prefix="/api/changes", tags=["Change History"], dependencies=_auth)
app.include_router(recommendations.router, prefix="/api/recommendations", tags=["Recommendations"], dependencies=_auth)
app.include_router(cron.router, prefix="/api")  # CRON_SECRET instead of API key


@app.get("/api/health")
async def health_check():
    db_ok = await check_db_connection()
    return {
        "status": "healthy" if db_ok else "degraded",
        "service": "Adpulse",
        "database": "connected" if db_ok else "disconnected",
    }
