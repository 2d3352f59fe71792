"""HealthScore API: FastAPI application entry point.

Run locally:
    uvicorn healthscore.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI

from healthscore.config import Settings, get_settings
from healthscore.enrichment.aggregator import DailyAggregator
from healthscore.enrichment.backfill import BackfillJob
from healthscore.enrichment.config_loader import get_enrichment_config
from healthscore.enrichment.diagnostics import AggregationDiagnostics
from healthscore.enrichment.extractor import EnrichmentExtractor
from healthscore.enrichment.payload_guard import PayloadGuard
from healthscore.enrichment.pipeline import IngestionPipeline
from healthscore.enrichment.repository import (
    PostgresDailyScoreRepository,
    PostgresEnrichmentRepository,
)
from healthscore.enrichment.store import EnrichmentStore
from healthscore.routers import admin, daily_scores, health, webhooks
from healthscore.services.connections import PostgresConnectionDirectory
from healthscore.services.database import Database
from healthscore.services.schema import ensure_schema

# ---------- Logging ----------

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("healthscore")


# ---------- Wiring ----------

def wire_components(app: FastAPI, db: Database, settings: Settings) -> None:
    """Build the ingestion and aggregation components on ``app.state``."""
    config = get_enrichment_config()

    directory = PostgresConnectionDirectory(db)
    enrichment_repo = PostgresEnrichmentRepository(db)
    daily_score_repo = PostgresDailyScoreRepository(db)

    aggregator = DailyAggregator(
        directory,
        enrichment_repo,
        daily_score_repo,
        lock=db.advisory_lock if settings.aggregation_advisory_lock else None,
    )
    diagnostics = AggregationDiagnostics()
    store = EnrichmentStore(enrichment_repo, aggregator, diagnostics)

    app.state.database = db
    app.state.enrichment_repo = enrichment_repo
    app.state.daily_score_repo = daily_score_repo
    app.state.diagnostics = diagnostics
    app.state.payload_guard = PayloadGuard.from_settings(settings, config)
    app.state.pipeline = IngestionPipeline(EnrichmentExtractor(directory, config), store)
    app.state.backfill_job = BackfillJob(
        enrichment_repo, aggregator, max_concurrent=settings.backfill_max_concurrent
    )


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks."""
    settings = get_settings()
    logger.info(
        "Starting HealthScore API v%s [%s]",
        settings.app_version,
        settings.environment,
    )
    db = Database.from_settings(settings)
    await db.open()
    if settings.auto_create_schema:
        await ensure_schema(db)
    wire_components(app, db, settings)
    try:
        yield
    finally:
        await db.close()
        logger.info("HealthScore API shut down")


# ---------- App factory ----------

def create_app(use_lifespan: bool = True) -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="HealthScore API",
        description=(
            "Wearable enrichment ingestion: per-device scores merged into "
            "one canonical daily health score per user."
        ),
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan if use_lifespan else None,
    )

    # ---------- Health check (outside v1 prefix, always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    v1_prefix = "/api/v1"

    app.include_router(webhooks.router, prefix=v1_prefix)
    app.include_router(daily_scores.router, prefix=v1_prefix)
    app.include_router(admin.router, prefix=v1_prefix)

    return app


app = create_app()
