"""Shared FastAPI dependencies injected into route handlers.

Long-lived components are built once in the lifespan and parked on
``app.state``; these providers hand them to routes and are the seams tests
override.
"""

from __future__ import annotations

import hmac
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request

from healthscore.config import Settings, get_settings
from healthscore.enrichment.backfill import BackfillJob
from healthscore.enrichment.base import DailyScoreRepository, EnrichmentRepository
from healthscore.enrichment.payload_guard import PayloadGuard
from healthscore.enrichment.pipeline import IngestionPipeline
from healthscore.services.database import Database


def _component(request: Request, name: str):
    component = getattr(request.app.state, name, None)
    if component is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return component


def get_database(request: Request) -> Database:
    return _component(request, "database")


def get_pipeline(request: Request) -> IngestionPipeline:
    return _component(request, "pipeline")


def get_payload_guard(request: Request) -> PayloadGuard:
    return _component(request, "payload_guard")


def get_daily_score_repo(request: Request) -> DailyScoreRepository:
    return _component(request, "daily_score_repo")


def get_enrichment_repo(request: Request) -> EnrichmentRepository:
    return _component(request, "enrichment_repo")


def get_backfill_job(request: Request) -> BackfillJob:
    return _component(request, "backfill_job")


async def require_admin_token(
    settings: Annotated[Settings, Depends(get_settings)],
    x_admin_token: Annotated[str | None, Header(alias="X-Admin-Token")] = None,
) -> None:
    """Reject admin calls without the configured token (no-op when unset)."""
    expected = settings.admin_api_token
    if not expected:
        return
    if not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        raise HTTPException(status_code=401, detail="Invalid admin token")


# Annotated shortcuts for route signatures
AppSettings = Annotated[Settings, Depends(get_settings)]
AppDatabase = Annotated[Database, Depends(get_database)]
Pipeline = Annotated[IngestionPipeline, Depends(get_pipeline)]
Guard = Annotated[PayloadGuard, Depends(get_payload_guard)]
DailyScores = Annotated[DailyScoreRepository, Depends(get_daily_score_repo)]
EnrichmentRecords = Annotated[EnrichmentRepository, Depends(get_enrichment_repo)]
Backfill = Annotated[BackfillJob, Depends(get_backfill_job)]
AdminGuard = Depends(require_admin_token)
