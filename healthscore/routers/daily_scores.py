"""Read-only daily health score endpoints."""

from __future__ import annotations

import logging
import uuid
from datetime import date

from fastapi import APIRouter, HTTPException, Query

from healthscore.dependencies import DailyScores, EnrichmentRecords
from healthscore.models.enrichment import DailyHealthScoreRead, EnrichmentRecordRead

router = APIRouter(prefix="/daily-scores", tags=["daily-scores"])
logger = logging.getLogger("healthscore.daily_scores")


@router.get("/{user_id}", response_model=list[DailyHealthScoreRead])
async def list_daily_scores(
    user_id: uuid.UUID,
    repo: DailyScores,
    start_date: date | None = None,
    end_date: date | None = None,
    limit: int = Query(default=30, ge=1, le=365),
) -> list[DailyHealthScoreRead]:
    """Merged daily scores for a user, newest first."""
    if start_date and end_date and start_date > end_date:
        raise HTTPException(status_code=400, detail="start_date must not be after end_date")

    scores = await repo.list_for_user(user_id, start_date, end_date, limit)
    return [DailyHealthScoreRead.model_validate(s) for s in scores]


@router.get("/{user_id}/devices", response_model=list[EnrichmentRecordRead])
async def list_device_scores(
    user_id: uuid.UUID,
    repo: EnrichmentRecords,
    score_date: date = Query(...),
) -> list[EnrichmentRecordRead]:
    """Per-device enrichment records behind one day's merged score."""
    records = await repo.list_for_user(user_id, score_date)
    return [EnrichmentRecordRead.model_validate(r) for r in records]
