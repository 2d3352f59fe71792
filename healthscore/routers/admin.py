"""Operator endpoints. Guarded by ``X-Admin-Token`` when one is configured."""

from __future__ import annotations

import logging

from fastapi import APIRouter

from healthscore.dependencies import AdminGuard, Backfill
from healthscore.enrichment.backfill import BackfillCheckpoint
from healthscore.models.enrichment import BackfillRequest, BackfillSummaryRead

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[AdminGuard])
logger = logging.getLogger("healthscore.admin")


@router.post("/backfill-daily-scores", response_model=BackfillSummaryRead)
async def backfill_daily_scores(
    job: Backfill,
    body: BackfillRequest | None = None,
) -> BackfillSummaryRead:
    """Recompute every daily aggregate from the stored per-device records."""
    checkpoint = None
    if body is not None and body.resume_from is not None:
        checkpoint = BackfillCheckpoint(
            body.resume_from.user_id, body.resume_from.score_date
        )

    logger.info("Admin backfill requested (resume_from=%s)", checkpoint)
    summary = await job.run(checkpoint=checkpoint)
    return BackfillSummaryRead.model_validate(summary)
