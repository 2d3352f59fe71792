"""Pydantic models for webhook acknowledgements, daily scores and backfill runs."""

from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Any

from pydantic import Field

from healthscore.models.base import HealthScoreBase


# ---------- Webhook ----------

class WebhookAck(HealthScoreBase):
    success: bool
    message: str
    processing_mode: str = "full"
    payload_size_mb: str = "0.00"
    records_stored: int = 0
    records_skipped: int = 0


# ---------- Daily health scores ----------

class DailyHealthScoreRead(HealthScoreBase):
    user_id: uuid.UUID
    score_date: date
    sleep_score: float | None = None
    sleep_contributors: dict[str, Any] | None = None
    stress_score: float | None = None
    stress_contributors: dict[str, Any] | None = None
    respiratory_score: float | None = None
    respiratory_contributors: dict[str, Any] | None = None
    providers: list[str] = Field(default_factory=list)
    last_updated: datetime


class EnrichmentRecordRead(HealthScoreBase):
    user_id: uuid.UUID
    provider: str
    data_type: str
    external_user_id: str
    summary_date: date
    sleep_score: float | None = None
    sleep_contributors: dict[str, Any] | None = None
    stress_score: float | None = None
    stress_contributors: dict[str, Any] | None = None
    respiratory_score: float | None = None
    respiratory_contributors: dict[str, Any] | None = None
    recorded_at: datetime


# ---------- Backfill ----------

class BackfillCheckpointModel(HealthScoreBase):
    user_id: uuid.UUID | None = None
    score_date: date | None = None


class BackfillFailureRead(HealthScoreBase):
    user_id: uuid.UUID
    score_date: date
    error: str


class BackfillRequest(HealthScoreBase):
    resume_from: BackfillCheckpointModel | None = None


class BackfillSummaryRead(HealthScoreBase):
    total: int
    processed: int
    written: int
    failed: int
    failures: list[BackfillFailureRead] = Field(default_factory=list)
    cancelled: bool = False
    checkpoint: BackfillCheckpointModel
