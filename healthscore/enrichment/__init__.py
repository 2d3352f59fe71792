"""Wearable enrichment ingestion and daily health score aggregation.

This package turns provider webhook events into per-device enrichment
records and merges them into one canonical daily score per user.

Core modules:
    base          : canonical data models and repository interfaces
    config_loader : load/validate/hot-reload enrichment_config.yaml
    payload_guard : byte ceilings and enrichment-only degradation
    extractor     : provider envelope → EnrichmentRecord
    store         : idempotent per-device upsert chained to aggregation
    aggregator    : cross-device averaging and contributor merging
    pipeline      : one delivery end to end
    backfill      : rebuild every daily aggregate
    repository    : Postgres implementations of the repositories
"""

from healthscore.enrichment.aggregator import DailyAggregator
from healthscore.enrichment.backfill import BackfillCheckpoint, BackfillJob, BackfillSummary
from healthscore.enrichment.base import (
    ConnectionDirectory,
    DailyHealthScore,
    DailyScoreRepository,
    EnrichmentRecord,
    EnrichmentRepository,
    WearableConnection,
)
from healthscore.enrichment.config_loader import EnrichmentConfig, get_enrichment_config
from healthscore.enrichment.extractor import EnrichmentExtractor
from healthscore.enrichment.payload_guard import GuardedPayload, PayloadGuard
from healthscore.enrichment.pipeline import IngestionPipeline, IngestResult
from healthscore.enrichment.store import EnrichmentStore

__all__ = [
    "BackfillCheckpoint",
    "BackfillJob",
    "BackfillSummary",
    "ConnectionDirectory",
    "DailyAggregator",
    "DailyHealthScore",
    "DailyScoreRepository",
    "EnrichmentConfig",
    "EnrichmentExtractor",
    "EnrichmentRecord",
    "EnrichmentRepository",
    "EnrichmentStore",
    "GuardedPayload",
    "IngestResult",
    "IngestionPipeline",
    "PayloadGuard",
    "WearableConnection",
    "get_enrichment_config",
]
