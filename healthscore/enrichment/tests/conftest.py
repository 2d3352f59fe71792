"""Shared fixtures and in-memory repositories for enrichment pipeline tests."""

from __future__ import annotations

import dataclasses
from datetime import date, datetime, timezone
from typing import Any
from uuid import UUID

import pytest

from healthscore.enrichment.aggregator import DailyAggregator
from healthscore.enrichment.base import (
    ConnectionDirectory,
    DailyHealthScore,
    DailyScoreRepository,
    EnrichmentRecord,
    EnrichmentRepository,
    WearableConnection,
)
from healthscore.enrichment.config_loader import EnrichmentConfig, load_enrichment_config
from healthscore.enrichment.diagnostics import AggregationDiagnostics
from healthscore.enrichment.extractor import EnrichmentExtractor
from healthscore.enrichment.pipeline import IngestionPipeline
from healthscore.enrichment.store import EnrichmentStore

# Canonical test user and date
TEST_USER_ID = UUID("12345678-1234-5678-1234-567812345678")
OTHER_USER_ID = UUID("87654321-4321-8765-4321-876543218765")
TEST_DATE = date(2025, 7, 2)
FIXED_NOW = datetime(2025, 7, 3, 8, 0, tzinfo=timezone.utc)

OURA_DEVICE = "oura-device-a"
GARMIN_DEVICE = "garmin-device-b"
WHOOP_DEVICE = "whoop-device-c"


# ---------------------------------------------------------------------------
# In-memory storage
# ---------------------------------------------------------------------------


class FakeConnectionDirectory(ConnectionDirectory):
    def __init__(self, connections: list[WearableConnection] | None = None) -> None:
        self._by_device: dict[str, WearableConnection] = {}
        self.lookups: list[str] = []
        for connection in connections or []:
            self.add(connection)

    def add(self, connection: WearableConnection) -> None:
        self._by_device[connection.external_user_id] = connection

    async def lookup(self, external_user_id: str) -> WearableConnection | None:
        self.lookups.append(external_user_id)
        return self._by_device.get(external_user_id)

    async def device_ids_for_user(self, user_id: UUID) -> list[str]:
        return sorted(
            c.external_user_id for c in self._by_device.values() if c.user_id == user_id
        )


class InMemoryEnrichmentRepository(EnrichmentRepository):
    """Keyed like the Postgres unique constraint; ``fail_with`` simulates outages."""

    def __init__(self) -> None:
        self.rows: dict[tuple, EnrichmentRecord] = {}
        self.upserts = 0
        self.fail_with: Exception | None = None

    async def upsert(self, record: EnrichmentRecord) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.upserts += 1
        self.rows[record.key] = dataclasses.replace(record)

    async def fetch_for_date(
        self, external_user_ids: list[str], summary_date: date
    ) -> list[EnrichmentRecord]:
        matched = [
            r for r in self.rows.values()
            if r.external_user_id in external_user_ids
            and r.summary_date == summary_date
            and r.has_any_metric()
        ]
        matched.sort(key=lambda r: (r.provider, r.data_type))
        matched.sort(key=lambda r: r.recorded_at, reverse=True)
        return matched

    async def distinct_user_dates(self) -> list[tuple[UUID, date]]:
        return sorted(
            {(r.user_id, r.summary_date) for r in self.rows.values() if r.has_any_metric()}
        )

    async def list_for_user(
        self, user_id: UUID, summary_date: date
    ) -> list[EnrichmentRecord]:
        return sorted(
            (r for r in self.rows.values()
             if r.user_id == user_id and r.summary_date == summary_date),
            key=lambda r: (r.provider, r.data_type),
        )


class InMemoryDailyScoreRepository(DailyScoreRepository):
    def __init__(self) -> None:
        self.rows: dict[tuple[UUID, date], DailyHealthScore] = {}
        self.upserts = 0

    async def upsert(self, score: DailyHealthScore) -> None:
        self.upserts += 1
        self.rows[(score.user_id, score.score_date)] = dataclasses.replace(score)

    def get(self, user_id: UUID, score_date: date) -> DailyHealthScore | None:
        return self.rows.get((user_id, score_date))

    async def list_for_user(
        self,
        user_id: UUID,
        start_date: date | None = None,
        end_date: date | None = None,
        limit: int = 30,
    ) -> list[DailyHealthScore]:
        scores = [
            s for (uid, d), s in self.rows.items()
            if uid == user_id
            and (start_date is None or d >= start_date)
            and (end_date is None or d <= end_date)
        ]
        scores.sort(key=lambda s: s.score_date, reverse=True)
        return scores[:limit]


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_record(**overrides: Any) -> EnrichmentRecord:
    """An Oura daily record for TEST_USER_ID on TEST_DATE, with overrides."""
    fields: dict[str, Any] = {
        "user_id": TEST_USER_ID,
        "provider": "OURA",
        "data_type": "daily",
        "external_user_id": OURA_DEVICE,
        "summary_date": TEST_DATE,
        "recorded_at": FIXED_NOW,
    }
    fields.update(overrides)
    return EnrichmentRecord(**fields)


def make_event(
    event_type: str, entries: list[dict], device_id: str | None = OURA_DEVICE
) -> dict:
    """A provider envelope in the shape the webhook receives."""
    envelope: dict[str, Any] = {"type": event_type, "data": entries}
    if device_id is not None:
        envelope["user"] = {"user_id": device_id, "provider": "OURA"}
    return envelope


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def enrichment_config() -> EnrichmentConfig:
    """Load the real enrichment config for tests."""
    return load_enrichment_config()


@pytest.fixture
def directory() -> FakeConnectionDirectory:
    return FakeConnectionDirectory(
        [
            WearableConnection(TEST_USER_ID, "OURA", OURA_DEVICE),
            WearableConnection(TEST_USER_ID, "GARMIN", GARMIN_DEVICE),
            WearableConnection(TEST_USER_ID, "WHOOP", WHOOP_DEVICE, is_active=False),
        ]
    )


@pytest.fixture
def enrichment_repo() -> InMemoryEnrichmentRepository:
    return InMemoryEnrichmentRepository()


@pytest.fixture
def score_repo() -> InMemoryDailyScoreRepository:
    return InMemoryDailyScoreRepository()


@pytest.fixture
def aggregator(
    directory: FakeConnectionDirectory,
    enrichment_repo: InMemoryEnrichmentRepository,
    score_repo: InMemoryDailyScoreRepository,
) -> DailyAggregator:
    return DailyAggregator(directory, enrichment_repo, score_repo, clock=lambda: FIXED_NOW)


@pytest.fixture
def diagnostics() -> AggregationDiagnostics:
    return AggregationDiagnostics(max_entries=10)


@pytest.fixture
def store(
    enrichment_repo: InMemoryEnrichmentRepository,
    aggregator: DailyAggregator,
    diagnostics: AggregationDiagnostics,
) -> EnrichmentStore:
    return EnrichmentStore(enrichment_repo, aggregator, diagnostics)


@pytest.fixture
def extractor(
    directory: FakeConnectionDirectory, enrichment_config: EnrichmentConfig
) -> EnrichmentExtractor:
    return EnrichmentExtractor(directory, enrichment_config, clock=lambda: FIXED_NOW)


@pytest.fixture
def pipeline(extractor: EnrichmentExtractor, store: EnrichmentStore) -> IngestionPipeline:
    return IngestionPipeline(extractor, store)
