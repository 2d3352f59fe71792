"""Tests for cross-device averaging and contributor merging."""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from healthscore.enrichment.aggregator import (
    DailyAggregator,
    mean_score,
    merge_contributors,
    merge_daily_scores,
    round2,
)
from healthscore.enrichment.errors import AggregationError
from healthscore.enrichment.tests.conftest import (
    FIXED_NOW,
    GARMIN_DEVICE,
    OTHER_USER_ID,
    TEST_DATE,
    TEST_USER_ID,
    WHOOP_DEVICE,
    FakeConnectionDirectory,
    InMemoryDailyScoreRepository,
    InMemoryEnrichmentRepository,
    make_record,
)


# ---------------------------------------------------------------------------
# Pure merge functions
# ---------------------------------------------------------------------------


class TestMeanScore:
    def test_nulls_ignored(self) -> None:
        assert mean_score([80, 90, None]) == 85.0

    def test_all_null(self) -> None:
        assert mean_score([None, None]) is None
        assert mean_score([]) is None

    def test_rounded_to_two_places(self) -> None:
        assert mean_score([70, 71, 71]) == 70.67

    def test_half_rounds_up(self) -> None:
        assert round2(80.125) == 80.13
        assert round2(0.005) == 0.01

    def test_zero_counts(self) -> None:
        assert mean_score([0, 50]) == 25.0


class TestMergeContributors:
    def test_unmatched_keys_preserved(self) -> None:
        merged = merge_contributors([{"rem": 20, "deep": 10}, {"rem": 30, "efficiency": 90}])
        assert merged == {"rem": 25, "deep": 10, "efficiency": 90}

    def test_no_maps(self) -> None:
        assert merge_contributors([None, {}]) is None

    def test_non_numeric_first_wins(self) -> None:
        merged = merge_contributors([{"quality": "good"}, {"quality": "poor"}])
        assert merged == {"quality": "good"}

    def test_booleans_are_not_averaged(self) -> None:
        merged = merge_contributors([{"restful": True}, {"restful": False}])
        assert merged == {"restful": True}

    def test_mixed_key_averages_numeric_values_only(self) -> None:
        merged = merge_contributors([{"hrv": "n/a"}, {"hrv": 40}, {"hrv": 50}])
        assert merged == {"hrv": 45.0}

    def test_single_device_values_rounded_like_averages(self) -> None:
        merged = merge_contributors([{"rem": 33.333, "deep": 10.005}, {"rem": 40.0}])
        assert merged == {"rem": 36.67, "deep": 10.01}

    def test_single_map_rounded(self) -> None:
        merged = merge_contributors([{"efficiency": 87.456, "latency": 12}])
        assert merged == {"efficiency": 87.46, "latency": 12.0}
        assert isinstance(merged["latency"], float)

    def test_non_finite_values_dropped(self) -> None:
        merged = merge_contributors([{"hrv": float("nan"), "rem": float("inf")}, {"hrv": 40}])
        assert merged == {"hrv": 40.0}

    def test_nested_values_taken_whole(self) -> None:
        merged = merge_contributors([{"stages": {"rem": 1}}, {"stages": {"rem": 2}}])
        assert merged == {"stages": {"rem": 1}}


class TestMergeDailyScores:
    def test_non_reporting_device_does_not_dilute(self) -> None:
        records = [
            make_record(provider="OURA", sleep_score=80.0),
            make_record(provider="GARMIN", sleep_score=90.0),
            make_record(provider="WHOOP", stress_score=40.0),
        ]
        score = merge_daily_scores(TEST_USER_ID, TEST_DATE, records, FIXED_NOW)
        assert score is not None
        assert score.sleep_score == 85.0
        assert score.stress_score == 40.0
        assert score.respiratory_score is None
        assert score.providers == ["GARMIN", "OURA", "WHOOP"]

    def test_contributors_only_from_reporting_records(self) -> None:
        records = [
            make_record(provider="OURA", sleep_score=80.0, sleep_contributors={"rem": 20}),
            make_record(
                provider="GARMIN",
                stress_score=30.0,
                sleep_contributors={"rem": 90},
            ),
        ]
        score = merge_daily_scores(TEST_USER_ID, TEST_DATE, records, FIXED_NOW)
        assert score.sleep_contributors == {"rem": 20}
        assert score.stress_contributors is None

    def test_empty(self) -> None:
        assert merge_daily_scores(TEST_USER_ID, TEST_DATE, [], FIXED_NOW) is None
        assert merge_daily_scores(TEST_USER_ID, TEST_DATE, [make_record()], FIXED_NOW) is None

    def test_providers_deduplicated(self) -> None:
        records = [
            make_record(data_type="sleep", sleep_score=80.0),
            make_record(data_type="daily", stress_score=20.0),
        ]
        score = merge_daily_scores(TEST_USER_ID, TEST_DATE, records, FIXED_NOW)
        assert score.providers == ["OURA"]


# ---------------------------------------------------------------------------
# Aggregator
# ---------------------------------------------------------------------------


class TestDailyAggregator:
    @pytest.mark.asyncio
    async def test_no_records_no_write(
        self, aggregator: DailyAggregator, score_repo: InMemoryDailyScoreRepository
    ) -> None:
        assert await aggregator.aggregate(TEST_USER_ID, TEST_DATE) is None
        assert score_repo.upserts == 0

    @pytest.mark.asyncio
    async def test_user_without_devices(
        self, aggregator: DailyAggregator, score_repo: InMemoryDailyScoreRepository
    ) -> None:
        assert await aggregator.aggregate(OTHER_USER_ID, TEST_DATE) is None
        assert score_repo.upserts == 0

    @pytest.mark.asyncio
    async def test_writes_merged_score(
        self,
        aggregator: DailyAggregator,
        enrichment_repo: InMemoryEnrichmentRepository,
        score_repo: InMemoryDailyScoreRepository,
    ) -> None:
        await enrichment_repo.upsert(make_record(sleep_score=80.0))
        await enrichment_repo.upsert(
            make_record(provider="GARMIN", external_user_id=GARMIN_DEVICE, sleep_score=90.0)
        )

        score = await aggregator.aggregate(TEST_USER_ID, TEST_DATE)

        stored = score_repo.get(TEST_USER_ID, TEST_DATE)
        assert stored == score
        assert stored.sleep_score == 85.0
        assert stored.last_updated == FIXED_NOW

    @pytest.mark.asyncio
    async def test_disconnected_device_still_counts(
        self,
        aggregator: DailyAggregator,
        enrichment_repo: InMemoryEnrichmentRepository,
    ) -> None:
        await enrichment_repo.upsert(make_record(sleep_score=60.0))
        await enrichment_repo.upsert(
            make_record(provider="WHOOP", external_user_id=WHOOP_DEVICE, sleep_score=70.0)
        )
        score = await aggregator.aggregate(TEST_USER_ID, TEST_DATE)
        assert score.sleep_score == 65.0
        assert score.providers == ["OURA", "WHOOP"]

    @pytest.mark.asyncio
    async def test_other_dates_ignored(
        self, aggregator: DailyAggregator, enrichment_repo: InMemoryEnrichmentRepository
    ) -> None:
        await enrichment_repo.upsert(make_record(sleep_score=60.0))
        await enrichment_repo.upsert(
            make_record(summary_date=TEST_DATE + timedelta(days=1), sleep_score=99.0)
        )
        score = await aggregator.aggregate(TEST_USER_ID, TEST_DATE)
        assert score.sleep_score == 60.0

    @pytest.mark.asyncio
    async def test_idempotent(
        self,
        directory: FakeConnectionDirectory,
        enrichment_repo: InMemoryEnrichmentRepository,
        score_repo: InMemoryDailyScoreRepository,
    ) -> None:
        ticks = iter([FIXED_NOW, FIXED_NOW + timedelta(minutes=5)])
        aggregator = DailyAggregator(
            directory, enrichment_repo, score_repo, clock=lambda: next(ticks)
        )
        await enrichment_repo.upsert(
            make_record(sleep_score=78.0, sleep_contributors={"rem": 18, "deep": 7})
        )
        await enrichment_repo.upsert(
            make_record(
                provider="GARMIN",
                external_user_id=GARMIN_DEVICE,
                sleep_score=92.0,
                sleep_contributors={"rem": 22},
                respiratory_score=95.0,
            )
        )

        first = await aggregator.aggregate(TEST_USER_ID, TEST_DATE)
        second = await aggregator.aggregate(TEST_USER_ID, TEST_DATE)

        assert first.content() == second.content()
        assert repr(first.content()) == repr(second.content())
        assert score_repo.upserts == 2

    @pytest.mark.asyncio
    async def test_lock_held_per_user_date(
        self,
        directory: FakeConnectionDirectory,
        enrichment_repo: InMemoryEnrichmentRepository,
        score_repo: InMemoryDailyScoreRepository,
    ) -> None:
        keys: list[str] = []

        @asynccontextmanager
        async def lock(key: str):
            keys.append(key)
            yield

        aggregator = DailyAggregator(directory, enrichment_repo, score_repo, lock=lock)
        await enrichment_repo.upsert(make_record(sleep_score=50.0))

        await aggregator.aggregate(TEST_USER_ID, TEST_DATE)

        assert keys == [f"{TEST_USER_ID}:2025-07-02"]

    @pytest.mark.asyncio
    async def test_failures_wrapped(
        self,
        directory: FakeConnectionDirectory,
        score_repo: InMemoryDailyScoreRepository,
    ) -> None:
        broken = InMemoryEnrichmentRepository()
        broken.fetch_for_date = AsyncMock(side_effect=ConnectionError("db down"))
        aggregator = DailyAggregator(directory, broken, score_repo)

        with pytest.raises(AggregationError) as exc_info:
            await aggregator.aggregate(TEST_USER_ID, TEST_DATE)

        assert exc_info.value.user_id == TEST_USER_ID
        assert exc_info.value.score_date == TEST_DATE
        assert isinstance(exc_info.value.__cause__, ConnectionError)
