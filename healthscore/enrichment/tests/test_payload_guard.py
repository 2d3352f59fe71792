"""Tests for webhook body size thresholds and enrichment-only degradation."""

from __future__ import annotations

import json
from typing import AsyncIterator

import pytest

from healthscore.enrichment.config_loader import EnrichmentConfig
from healthscore.enrichment.errors import MalformedPayloadError, PayloadTooLargeError
from healthscore.enrichment.payload_guard import (
    MODE_ENRICHMENT_ONLY,
    MODE_FULL,
    PayloadGuard,
    format_mb,
)
from healthscore.enrichment.tests.conftest import make_event

SOFT = 2_000
HARD = 10_000


@pytest.fixture
def guard(enrichment_config: EnrichmentConfig) -> PayloadGuard:
    return PayloadGuard(soft_limit_bytes=SOFT, hard_limit_bytes=HARD, config=enrichment_config)


def _oversized_event() -> dict:
    """One enrichment entry plus one sample-only entry, between SOFT and HARD."""
    return make_event(
        "sleep",
        [
            {
                "summary_date": "2025-07-02",
                "data_enrichment": {
                    "sleep_score": 81,
                    "sleep_contributors": {"rem": 20},
                    "samples": [1, 2, 3],
                },
                "heart_rate_data": {"detailed": {"hr_samples": [60] * 1000}},
                "metadata": {"end_time": "2025-07-02T07:00:00Z", "samples": [60] * 10},
            },
            {
                "summary_date": "2025-07-02",
                "heart_rate_data": {"detailed": {"hr_samples": [61] * 1000}},
            },
        ],
    )


async def _chunks(*parts: bytes) -> AsyncIterator[bytes]:
    for part in parts:
        yield part


class TestThresholds:
    def test_soft_above_hard_rejected(self, enrichment_config: EnrichmentConfig) -> None:
        with pytest.raises(ValueError):
            PayloadGuard(soft_limit_bytes=HARD, hard_limit_bytes=SOFT, config=enrichment_config)

    def test_format_mb(self) -> None:
        assert format_mb(30 * 1024 * 1024) == "30.00"
        assert format_mb(0) == "0.00"

    @pytest.mark.asyncio
    async def test_small_payload_full_mode(self, guard: PayloadGuard) -> None:
        envelope = make_event("daily", [{"data_enrichment": {"sleep_score": 70}}])
        body = json.dumps(envelope).encode()

        guarded = await guard.inspect(body)

        assert guarded.processing_mode == MODE_FULL
        assert guarded.envelope == envelope
        assert guarded.size_bytes == len(body)

    @pytest.mark.asyncio
    async def test_above_hard_ceiling_rejected(self, guard: PayloadGuard) -> None:
        body = b'{"type": "daily", "data": [], "pad": "' + b"x" * HARD + b'"}'
        with pytest.raises(PayloadTooLargeError) as exc_info:
            await guard.inspect(body)
        assert exc_info.value.size_bytes == len(body)

    @pytest.mark.asyncio
    async def test_declared_length_checked_before_reading(self, guard: PayloadGuard) -> None:
        async def never_read() -> AsyncIterator[bytes]:
            raise AssertionError("body should not be read")
            yield b""  # pragma: no cover

        with pytest.raises(PayloadTooLargeError):
            await guard.read_body(never_read(), declared_length=HARD + 1)

    @pytest.mark.asyncio
    async def test_streamed_body_aborts_past_ceiling(self, guard: PayloadGuard) -> None:
        chunk = b"x" * 4_000
        with pytest.raises(PayloadTooLargeError):
            await guard.read_body(_chunks(chunk, chunk, chunk, chunk))

    @pytest.mark.asyncio
    async def test_streamed_body_within_ceiling(self, guard: PayloadGuard) -> None:
        body = await guard.read_body(_chunks(b'{"type":', b' "daily"}'))
        assert body == b'{"type": "daily"}'


class TestMalformed:
    @pytest.mark.asyncio
    async def test_invalid_json(self, guard: PayloadGuard) -> None:
        with pytest.raises(MalformedPayloadError, match="Invalid JSON"):
            await guard.inspect(b"{not json")

    @pytest.mark.asyncio
    async def test_json_array_is_not_an_envelope(self, guard: PayloadGuard) -> None:
        with pytest.raises(MalformedPayloadError):
            await guard.inspect(b"[1, 2, 3]")

    @pytest.mark.asyncio
    async def test_oversized_invalid_json_is_too_large(self, guard: PayloadGuard) -> None:
        body = b"{" + b"x" * (SOFT + 10)
        with pytest.raises(PayloadTooLargeError, match="enrichment extraction failed"):
            await guard.inspect(body)

    @pytest.mark.asyncio
    async def test_oversized_without_data_list_is_too_large(self, guard: PayloadGuard) -> None:
        body = json.dumps({"type": "daily", "pad": "x" * (SOFT + 10)}).encode()
        with pytest.raises(PayloadTooLargeError):
            await guard.inspect(body)


class TestEnrichmentOnly:
    @pytest.mark.asyncio
    async def test_oversized_payload_degrades(self, guard: PayloadGuard) -> None:
        body = json.dumps(_oversized_event()).encode()
        assert SOFT < len(body) < HARD

        guarded = await guard.inspect(body)

        assert guarded.processing_mode == MODE_ENRICHMENT_ONLY
        entries = guarded.envelope["data"]
        assert len(entries) == 1
        assert entries[0]["data_enrichment"] == {
            "sleep_score": 81,
            "sleep_contributors": {"rem": 20},
        }
        assert entries[0]["summary_date"] == "2025-07-02"
        assert "heart_rate_data" not in entries[0]

    @pytest.mark.asyncio
    async def test_envelope_identity_kept(self, guard: PayloadGuard) -> None:
        guarded = await guard.inspect(json.dumps(_oversized_event()).encode())
        assert guarded.envelope["type"] == "sleep"
        assert guarded.envelope["user"]["user_id"] == "oura-device-a"

    def test_strip_keeps_date_metadata_without_samples(self, guard: PayloadGuard) -> None:
        stripped = guard.strip_to_enrichment(_oversized_event())
        metadata = stripped["data"][0]["metadata"]
        assert metadata == {"end_time": "2025-07-02T07:00:00Z"}

    def test_strip_finds_nested_enrichment(self, guard: PayloadGuard) -> None:
        envelope = make_event(
            "daily",
            [{"metadata": {"data_enrichment": {"stress_score": 40}}, "MET_samples": [1]}],
        )
        stripped = guard.strip_to_enrichment(envelope)
        assert stripped["data"] == [{"metadata": {"data_enrichment": {"stress_score": 40}}}]
