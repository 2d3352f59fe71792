"""Size safety for inbound webhook bodies.

Wearable integrations occasionally deliver tens of megabytes of per-minute
samples alongside a handful of enrichment scores.  The guard enforces two
byte thresholds before anything is persisted:

* above the hard ceiling the delivery is rejected outright;
* above the soft threshold the body is parsed off the event loop, every
  sample-array field is removed, and only enrichment-bearing entries are
  forwarded ("enrichment_only" mode).

The guard never stores anything and never retries; the provider redelivers
on its own schedule.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterable

from healthscore.config import Settings, get_settings
from healthscore.enrichment.config_loader import EnrichmentConfig, get_enrichment_config
from healthscore.enrichment.errors import MalformedPayloadError, PayloadTooLargeError
from healthscore.enrichment.extractor import find_enrichment

logger = logging.getLogger("healthscore.enrichment.payload_guard")

MODE_FULL = "full"
MODE_ENRICHMENT_ONLY = "enrichment_only"

_MB = 1024 * 1024


def format_mb(size_bytes: int) -> str:
    return f"{size_bytes / _MB:.2f}"


@dataclass
class GuardedPayload:
    """A parsed envelope that passed the size checks.

    Attributes:
        envelope:        Parsed JSON object (stripped in enrichment-only mode).
        size_bytes:      Size of the raw body.
        processing_mode: ``"full"`` or ``"enrichment_only"``.
    """

    envelope: dict
    size_bytes: int
    processing_mode: str = MODE_FULL

    @property
    def size_mb(self) -> str:
        return format_mb(self.size_bytes)


class PayloadGuard:
    """Enforce the soft/hard byte thresholds on webhook bodies."""

    def __init__(
        self,
        soft_limit_bytes: int = 30 * _MB,
        hard_limit_bytes: int = 50 * _MB,
        config: EnrichmentConfig | None = None,
    ) -> None:
        if soft_limit_bytes > hard_limit_bytes:
            raise ValueError("soft_limit_bytes must not exceed hard_limit_bytes")
        self.soft_limit_bytes = soft_limit_bytes
        self.hard_limit_bytes = hard_limit_bytes
        self._config = config or get_enrichment_config()

    @classmethod
    def from_settings(
        cls, settings: Settings | None = None, config: EnrichmentConfig | None = None
    ) -> "PayloadGuard":
        s = settings or get_settings()
        return cls(s.payload_soft_limit_bytes, s.payload_hard_limit_bytes, config)

    # ------------------------------------------------------------------
    # Byte ceiling
    # ------------------------------------------------------------------

    def check_declared_length(self, declared_length: int | None) -> None:
        if declared_length is not None and declared_length > self.hard_limit_bytes:
            logger.warning(
                "Rejecting webhook: declared length %sMB exceeds %sMB ceiling",
                format_mb(declared_length), format_mb(self.hard_limit_bytes),
            )
            raise PayloadTooLargeError(
                f"Payload too large: {format_mb(declared_length)}MB", declared_length
            )

    async def read_body(
        self, chunks: AsyncIterable[bytes], declared_length: int | None = None
    ) -> bytes:
        """Accumulate a streamed body, aborting as soon as it passes the ceiling."""
        self.check_declared_length(declared_length)

        buffer = bytearray()
        async for chunk in chunks:
            buffer.extend(chunk)
            if len(buffer) > self.hard_limit_bytes:
                logger.warning(
                    "Rejecting webhook: streamed body passed %sMB ceiling",
                    format_mb(self.hard_limit_bytes),
                )
                raise PayloadTooLargeError(
                    f"Payload too large: {format_mb(len(buffer))}MB", len(buffer)
                )
        logger.debug("Webhook payload size: %sMB", format_mb(len(buffer)))
        return bytes(buffer)

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    async def inspect(self, body: bytes, declared_length: int | None = None) -> GuardedPayload:
        """Apply the thresholds to a complete body and parse it.

        Raises:
            PayloadTooLargeError: Above the hard ceiling, or degraded parsing failed.
            MalformedPayloadError: A normally-sized body is not a JSON object.
        """
        self.check_declared_length(declared_length)
        size = len(body)
        if size > self.hard_limit_bytes:
            raise PayloadTooLargeError(f"Payload too large: {format_mb(size)}MB", size)

        if size > self.soft_limit_bytes:
            logger.warning(
                "Large webhook payload (%sMB), extracting enrichment data only",
                format_mb(size),
            )
            try:
                envelope = await asyncio.to_thread(self._parse_and_strip, body)
            except (MalformedPayloadError, ValueError, RecursionError) as exc:
                logger.error(
                    "Cannot process large payload (%sMB): %s", format_mb(size), exc
                )
                raise PayloadTooLargeError(
                    "Payload too large and enrichment extraction failed", size
                ) from exc
            return GuardedPayload(envelope, size, MODE_ENRICHMENT_ONLY)

        try:
            envelope = _parse_object(body)
        except (ValueError, RecursionError) as exc:
            logger.error("Failed to parse webhook JSON: %s", exc)
            raise MalformedPayloadError("Invalid JSON payload") from exc
        return GuardedPayload(envelope, size, MODE_FULL)

    def _parse_and_strip(self, body: bytes) -> dict:
        return self.strip_to_enrichment(_parse_object(body))

    # ------------------------------------------------------------------
    # Down-sampling
    # ------------------------------------------------------------------

    def strip_to_enrichment(self, envelope: dict) -> dict:
        """Drop sample arrays everywhere and keep only enrichment-bearing entries.

        Surviving entries are reduced to their user, date and enrichment
        fields; everything else (distance, calories, raw durations...) is
        irrelevant to scoring.
        """
        entries = envelope.get("data")
        if not isinstance(entries, list):
            raise MalformedPayloadError("Envelope has no 'data' list")

        keep_keys = {"user"}
        keep_keys.update(path[0] for path in self._config.enrichment_paths)
        keep_keys.update(path[0] for path in self._config.date_fields)

        kept: list[dict] = []
        for entry in entries:
            if not isinstance(entry, dict) or find_enrichment(entry, self._config) is None:
                continue
            kept.append(
                {k: self._drop_samples(v) for k, v in entry.items() if k in keep_keys}
            )

        stripped = {
            k: self._drop_samples(v) for k, v in envelope.items() if k != "data"
        }
        stripped["data"] = kept
        logger.info(
            "Enrichment-only mode kept %d of %d entries", len(kept), len(entries)
        )
        return stripped

    def _drop_samples(self, value: Any) -> Any:
        if isinstance(value, dict):
            return {
                k: self._drop_samples(v)
                for k, v in value.items()
                if not self._config.is_sample_array_key(k)
            }
        if isinstance(value, list):
            return [self._drop_samples(v) for v in value]
        return value


def _parse_object(body: bytes) -> dict:
    parsed = json.loads(body)
    if not isinstance(parsed, dict):
        raise MalformedPayloadError("Webhook payload must be a JSON object")
    return parsed
