"""Enrichment extraction: provider event envelope → canonical EnrichmentRecords.

Only the three scored metrics and their contributor maps are kept.  All
field-name variants are folded through the alias tables in
``enrichment_config.yaml`` here, once, so the store and the aggregator only
ever see canonical names.

Pure helpers (``find_enrichment``, ``normalize_enrichment``,
``resolve_entry_date``) do no I/O; :class:`EnrichmentExtractor` adds the
Connection Directory lookup.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable

from healthscore.enrichment.base import (
    METRICS,
    ConnectionDirectory,
    EnrichmentRecord,
    WearableConnection,
    utc_now,
)
from healthscore.enrichment.config_loader import EnrichmentConfig, get_enrichment_config

logger = logging.getLogger("healthscore.enrichment.extractor")


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def dig(obj: Any, path: tuple[str, ...]) -> Any:
    """Follow a key path through nested dicts, returning None on any miss."""
    current = obj
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
        if current is None:
            return None
    return current


def find_enrichment(entry: dict, config: EnrichmentConfig) -> dict | None:
    """Return the first enrichment object found at the configured paths."""
    for path in config.enrichment_paths:
        found = dig(entry, path)
        if isinstance(found, dict) and found:
            return found
    return None


def _coerce_score(value: Any) -> float | None:
    """Score as float in [0, 100], or None when absent or unusable."""
    if value is None or isinstance(value, bool):
        return None
    try:
        score = float(value)
    except (TypeError, ValueError):
        logger.warning("Discarding non-numeric enrichment score: %r", value)
        return None
    if math.isnan(score) or not 0.0 <= score <= 100.0:
        logger.warning("Discarding out-of-range enrichment score: %r", value)
        return None
    return score


def _normalize_contributors(
    metric: str, raw: Any, config: EnrichmentConfig
) -> dict[str, Any] | None:
    """Fold alternate contributor keys into canonical ones.

    When a map carries both the canonical key and an alias, the canonical
    key's value is kept.  Null sub-fields are dropped.
    """
    if not isinstance(raw, dict) or not raw:
        return None

    folded: dict[str, Any] = {}
    for key, value in raw.items():
        if value is None:
            continue
        canonical = config.canonical_contributor_key(metric, key)
        if canonical in folded and config.is_alias(metric, key):
            continue
        folded[canonical] = value
    return folded or None


@dataclass
class NormalizedEnrichment:
    """Canonical metrics pulled out of one enrichment object."""

    scores: dict[str, float | None] = field(default_factory=dict)
    contributors: dict[str, dict[str, Any] | None] = field(default_factory=dict)

    def has_any_metric(self) -> bool:
        return any(v is not None for v in self.scores.values())


def normalize_enrichment(raw: dict, config: EnrichmentConfig) -> NormalizedEnrichment:
    """Map a provider enrichment object onto the canonical metric fields.

    Score names are tried in alias order (e.g. ``stress_score`` before the
    legacy ``total_stress_score``).  A zero is a real reading; only missing,
    null, non-numeric or out-of-range values count as absent.
    """
    result = NormalizedEnrichment()
    for metric in METRICS:
        score = None
        for name in config.score_aliases[metric]:
            score = _coerce_score(raw.get(name))
            if score is not None:
                break
        result.scores[metric] = score
        result.contributors[metric] = _normalize_contributors(
            metric, raw.get(config.contributor_fields[metric]), config
        )
    return result


def _parse_date(value: Any) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or len(value) < 10:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


def resolve_entry_date(entry: dict, config: EnrichmentConfig, fallback: date) -> date:
    """Date an entry applies to, falling back to the ingestion date."""
    for path in config.date_fields:
        parsed = _parse_date(dig(entry, path))
        if parsed is not None:
            return parsed
    logger.info("Entry has no usable date; using ingestion date %s", fallback)
    return fallback


def _device_id(entry: dict, envelope: dict) -> str | None:
    for source in (entry.get("user"), envelope.get("user")):
        if isinstance(source, dict) and source.get("user_id"):
            return str(source["user_id"])
    return None


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------


@dataclass
class ExtractionResult:
    """Outcome of extracting one event.

    Attributes:
        event_type: The envelope's ``type``.
        records:    Canonical records ready for the store.
        skipped:    Entries dropped (no enrichment, no metric, unmapped device).
        unmapped_device_ids: Device ids the Connection Directory did not know.
    """

    event_type: str
    records: list[EnrichmentRecord] = field(default_factory=list)
    skipped: int = 0
    unmapped_device_ids: list[str] = field(default_factory=list)


class EnrichmentExtractor:
    """Turn parsed webhook envelopes into :class:`EnrichmentRecord` objects.

    Usage::

        extractor = EnrichmentExtractor(directory)
        result = await extractor.extract(envelope)
        for record in result.records:
            await store.save(record)
    """

    def __init__(
        self,
        directory: ConnectionDirectory,
        config: EnrichmentConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._directory = directory
        self._config = config or get_enrichment_config()
        self._clock = clock

    async def extract(self, envelope: dict) -> ExtractionResult:
        """Extract every enrichment-bearing entry of one event.

        Never raises for per-entry problems: an unmapped device or an entry
        without metrics is skipped and logged, and its siblings still process.
        """
        event_type = str(envelope.get("type") or "")
        result = ExtractionResult(event_type=event_type)

        if not self._config.is_enrichment_event(event_type):
            if event_type in self._config.ignored_event_types:
                logger.info("Acknowledging %s event without extraction", event_type)
            else:
                logger.warning("Unknown webhook event type: %r", event_type)
            return result

        entries = envelope.get("data")
        if not isinstance(entries, list) or not entries:
            logger.info("%s event carries no data entries", event_type)
            return result

        received_at = self._clock()
        connections: dict[str, WearableConnection | None] = {}

        for index, entry in enumerate(entries):
            if not isinstance(entry, dict):
                result.skipped += 1
                continue

            raw = find_enrichment(entry, self._config)
            if raw is None:
                logger.debug("No enrichment in %s entry #%d", event_type, index)
                result.skipped += 1
                continue

            normalized = normalize_enrichment(raw, self._config)
            if not normalized.has_any_metric():
                logger.debug("Enrichment in %s entry #%d has no scores", event_type, index)
                result.skipped += 1
                continue

            device_id = _device_id(entry, envelope)
            if device_id is None:
                logger.warning("%s entry #%d has no device id, skipping", event_type, index)
                result.skipped += 1
                continue

            if device_id not in connections:
                connections[device_id] = await self._directory.lookup(device_id)
            connection = connections[device_id]
            if connection is None:
                logger.warning(
                    "No connection found for device %s; skipping %s entry #%d",
                    device_id, event_type, index,
                )
                if device_id not in result.unmapped_device_ids:
                    result.unmapped_device_ids.append(device_id)
                result.skipped += 1
                continue

            record = EnrichmentRecord(
                user_id=connection.user_id,
                provider=connection.provider,
                data_type=event_type,
                external_user_id=device_id,
                summary_date=resolve_entry_date(entry, self._config, received_at.date()),
                recorded_at=received_at,
            )
            for metric in METRICS:
                setattr(record, f"{metric}_score", normalized.scores[metric])
                setattr(record, f"{metric}_contributors", normalized.contributors[metric])
            result.records.append(record)

        logger.info(
            "Extracted %d enrichment record(s) from %s event (%d skipped)",
            len(result.records), event_type, result.skipped,
        )
        return result
