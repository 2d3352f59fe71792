"""One webhook delivery, end to end: extract → store → aggregate.

Each entry is its own unit of work.  A storage failure on one device does
not stop its siblings; it only turns the delivery's acknowledgement into a
failure so the provider redelivers (the upsert makes redelivery harmless).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from healthscore.enrichment.errors import StorageError
from healthscore.enrichment.extractor import EnrichmentExtractor
from healthscore.enrichment.store import EnrichmentStore

logger = logging.getLogger("healthscore.enrichment.pipeline")


@dataclass
class IngestResult:
    """Counters for one processed delivery.

    Attributes:
        event_type:           The envelope's ``type``.
        stored:               Per-device records written.
        skipped:              Entries that produced no record.
        storage_failures:     Records whose write failed.
        aggregation_failures: Written records whose aggregate could not be rebuilt.
        unmapped_device_ids:  Device ids with no known connection.
    """

    event_type: str
    stored: int = 0
    skipped: int = 0
    storage_failures: int = 0
    aggregation_failures: int = 0
    unmapped_device_ids: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.storage_failures == 0


class IngestionPipeline:
    def __init__(self, extractor: EnrichmentExtractor, store: EnrichmentStore) -> None:
        self._extractor = extractor
        self._store = store

    async def process_event(self, envelope: dict) -> IngestResult:
        extraction = await self._extractor.extract(envelope)
        result = IngestResult(
            event_type=extraction.event_type,
            skipped=extraction.skipped,
            unmapped_device_ids=list(extraction.unmapped_device_ids),
        )

        for record in extraction.records:
            try:
                outcome = await self._store.save(record)
            except StorageError as exc:
                logger.error("Storage failure, continuing with remaining entries: %s", exc)
                result.storage_failures += 1
                continue
            result.stored += 1
            if outcome.aggregation_failed:
                result.aggregation_failures += 1

        if extraction.records:
            logger.info(
                "Processed %s event: stored=%d failed=%d skipped=%d",
                result.event_type, result.stored, result.storage_failures, result.skipped,
            )
        return result
