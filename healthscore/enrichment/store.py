"""Enrichment Store: per-device persistence chained to daily aggregation.

``save()`` is a two-stage pipeline.  Stage one is the idempotent upsert of
the device's record; its failure is a :class:`StorageError` and the caller
must signal a retry.  Stage two recomputes the user's daily aggregate; its
failure is reported to :class:`AggregationDiagnostics` and swallowed, and the
stage-one write stands.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from healthscore.enrichment.aggregator import DailyAggregator
from healthscore.enrichment.base import DailyHealthScore, EnrichmentRecord, EnrichmentRepository
from healthscore.enrichment.diagnostics import AggregationDiagnostics
from healthscore.enrichment.errors import AggregationError, StorageError

logger = logging.getLogger("healthscore.enrichment.store")


@dataclass
class SaveOutcome:
    record: EnrichmentRecord
    aggregate: DailyHealthScore | None = None
    aggregation_failed: bool = False


class EnrichmentStore:
    def __init__(
        self,
        repository: EnrichmentRepository,
        aggregator: DailyAggregator,
        diagnostics: AggregationDiagnostics | None = None,
    ) -> None:
        self._repository = repository
        self._aggregator = aggregator
        self._diagnostics = diagnostics or AggregationDiagnostics()

    @property
    def diagnostics(self) -> AggregationDiagnostics:
        return self._diagnostics

    async def upsert(self, record: EnrichmentRecord) -> None:
        """Insert or overwrite the record's (user, provider, data_type, date) row.

        Raises:
            StorageError: The write did not happen.
        """
        try:
            await self._repository.upsert(record)
        except Exception as exc:
            logger.error(
                "Failed to store %s enrichment for user %s on %s: %s",
                record.data_type, record.user_id, record.summary_date, exc,
            )
            raise StorageError(
                f"Failed to store {record.provider}/{record.data_type} enrichment "
                f"for {record.user_id} on {record.summary_date}"
            ) from exc

        logger.info(
            "Stored %s enrichment for user %s (%s) on %s",
            record.data_type, record.user_id, record.provider, record.summary_date,
        )

    async def save(self, record: EnrichmentRecord) -> SaveOutcome:
        """Upsert the record, then rebuild the user's aggregate for that date."""
        await self.upsert(record)

        outcome = SaveOutcome(record=record)
        try:
            outcome.aggregate = await self._aggregator.aggregate(
                record.user_id, record.summary_date
            )
        except AggregationError as exc:
            outcome.aggregation_failed = True
            self._diagnostics.report(record.user_id, record.summary_date, exc)
        return outcome
