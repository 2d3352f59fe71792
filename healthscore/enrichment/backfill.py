"""Backfill: rebuild every daily aggregate from the per-device records.

Used after changing the merge rules, after an outage that left aggregation
failures behind, or to seed ``daily_health_scores`` for existing data.

Designed to:
- Enumerate every (user, date) pair that has at least one scored record
- Aggregate pairs in chunks of ``max_concurrent``, each pair isolated
- Stop cleanly between chunks when cancelled, leaving consistent data
- Resume from a checkpoint (the last completed pair)

Usage::

    job = BackfillJob(enrichment_repo, aggregator, max_concurrent=4)
    async for progress in job.iter_progress():
        logger.info("Backfill progress: %s", progress.pct_complete)

    summary = await job.run()
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import AsyncIterator
from uuid import UUID

from healthscore.enrichment.aggregator import DailyAggregator
from healthscore.enrichment.base import EnrichmentRepository

logger = logging.getLogger("healthscore.enrichment.backfill")


@dataclass
class BackfillCheckpoint:
    """Last (user, date) pair a backfill fully processed.

    Pairs are processed in (user_id, date) order, so everything at or before
    the checkpoint is done.
    """

    user_id: UUID | None = None
    score_date: date | None = None

    def covers(self, user_id: UUID, score_date: date) -> bool:
        if self.user_id is None or self.score_date is None:
            return False
        return (user_id, score_date) <= (self.user_id, self.score_date)

    def to_json(self) -> dict:
        return {
            "user_id": str(self.user_id) if self.user_id else None,
            "score_date": self.score_date.isoformat() if self.score_date else None,
        }

    @classmethod
    def from_json(cls, data: dict) -> "BackfillCheckpoint":
        checkpoint = cls()
        if (raw_user := data.get("user_id")) and (raw_date := data.get("score_date")):
            try:
                checkpoint.user_id = UUID(str(raw_user))
                checkpoint.score_date = date.fromisoformat(raw_date)
            except ValueError:
                logger.warning("Ignoring unreadable backfill checkpoint: %r", data)
                return cls()
        return checkpoint


@dataclass
class BackfillFailure:
    user_id: UUID
    score_date: date
    error: str


@dataclass
class BackfillProgress:
    """Progress update emitted after each chunk.

    Attributes:
        total:       Pairs to process in this run (after checkpoint skip).
        processed:   Pairs attempted so far.
        written:     Pairs whose aggregate was (re)written.
        failed:      Pairs whose aggregation raised.
        failures:    Details of every failure so far.
        checkpoint:  Last completed pair.
        cancelled:   True once a cancellation stopped the run.
        is_complete: True on the final update.
    """

    total: int
    processed: int = 0
    written: int = 0
    failed: int = 0
    failures: list[BackfillFailure] = field(default_factory=list)
    checkpoint: BackfillCheckpoint = field(default_factory=BackfillCheckpoint)
    cancelled: bool = False
    is_complete: bool = False

    @property
    def pct_complete(self) -> float:
        if self.total == 0:
            return 100.0
        return round(self.processed / self.total * 100, 1)


@dataclass
class BackfillSummary:
    total: int
    processed: int
    written: int
    failed: int
    failures: list[BackfillFailure]
    cancelled: bool
    checkpoint: BackfillCheckpoint

    @classmethod
    def from_progress(cls, progress: BackfillProgress) -> "BackfillSummary":
        return cls(
            total=progress.total,
            processed=progress.processed,
            written=progress.written,
            failed=progress.failed,
            failures=list(progress.failures),
            cancelled=progress.cancelled,
            checkpoint=progress.checkpoint,
        )


class BackfillJob:
    """Recompute ``daily_health_scores`` for every (user, date) with data.

    One pair's failure never aborts the job; it is recorded in the summary.
    """

    def __init__(
        self,
        enrichment_repo: EnrichmentRepository,
        aggregator: DailyAggregator,
        max_concurrent: int = 4,
    ) -> None:
        self._enrichment_repo = enrichment_repo
        self._aggregator = aggregator
        self._max_concurrent = max(1, max_concurrent)

    async def iter_progress(
        self,
        cancel_event: asyncio.Event | None = None,
        checkpoint: BackfillCheckpoint | None = None,
    ) -> AsyncIterator[BackfillProgress]:
        """Run the backfill, yielding a progress snapshot after each chunk.

        The last snapshot has ``is_complete`` set.
        """
        pairs = await self._enrichment_repo.distinct_user_dates()
        if checkpoint is not None and checkpoint.user_id is not None:
            before = len(pairs)
            pairs = [p for p in pairs if not checkpoint.covers(*p)]
            logger.info(
                "Backfill resuming after %s/%s (%d pair(s) already done)",
                checkpoint.user_id, checkpoint.score_date, before - len(pairs),
            )

        progress = BackfillProgress(total=len(pairs))
        if checkpoint is not None:
            progress.checkpoint = checkpoint
        logger.info("Backfill starting: %d user-date pair(s)", progress.total)

        for start in range(0, len(pairs), self._max_concurrent):
            if cancel_event is not None and cancel_event.is_set():
                progress.cancelled = True
                logger.warning(
                    "Backfill cancelled after %d of %d pair(s)",
                    progress.processed, progress.total,
                )
                break

            chunk = pairs[start:start + self._max_concurrent]
            results = await asyncio.gather(
                *(self._aggregator.aggregate(user_id, score_date) for user_id, score_date in chunk),
                return_exceptions=True,
            )

            for (user_id, score_date), outcome in zip(chunk, results):
                progress.processed += 1
                if isinstance(outcome, BaseException):
                    logger.warning(
                        "Backfill failed for user %s on %s: %s", user_id, score_date, outcome
                    )
                    progress.failed += 1
                    progress.failures.append(BackfillFailure(user_id, score_date, str(outcome)))
                elif outcome is not None:
                    progress.written += 1

            last_user, last_date = chunk[-1]
            progress.checkpoint = BackfillCheckpoint(last_user, last_date)
            yield dataclasses.replace(progress, failures=list(progress.failures))

        progress.is_complete = True
        logger.info(
            "Backfill %s: processed=%d written=%d failed=%d",
            "cancelled" if progress.cancelled else "complete",
            progress.processed, progress.written, progress.failed,
        )
        yield progress

    async def run(
        self,
        cancel_event: asyncio.Event | None = None,
        checkpoint: BackfillCheckpoint | None = None,
    ) -> BackfillSummary:
        """Run the backfill to completion (or cancellation) and summarize it."""
        last: BackfillProgress | None = None
        async for progress in self.iter_progress(cancel_event, checkpoint):
            last = progress
        if last is None:
            raise RuntimeError("Backfill ended without reporting progress")
        return BackfillSummary.from_progress(last)
