"""Daily aggregation: per-device enrichment records → one DailyHealthScore.

For a (user, date) pair the aggregator gathers every device's record,
averages each metric across the devices that reported it and merges their
contributor maps, then upserts the single canonical row in
``daily_health_scores``.

Merging rules:
    - Score: arithmetic mean of non-null values, rounded half-up to 2 places.
    - Contributors: only maps from records that reported that metric.
      Numeric sub-values are averaged over the maps that carry them and
      rounded like scores, even when only one map has the key;
      other values are taken from the first map (most recently recorded).
      Keys present on only one device are preserved.
    - Providers: sorted distinct provider codes of the contributing records.

The whole computation is deterministic for a given record set, so re-running
it over unchanged inputs rewrites an identical row.
"""

from __future__ import annotations

import logging
import math
from contextlib import AbstractAsyncContextManager
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Iterable
from uuid import UUID

from healthscore.enrichment.base import (
    METRICS,
    ConnectionDirectory,
    DailyHealthScore,
    DailyScoreRepository,
    EnrichmentRecord,
    EnrichmentRepository,
    utc_now,
)
from healthscore.enrichment.errors import AggregationError

logger = logging.getLogger("healthscore.enrichment.aggregator")

#: Factory for a mutual-exclusion context keyed by "<user_id>:<date>".
LockFactory = Callable[[str], AbstractAsyncContextManager]

_CENTS = Decimal("0.01")


def round2(value: float) -> float:
    return float(Decimal(str(value)).quantize(_CENTS, rounding=ROUND_HALF_UP))


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


# ---------------------------------------------------------------------------
# Pure merge functions
# ---------------------------------------------------------------------------


def mean_score(values: Iterable[float | None]) -> float | None:
    """Mean of the non-null values, or None if there are none.

    >>> mean_score([80, 90, None])
    85.0
    """
    present = [v for v in values if v is not None]
    if not present:
        return None
    return round2(sum(present) / len(present))


def merge_contributors(maps: Iterable[dict[str, Any] | None]) -> dict[str, Any] | None:
    """Merge contributor maps from several devices into one.

    >>> merge_contributors([{"rem": 20, "deep": 10}, {"rem": 30, "efficiency": 90}])
    {'rem': 25.0, 'deep': 10.0, 'efficiency': 90.0}
    """
    numeric: dict[str, list[float]] = {}
    first: dict[str, Any] = {}

    for contributors in maps:
        if not contributors:
            continue
        for key, value in contributors.items():
            if value is None or (isinstance(value, float) and not math.isfinite(value)):
                continue
            if _is_number(value):
                numeric.setdefault(key, []).append(value)
            first.setdefault(key, value)

    if not first:
        return None

    merged: dict[str, Any] = {}
    for key, value in first.items():
        samples = numeric.get(key)
        if samples:
            merged[key] = round2(sum(samples) / len(samples))
        else:
            merged[key] = value
    return merged


def merge_daily_scores(
    user_id: UUID,
    score_date: date,
    records: list[EnrichmentRecord],
    now: datetime | None = None,
) -> DailyHealthScore | None:
    """Fold one user's records for a date into a DailyHealthScore.

    ``records`` must already be in precedence order (most recent first).
    Returns None when there is nothing to aggregate.
    """
    contributing = [r for r in records if r.has_any_metric()]
    if not contributing:
        return None

    score = DailyHealthScore(
        user_id=user_id,
        score_date=score_date,
        providers=sorted({r.provider for r in contributing}),
        last_updated=now or utc_now(),
    )
    for metric in METRICS:
        reporting = [r for r in contributing if r.score(metric) is not None]
        setattr(score, f"{metric}_score", mean_score(r.score(metric) for r in reporting))
        setattr(
            score,
            f"{metric}_contributors",
            merge_contributors(r.contributors(metric) for r in reporting),
        )
    return score


# ---------------------------------------------------------------------------
# Aggregator
# ---------------------------------------------------------------------------


class DailyAggregator:
    """Rebuild ``daily_health_scores`` rows from per-device records.

    Args:
        directory:       Resolves a user's device ids (active or not).
        enrichment_repo: Source of per-device records.
        score_repo:      Destination for the merged aggregate.
        lock:            Optional per-(user, date) lock factory, e.g.
                         :meth:`Database.advisory_lock`.
        clock:           Returns the ``last_updated`` timestamp.
    """

    def __init__(
        self,
        directory: ConnectionDirectory,
        enrichment_repo: EnrichmentRepository,
        score_repo: DailyScoreRepository,
        lock: LockFactory | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._directory = directory
        self._enrichment_repo = enrichment_repo
        self._score_repo = score_repo
        self._lock = lock
        self._clock = clock

    async def aggregate(self, user_id: UUID, score_date: date) -> DailyHealthScore | None:
        """Recompute and persist the aggregate for one user and date.

        Returns the written aggregate, or None when no records exist (in
        which case nothing is written).

        Raises:
            AggregationError: Any read or write failed.
        """
        try:
            if self._lock is None:
                return await self._aggregate(user_id, score_date)
            async with self._lock(f"{user_id}:{score_date.isoformat()}"):
                return await self._aggregate(user_id, score_date)
        except AggregationError:
            raise
        except Exception as exc:
            raise AggregationError(
                f"Aggregation failed for {user_id} on {score_date}: {exc}",
                user_id,
                score_date,
            ) from exc

    async def _aggregate(self, user_id: UUID, score_date: date) -> DailyHealthScore | None:
        device_ids = await self._directory.device_ids_for_user(user_id)
        if not device_ids:
            logger.info("No devices linked to user %s; nothing to aggregate", user_id)
            return None

        records = await self._enrichment_repo.fetch_for_date(device_ids, score_date)
        score = merge_daily_scores(user_id, score_date, records, self._clock())
        if score is None:
            logger.info("No enrichment data for user %s on %s", user_id, score_date)
            return None

        await self._score_repo.upsert(score)
        logger.info(
            "Aggregated %d record(s) from %s for user %s on %s",
            len(records), ",".join(score.providers), user_id, score_date,
        )
        return score
