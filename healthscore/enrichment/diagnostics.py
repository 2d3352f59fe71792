"""In-memory record of recent aggregation failures.

Aggregation failures never reach the webhook caller.  They are logged and
kept here (bounded, newest last) so operators can see which (user, date)
pairs need a backfill run.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from healthscore.enrichment.base import utc_now

logger = logging.getLogger("healthscore.enrichment.diagnostics")


@dataclass(frozen=True)
class AggregationFailure:
    user_id: Any
    score_date: date | None
    error: str
    occurred_at: datetime = field(default_factory=utc_now)


class AggregationDiagnostics:
    """Bounded ring of the most recent aggregation failures."""

    def __init__(self, max_entries: int = 200) -> None:
        self._failures: deque[AggregationFailure] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        self._total = 0

    def report(self, user_id: Any, score_date: date | None, error: BaseException) -> None:
        failure = AggregationFailure(user_id, score_date, f"{type(error).__name__}: {error}")
        with self._lock:
            self._failures.append(failure)
            self._total += 1
        logger.error(
            "Aggregation failure #%d for user %s on %s: %s",
            self._total, user_id, score_date, failure.error,
        )

    def recent(self) -> list[AggregationFailure]:
        with self._lock:
            return list(self._failures)

    @property
    def total(self) -> int:
        return self._total

    def clear(self) -> None:
        with self._lock:
            self._failures.clear()
