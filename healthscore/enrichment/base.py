"""Canonical data models and storage interfaces for the enrichment pipeline.

The extractor produces :class:`EnrichmentRecord` objects, the store persists
them, and the aggregator folds the records for one user+date into a
:class:`DailyHealthScore`.  Storage is reached only through the abstract
repositories below so that the Postgres implementations and the in-memory
test doubles are interchangeable.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any
from uuid import UUID

#: The three enrichment metrics, in storage column order.
METRICS: tuple[str, ...] = ("sleep", "stress", "respiratory")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Connection directory entity (owned by the account-linking service)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WearableConnection:
    """A provider device/user id linked to one of our users.

    Attributes:
        user_id:          Internal user UUID.
        provider:         Provider code (e.g. 'OURA', 'GARMIN').
        external_user_id: Id assigned by the wearable integration.
        is_active:        False once the user disconnected the device.
    """

    user_id: UUID
    provider: str
    external_user_id: str
    is_active: bool = True


# ---------------------------------------------------------------------------
# Per-device enrichment record
# ---------------------------------------------------------------------------


@dataclass
class EnrichmentRecord:
    """One device's enrichment scores for one calendar date and data type.

    Unique per ``(user_id, provider, data_type, summary_date)``.  Contributor
    maps already carry canonical key names.

    Attributes:
        user_id:          Internal user UUID.
        provider:         Provider code the device belongs to.
        data_type:        Event category the scores came from ('daily', 'sleep', ...).
        external_user_id: Device/user id the event was delivered under.
        summary_date:     Date the scores apply to (provider-reported).
        sleep_score:      0–100 or None when not reported.
        stress_score:     0–100 or None when not reported.
        respiratory_score: 0–100 or None when not reported.
        sleep_contributors: Named sub-metrics behind the sleep score.
        stress_contributors: Named sub-metrics behind the stress score.
        respiratory_contributors: Named sub-metrics behind the respiratory score.
        recorded_at:      UTC ingestion timestamp.
    """

    user_id: UUID
    provider: str
    data_type: str
    external_user_id: str
    summary_date: date
    sleep_score: float | None = None
    stress_score: float | None = None
    respiratory_score: float | None = None
    sleep_contributors: dict[str, Any] | None = None
    stress_contributors: dict[str, Any] | None = None
    respiratory_contributors: dict[str, Any] | None = None
    recorded_at: datetime = field(default_factory=utc_now)

    @property
    def key(self) -> tuple[UUID, str, str, date]:
        return (self.user_id, self.provider, self.data_type, self.summary_date)

    def score(self, metric: str) -> float | None:
        return getattr(self, f"{metric}_score")

    def contributors(self, metric: str) -> dict[str, Any] | None:
        return getattr(self, f"{metric}_contributors")

    def has_any_metric(self) -> bool:
        return any(self.score(m) is not None for m in METRICS)


# ---------------------------------------------------------------------------
# Canonical per-user-per-day aggregate
# ---------------------------------------------------------------------------


@dataclass
class DailyHealthScore:
    """Merged scores for one user and date across all of their devices."""

    user_id: UUID
    score_date: date
    sleep_score: float | None = None
    stress_score: float | None = None
    respiratory_score: float | None = None
    sleep_contributors: dict[str, Any] | None = None
    stress_contributors: dict[str, Any] | None = None
    respiratory_contributors: dict[str, Any] | None = None
    providers: list[str] = field(default_factory=list)
    last_updated: datetime = field(default_factory=utc_now)

    def score(self, metric: str) -> float | None:
        return getattr(self, f"{metric}_score")

    def contributors(self, metric: str) -> dict[str, Any] | None:
        return getattr(self, f"{metric}_contributors")

    def content(self) -> dict[str, Any]:
        """Every field derived from the enrichment records (no timestamp).

        Two aggregation runs over unchanged inputs produce equal content.
        """
        return {
            "user_id": self.user_id,
            "score_date": self.score_date,
            "sleep_score": self.sleep_score,
            "sleep_contributors": self.sleep_contributors,
            "stress_score": self.stress_score,
            "stress_contributors": self.stress_contributors,
            "respiratory_score": self.respiratory_score,
            "respiratory_contributors": self.respiratory_contributors,
            "providers": list(self.providers),
        }


# ---------------------------------------------------------------------------
# Storage interfaces
# ---------------------------------------------------------------------------


class ConnectionDirectory(ABC):
    """Read-only view of the user ↔ device mapping."""

    @abstractmethod
    async def lookup(self, external_user_id: str) -> WearableConnection | None:
        """Return the connection for a provider id, or None if unknown."""

    @abstractmethod
    async def device_ids_for_user(self, user_id: UUID) -> list[str]:
        """Return every provider id ever linked to the user, active or not."""


class EnrichmentRepository(ABC):
    """Persistence for per-device :class:`EnrichmentRecord` rows."""

    @abstractmethod
    async def upsert(self, record: EnrichmentRecord) -> None:
        """Insert or overwrite the row for ``record.key`` atomically."""

    @abstractmethod
    async def fetch_for_date(
        self, external_user_ids: list[str], summary_date: date
    ) -> list[EnrichmentRecord]:
        """Records for the given device ids on a date with at least one metric.

        Ordered most recently recorded first, then provider, then data type.
        """

    @abstractmethod
    async def distinct_user_dates(self) -> list[tuple[UUID, date]]:
        """Every (user_id, summary_date) pair with at least one metric, sorted."""

    @abstractmethod
    async def list_for_user(
        self, user_id: UUID, summary_date: date
    ) -> list[EnrichmentRecord]:
        """All of a user's records for a date, for diagnostic views."""


class DailyScoreRepository(ABC):
    """Persistence for :class:`DailyHealthScore` rows."""

    @abstractmethod
    async def upsert(self, score: DailyHealthScore) -> None:
        """Insert or overwrite the row for (user_id, score_date)."""

    @abstractmethod
    async def list_for_user(
        self,
        user_id: UUID,
        start_date: date | None = None,
        end_date: date | None = None,
        limit: int = 30,
    ) -> list[DailyHealthScore]:
        """Aggregates in a date range, newest first."""
