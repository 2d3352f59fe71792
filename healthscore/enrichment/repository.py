"""Postgres repositories for enrichment records and daily health scores.

Every write is a single ``INSERT ... ON CONFLICT DO UPDATE`` statement, so
concurrent deliveries for the same key rely on Postgres' own conflict
resolution and never interleave into a partial row.

Unique keys:
    - enrichment_scores:   (user_id, provider, data_type, summary_date)
    - daily_health_scores: (user_id, score_date)
"""

from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Any, Mapping
from uuid import UUID

from healthscore.enrichment.base import (
    DailyHealthScore,
    DailyScoreRepository,
    EnrichmentRecord,
    EnrichmentRepository,
)
from healthscore.services.database import Database

logger = logging.getLogger("healthscore.enrichment.repository")


def build_upsert_query(
    table: str,
    columns: list[str],
    conflict_columns: list[str],
    update_columns: list[str] | None = None,
) -> str:
    """Build a parameterized ``INSERT ... ON CONFLICT DO UPDATE`` statement.

    On conflict every non-key column (or ``update_columns``) is overwritten
    with the incoming value: last write wins, nothing is merged.

    Args:
        table:            Target table name.
        columns:          All columns to insert, in parameter order.
        conflict_columns: Columns of the UNIQUE constraint.
        update_columns:   Columns to overwrite (defaults to non-key columns).

    Returns:
        SQL string with ``$1..$n`` placeholders.
    """
    if update_columns is None:
        update_columns = [c for c in columns if c not in conflict_columns]

    placeholders = ", ".join(f"${i + 1}" for i in range(len(columns)))
    col_list = ", ".join(columns)
    conflict_target = ", ".join(conflict_columns)

    if update_columns:
        update_set = ", ".join(f"{col} = EXCLUDED.{col}" for col in update_columns)
        do_clause = f"DO UPDATE SET {update_set}"
    else:
        do_clause = "DO NOTHING"

    return (
        f"INSERT INTO {table} ({col_list}) "
        f"VALUES ({placeholders}) "
        f"ON CONFLICT ({conflict_target}) {do_clause}"
    )


def _numeric(value: float | None) -> Decimal | None:
    return None if value is None else Decimal(str(value))


def _float(value: Any) -> float | None:
    return None if value is None else float(value)


_ANY_METRIC = (
    "(sleep_score IS NOT NULL OR stress_score IS NOT NULL OR respiratory_score IS NOT NULL)"
)


# ---------------------------------------------------------------------------
# enrichment_scores
# ---------------------------------------------------------------------------

ENRICHMENT_COLUMNS: list[str] = [
    "user_id",
    "provider",
    "data_type",
    "terra_user_id",
    "sleep_score",
    "stress_score",
    "respiratory_score",
    "sleep_contributors",
    "stress_contributors",
    "respiratory_contributors",
    "summary_date",
    "recorded_at",
]
ENRICHMENT_KEY: list[str] = ["user_id", "provider", "data_type", "summary_date"]

ENRICHMENT_UPSERT = build_upsert_query("enrichment_scores", ENRICHMENT_COLUMNS, ENRICHMENT_KEY)

_ENRICHMENT_SELECT = f"SELECT {', '.join(ENRICHMENT_COLUMNS)} FROM enrichment_scores"


def record_from_row(row: Mapping[str, Any]) -> EnrichmentRecord:
    return EnrichmentRecord(
        user_id=row["user_id"],
        provider=row["provider"],
        data_type=row["data_type"],
        external_user_id=row["terra_user_id"],
        summary_date=row["summary_date"],
        sleep_score=_float(row["sleep_score"]),
        stress_score=_float(row["stress_score"]),
        respiratory_score=_float(row["respiratory_score"]),
        sleep_contributors=row["sleep_contributors"],
        stress_contributors=row["stress_contributors"],
        respiratory_contributors=row["respiratory_contributors"],
        recorded_at=row["recorded_at"],
    )


class PostgresEnrichmentRepository(EnrichmentRepository):
    """``enrichment_scores`` table access."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def upsert(self, record: EnrichmentRecord) -> None:
        await self._db.execute(
            ENRICHMENT_UPSERT,
            record.user_id,
            record.provider,
            record.data_type,
            record.external_user_id,
            _numeric(record.sleep_score),
            _numeric(record.stress_score),
            _numeric(record.respiratory_score),
            record.sleep_contributors,
            record.stress_contributors,
            record.respiratory_contributors,
            record.summary_date,
            record.recorded_at,
        )

    async def fetch_for_date(
        self, external_user_ids: list[str], summary_date: date
    ) -> list[EnrichmentRecord]:
        if not external_user_ids:
            return []
        rows = await self._db.fetch(
            f"""
            {_ENRICHMENT_SELECT}
            WHERE terra_user_id = ANY($1::text[])
              AND summary_date = $2
              AND {_ANY_METRIC}
            ORDER BY recorded_at DESC, provider, data_type
            """,
            external_user_ids,
            summary_date,
        )
        return [record_from_row(r) for r in rows]

    async def distinct_user_dates(self) -> list[tuple[UUID, date]]:
        rows = await self._db.fetch(
            f"""
            SELECT DISTINCT user_id, summary_date
            FROM enrichment_scores
            WHERE {_ANY_METRIC}
            ORDER BY user_id, summary_date
            """
        )
        return [(r["user_id"], r["summary_date"]) for r in rows]

    async def list_for_user(
        self, user_id: UUID, summary_date: date
    ) -> list[EnrichmentRecord]:
        rows = await self._db.fetch(
            f"""
            {_ENRICHMENT_SELECT}
            WHERE user_id = $1 AND summary_date = $2
            ORDER BY provider, data_type
            """,
            user_id,
            summary_date,
        )
        return [record_from_row(r) for r in rows]


# ---------------------------------------------------------------------------
# daily_health_scores
# ---------------------------------------------------------------------------

DAILY_COLUMNS: list[str] = [
    "user_id",
    "score_date",
    "sleep_score",
    "sleep_contributors",
    "stress_score",
    "stress_contributors",
    "respiratory_score",
    "respiratory_contributors",
    "providers",
    "last_updated",
]
DAILY_KEY: list[str] = ["user_id", "score_date"]

DAILY_UPSERT = build_upsert_query("daily_health_scores", DAILY_COLUMNS, DAILY_KEY)

_DAILY_SELECT = f"SELECT {', '.join(DAILY_COLUMNS)} FROM daily_health_scores"


def score_from_row(row: Mapping[str, Any]) -> DailyHealthScore:
    return DailyHealthScore(
        user_id=row["user_id"],
        score_date=row["score_date"],
        sleep_score=_float(row["sleep_score"]),
        stress_score=_float(row["stress_score"]),
        respiratory_score=_float(row["respiratory_score"]),
        sleep_contributors=row["sleep_contributors"],
        stress_contributors=row["stress_contributors"],
        respiratory_contributors=row["respiratory_contributors"],
        providers=list(row["providers"] or []),
        last_updated=row["last_updated"],
    )


class PostgresDailyScoreRepository(DailyScoreRepository):
    """``daily_health_scores`` table access."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def upsert(self, score: DailyHealthScore) -> None:
        await self._db.execute(
            DAILY_UPSERT,
            score.user_id,
            score.score_date,
            _numeric(score.sleep_score),
            score.sleep_contributors,
            _numeric(score.stress_score),
            score.stress_contributors,
            _numeric(score.respiratory_score),
            score.respiratory_contributors,
            score.providers,
            score.last_updated,
        )

    async def list_for_user(
        self,
        user_id: UUID,
        start_date: date | None = None,
        end_date: date | None = None,
        limit: int = 30,
    ) -> list[DailyHealthScore]:
        conditions = ["user_id = $1"]
        params: list[Any] = [user_id]
        idx = 2

        if start_date:
            conditions.append(f"score_date >= ${idx}")
            params.append(start_date)
            idx += 1
        if end_date:
            conditions.append(f"score_date <= ${idx}")
            params.append(end_date)
            idx += 1

        where = " AND ".join(conditions)
        rows = await self._db.fetch(
            f"{_DAILY_SELECT} WHERE {where} ORDER BY score_date DESC LIMIT ${idx}",
            *params,
            limit,
        )
        return [score_from_row(r) for r in rows]
