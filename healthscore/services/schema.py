"""DDL for the enrichment pipeline tables.

``wearable_connections`` is owned by the account-linking service; the
statement here only creates it in empty development databases so the
directory lookups have something to read.
"""

from __future__ import annotations

import logging

from healthscore.services.database import Database

logger = logging.getLogger("healthscore.db.schema")

SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS wearable_connections (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        user_id UUID NOT NULL,
        provider VARCHAR(50) NOT NULL,
        terra_user_id VARCHAR(255) UNIQUE NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS enrichment_scores (
        id BIGSERIAL PRIMARY KEY,
        user_id UUID NOT NULL,
        provider VARCHAR(50) NOT NULL,
        data_type VARCHAR(50) NOT NULL,
        terra_user_id VARCHAR(255) NOT NULL,
        sleep_score NUMERIC(5,2),
        stress_score NUMERIC(5,2),
        respiratory_score NUMERIC(5,2),
        sleep_contributors JSONB,
        stress_contributors JSONB,
        respiratory_contributors JSONB,
        summary_date DATE NOT NULL,
        recorded_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (user_id, provider, data_type, summary_date)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_enrichment_terra_date "
    "ON enrichment_scores (terra_user_id, summary_date)",
    """
    CREATE TABLE IF NOT EXISTS daily_health_scores (
        id BIGSERIAL PRIMARY KEY,
        user_id UUID NOT NULL,
        score_date DATE NOT NULL,
        sleep_score NUMERIC(5,2),
        sleep_contributors JSONB,
        stress_score NUMERIC(5,2),
        stress_contributors JSONB,
        respiratory_score NUMERIC(5,2),
        respiratory_contributors JSONB,
        providers TEXT[] NOT NULL DEFAULT '{}',
        last_updated TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (user_id, score_date)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_daily_health_date ON daily_health_scores (score_date)",
)


async def ensure_schema(db: Database) -> None:
    """Create tables and indexes if they do not exist. Safe to call repeatedly."""
    async with db.connection() as conn:
        for statement in SCHEMA_STATEMENTS:
            await conn.execute(statement)
    logger.info("Enrichment schema ensured (%d statements)", len(SCHEMA_STATEMENTS))
