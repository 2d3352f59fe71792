"""Connection Directory backed by the ``wearable_connections`` table.

The table belongs to the account-linking service; this module only reads it.
"""

from __future__ import annotations

import logging
from uuid import UUID

from healthscore.enrichment.base import ConnectionDirectory, WearableConnection
from healthscore.services.database import Database

logger = logging.getLogger("healthscore.connections")


class PostgresConnectionDirectory(ConnectionDirectory):
    """Resolve provider device ids to users and list a user's devices."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def lookup(self, external_user_id: str) -> WearableConnection | None:
        row = await self._db.fetchrow(
            """
            SELECT user_id, provider, terra_user_id, is_active
            FROM wearable_connections
            WHERE terra_user_id = $1
            LIMIT 1
            """,
            external_user_id,
        )
        if row is None:
            return None
        return WearableConnection(
            user_id=row["user_id"],
            provider=row["provider"],
            external_user_id=row["terra_user_id"],
            is_active=bool(row["is_active"]),
        )

    async def device_ids_for_user(self, user_id: UUID) -> list[str]:
        # Disconnected devices are included: their history still counts.
        rows = await self._db.fetch(
            """
            SELECT DISTINCT terra_user_id
            FROM wearable_connections
            WHERE user_id = $1
            ORDER BY terra_user_id
            """,
            user_id,
        )
        return [r["terra_user_id"] for r in rows]
