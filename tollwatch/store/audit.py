"""Local SQLite log of security-relevant search events."""
import logging
import time
from pathlib import Path
from typing import Any, Optional

import aiosqlite
import orjson

from tollwatch.config import AUDIT_DB, config

logger = logging.getLogger(__name__)

INVALID_TOLL_SEARCH = "INVALID_TOLL_SEARCH"
TOLL_SEARCH_ATTEMPTED = "TOLL_SEARCH_ATTEMPTED"
TOLL_SEARCH_ERROR = "TOLL_SEARCH_ERROR"


class AuditLog:
    """Append-only security events. Recording problems are logged, never raised."""

    def __init__(self, db_path: Path = AUDIT_DB, enabled: bool = config.AUDIT_ENABLED):
        self.db_path = db_path
        self.enabled = enabled
        self._initialized = False

    async def initialize(self) -> None:
        """Create tables if they don't exist."""
        if not self.enabled or self._initialized:
            return
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS security_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    event_type TEXT NOT NULL,
                    description TEXT NOT NULL,
                    user_id TEXT,
                    details TEXT,
                    created_at REAL NOT NULL
                )
                """
            )
            await db.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_events_type_time
                ON security_events(event_type, created_at)
                """
            )
            await db.commit()
        self._initialized = True
        logger.info(f"Audit database initialized at {self.db_path}")

    async def record(
        self,
        event_type: str,
        description: str,
        user_id: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        logger.info(f"[audit] {event_type}: {description} (user={user_id})")
        if not self.enabled:
            return
        try:
            await self.initialize()
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT INTO security_events (event_type, description, user_id, details, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        event_type,
                        description[:500],
                        user_id,
                        orjson.dumps(details, default=str).decode() if details else None,
                        time.time(),
                    ),
                )
                await db.commit()
        except Exception as e:
            logger.error(f"Failed to record audit event {event_type}: {e}")

    async def count_recent(self, event_type: str, since_seconds: float, user_id: Optional[str] = None) -> int:
        """Events of one type within the last since_seconds; 0 when disabled or unreadable."""
        if not self.enabled:
            return 0
        query = "SELECT COUNT(*) FROM security_events WHERE event_type = ? AND created_at >= ?"
        params: list[Any] = [event_type, time.time() - since_seconds]
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        try:
            await self.initialize()
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(query, params)
                row = await cursor.fetchone()
                return int(row[0]) if row else 0
        except Exception as e:
            logger.error(f"Failed to read audit events: {e}")
            return 0
