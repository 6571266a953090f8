"""Key/value persistence shared by the API process and wake-triggered runs.

Table: haygate_kv
  key (text, primary key), value (text, JSON payload), updated_at (timestamptz)

Values are JSON strings; callers own the encoding. Every write either lands
completely or raises PersistenceError.
"""

from __future__ import annotations

from typing import Protocol

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from haygate.engine.errors import PersistenceError

WEEKLY_SCHEDULE_KEY = "weekly_schedule"
LEGACY_GOAL_KEY = "health_goal"
LEGACY_STEP_KEY = "daily_step_goal"
BLOCKING_STATE_KEY = "blocking_state"
SELECTION_KEY = "app_selection"
PENDING_SELECTIONS_KEY = "pending_selections"


class Store(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...

    async def set_many(self, items: dict[str, str]) -> None: ...


class MemoryStore:
    """Process-local store, used for tests and single-process runs."""

    def __init__(self, data: dict[str, str] | None = None):
        self.data: dict[str, str] = dict(data or {})

    async def get(self, key: str) -> str | None:
        return self.data.get(key)

    async def set(self, key: str, value: str) -> None:
        self.data[key] = value

    async def set_many(self, items: dict[str, str]) -> None:
        self.data.update(items)


_CREATE_SQL = (
    "CREATE TABLE IF NOT EXISTS haygate_kv ("
    "key TEXT PRIMARY KEY, "
    "value TEXT NOT NULL, "
    "updated_at TIMESTAMPTZ NOT NULL DEFAULT now())"
)

_UPSERT_SQL = (
    "INSERT INTO haygate_kv (key, value, updated_at) "
    "VALUES (:key, :value, now()) "
    "ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value, updated_at = now()"
)


class SqlStore:
    """Store backed by the haygate_kv table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def ensure_table(self) -> None:
        try:
            async with self._session_factory() as session:
                await session.execute(text(_CREATE_SQL))
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not create haygate_kv: {exc}") from exc

    async def get(self, key: str) -> str | None:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    text("SELECT value FROM haygate_kv WHERE key = :key"), {"key": key}
                )
                row = result.fetchone()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Read of '{key}' failed: {exc}") from exc
        if row is None:
            return None
        return row[0]

    async def set(self, key: str, value: str) -> None:
        await self.set_many({key: value})

    async def set_many(self, items: dict[str, str]) -> None:
        """Write all items in one transaction."""
        try:
            async with self._session_factory() as session:
                for key, value in items.items():
                    await session.execute(text(_UPSERT_SQL), {"key": key, "value": value})
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Write of {sorted(items)} failed: {exc}") from exc
