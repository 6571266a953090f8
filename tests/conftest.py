"""Shared fixtures for the test suite."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient

from haygate.engine.container import build_engine, get_engine
from haygate.engine.errors import ShieldError
from haygate.engine.models import ActivityFilter, AppSelection, GoalContainer
from haygate.engine.schedule import WeeklySchedule, save_schedule
from haygate.engine.store import MemoryStore
from haygate.main import app

# Sunday, weekday 1
NOW = datetime(2026, 2, 15, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Deterministic collaborators
# ---------------------------------------------------------------------------


class FixedClock:
    def __init__(self, now: datetime = NOW):
        self.current = now

    def now(self) -> datetime:
        return self.current

    def advance(self, **delta) -> None:
        self.current += timedelta(**delta)


class FakeMetricSource:
    """Returns configured values; `errors[name]` makes that call raise."""

    def __init__(
        self,
        steps: int = 0,
        active_energy: float = 0.0,
        exercise: dict[ActivityFilter, int] | None = None,
    ):
        self.steps = steps
        self.active_energy = active_energy
        self.exercise = dict(exercise or {})
        self.errors: dict[str, Exception] = {}
        self.delay = 0.0
        self.calls: list[str] = []

    async def _call(self, name: str) -> None:
        self.calls.append(name)
        if self.delay:
            await asyncio.sleep(self.delay)
        if name in self.errors:
            raise self.errors[name]

    async def fetch_steps(self) -> int:
        await self._call("steps")
        return self.steps

    async def fetch_active_energy(self) -> float:
        await self._call("active_energy")
        return self.active_energy

    async def fetch_exercise_minutes(self, activity: ActivityFilter) -> int:
        await self._call("exercise")
        return self.exercise.get(activity, 0)


class FakeShieldSink:
    def __init__(self):
        self.commands: list[tuple[str, AppSelection | None]] = []
        self.error: ShieldError | None = None

    async def apply(self, selection: AppSelection) -> None:
        if self.error is not None:
            raise self.error
        self.commands.append(("apply", selection))

    async def remove(self) -> None:
        if self.error is not None:
            raise self.error
        self.commands.append(("remove", None))

    @property
    def last(self) -> str | None:
        return self.commands[-1][0] if self.commands else None


# ---------------------------------------------------------------------------
# Fake DB session (no real Postgres needed)
# ---------------------------------------------------------------------------


class FakeSession:
    """Minimal stand-in for AsyncSession.

    `rows` maps a table name to the rows a SELECT against it returns, newest first.
    """

    def __init__(self, rows: dict[str, list[tuple]] | None = None, error: Exception | None = None):
        self.rows = rows or {}
        self.error = error
        self.statements: list[tuple[str, dict[str, Any] | None]] = []
        self.commits = 0

    async def execute(self, stmt, params=None):
        sql = str(stmt)
        self.statements.append((sql, params))
        if self.error is not None:
            raise self.error
        for table, rows in self.rows.items():
            if f"FROM {table}" in sql:
                return FakeResult(rows)
        return FakeResult([])

    async def commit(self):
        self.commits += 1

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        pass


class FakeResult:
    def __init__(self, rows: list[tuple]):
        self._rows = rows

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def clock():
    return FixedClock()


@pytest.fixture()
def store():
    return MemoryStore()


@pytest.fixture()
def metrics():
    return FakeMetricSource()


@pytest.fixture()
def shield():
    return FakeShieldSink()


@pytest.fixture()
def engine(store, metrics, shield, clock):
    return build_engine(store, metrics, shield, clock)


@pytest.fixture()
async def client(engine):
    app.dependency_overrides[get_engine] = lambda: engine
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


async def seed_schedule(store: MemoryStore, container: GoalContainer, today_weekday: int = 1) -> None:
    """Store `container` on every weekday."""
    await save_schedule(store, WeeklySchedule.repeating(container), today_weekday)
