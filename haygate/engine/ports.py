"""Interfaces to the collaborators the engine consumes but does not implement."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Protocol
from zoneinfo import ZoneInfo

from haygate.engine.models import ActivityFilter, AppSelection


class MetricSource(Protocol):
    """Today's cumulative health values. Each call may raise a MetricError."""

    async def fetch_steps(self) -> int: ...

    async def fetch_active_energy(self) -> float: ...

    async def fetch_exercise_minutes(self, activity: ActivityFilter) -> int: ...


class ShieldSink(Protocol):
    """Enforces or lifts the app restriction. Both calls are idempotent."""

    async def apply(self, selection: AppSelection) -> None: ...

    async def remove(self) -> None: ...


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def __init__(self, tz_name: str = "UTC"):
        self.tz = ZoneInfo(tz_name)

    def now(self) -> datetime:
        return datetime.now(self.tz)


@dataclass(frozen=True, slots=True)
class WakeEvent:
    reason: str  # "interval" | "health_update" | "time_unlock" | "manual"
    at: datetime


class WakeSource(Protocol):
    def __aiter__(self) -> AsyncIterator[WakeEvent]: ...
