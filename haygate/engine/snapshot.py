"""Build a MetricSnapshot from concurrent, time-bounded MetricSource calls.

One call per enabled goal runs concurrently; every call completes, fails or
times out before the snapshot is assembled. An AuthorizationDenied from any
call aborts the whole collection. Other failures either abort (strict) or
zero-fill that one metric and record it in `snapshot.missing`.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable

from haygate.engine.errors import AuthorizationDenied, FetchTimeout, MetricError, MetricUnavailable
from haygate.engine.models import EnergyGoal, ExerciseGoal, GoalContainer, MetricSnapshot, StepGoal
from haygate.engine.ports import MetricSource

logger = logging.getLogger(__name__)


def minutes_since_midnight(now: datetime) -> int:
    return now.hour * 60 + now.minute


async def _bounded(name: str, call: Awaitable[Any], timeout: float) -> Any:
    try:
        return await asyncio.wait_for(call, timeout)
    except asyncio.TimeoutError as exc:
        raise FetchTimeout(f"{name} fetch exceeded {timeout}s", metric=name) from exc


async def collect_snapshot(
    source: MetricSource,
    container: GoalContainer,
    now: datetime,
    timeout: float,
    strict: bool = False,
) -> MetricSnapshot:
    names: list[str] = []
    calls: list[Awaitable[Any]] = []
    exercise_ids: dict[str, Any] = {}

    for goal in container.enabled_goals():
        if isinstance(goal, StepGoal):
            names.append("steps")
            calls.append(source.fetch_steps())
        elif isinstance(goal, EnergyGoal):
            names.append("active_energy")
            calls.append(source.fetch_active_energy())
        elif isinstance(goal, ExerciseGoal):
            name = f"exercise:{goal.id}"
            names.append(name)
            calls.append(source.fetch_exercise_minutes(goal.activity))
            exercise_ids[name] = goal.id

    results = await asyncio.gather(
        *(_bounded(name, call, timeout) for name, call in zip(names, calls)),
        return_exceptions=True,
    )

    for result in results:
        if isinstance(result, asyncio.CancelledError):
            raise result
    for result in results:
        if isinstance(result, AuthorizationDenied):
            raise result

    steps = 0
    active_energy = 0.0
    exercise: dict = {}
    missing: set[str] = set()

    for name, result in zip(names, results):
        if isinstance(result, BaseException):
            error = result if isinstance(result, MetricError) else MetricUnavailable(str(result), metric=name)
            if strict:
                raise error
            logger.warning("Metric %s unavailable, treating as zero: %s", name, error)
            missing.add(name)
            result = 0

        if name == "steps":
            steps = int(result)
        elif name == "active_energy":
            active_energy = float(result)
        else:
            exercise[exercise_ids[name]] = int(result)

    return MetricSnapshot(
        steps=steps,
        active_energy=active_energy,
        exercise_minutes=exercise,
        minutes_since_midnight=minutes_since_midnight(now),
        missing=frozenset(missing),
    )
