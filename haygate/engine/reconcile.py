"""ReconciliationLoop: evaluate-and-apply driven by wake events, no user present.

The loop reaches the same verdict as GateController.refresh but is fail-safe:
any fetch or shield error leaves the shield exactly as it was. It does not own
BlockingState; the next foreground refresh records the verdict. It takes a
generation from the shared Transitions like a refresh does, and a run that a
newer transition overtook never touches the shield.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import AsyncIterator

from haygate.engine import evaluator
from haygate.engine.controller import Transitions
from haygate.engine.errors import GateError, MetricError, ShieldError
from haygate.engine.models import ReconcileOutcome
from haygate.engine.pending import PendingChangeScheduler, load_selection
from haygate.engine.ports import Clock, MetricSource, ShieldSink, WakeEvent, WakeSource
from haygate.engine.schedule import WEEKDAYS, WeeklySchedule, load_schedule, weekday_of
from haygate.engine.snapshot import collect_snapshot
from haygate.engine.store import Store

logger = logging.getLogger(__name__)

_LAST_MINUTE = 24 * 60 - 1


# ---------------------------------------------------------------------------
# Unlock-time wake plan
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class WeekdayUnlockEntry:
    weekday: int
    unlock_minutes: int


def unlock_wake_plan(schedule: WeeklySchedule) -> list[WeekdayUnlockEntry]:
    """Weekdays whose enabled time-unlock goal needs a wake at its unlock time."""
    plan = []
    for weekday in WEEKDAYS:
        goal = schedule.goal_for(weekday).time_unlock
        if goal is None or not goal.enabled:
            continue
        minutes = min(max(goal.unlock_minutes, 0), _LAST_MINUTE)
        if minutes == 0:  # met from midnight, nothing to wake for
            continue
        plan.append(WeekdayUnlockEntry(weekday=weekday, unlock_minutes=minutes))
    return plan


def next_unlock_at(plan: list[WeekdayUnlockEntry], now: datetime) -> datetime | None:
    """Earliest unlock instant in `plan` strictly after `now`."""
    today = weekday_of(now.date())
    best: datetime | None = None
    for entry in plan:
        day = now.date() + timedelta(days=(entry.weekday - today) % 7)
        at = datetime.combine(
            day, time(entry.unlock_minutes // 60, entry.unlock_minutes % 60), tzinfo=now.tzinfo
        )
        if at <= now:
            at += timedelta(days=7)
        if best is None or at < best:
            best = at
    return best


# ---------------------------------------------------------------------------
# Wake sources
# ---------------------------------------------------------------------------


class IntervalWakeSource:
    """Fires once at start, then every `interval` seconds or at the next unlock time.

    After failures the interval doubles per consecutive failure up to
    `max_backoff`; one success resets it.
    """

    def __init__(
        self,
        clock: Clock,
        interval: float = 3600.0,
        max_backoff: float = 21600.0,
        plan: list[WeekdayUnlockEntry] | None = None,
    ):
        self.clock = clock
        self.interval = interval
        self.max_backoff = max(max_backoff, interval)
        self.plan = list(plan or [])
        self.failures = 0

    def succeeded(self) -> None:
        self.failures = 0

    def failed(self) -> None:
        self.failures += 1

    def set_plan(self, plan: list[WeekdayUnlockEntry]) -> None:
        self.plan = list(plan)

    @property
    def delay(self) -> float:
        if self.failures == 0:
            return self.interval
        return min(self.interval * 2**self.failures, self.max_backoff)

    def next_wake(self, now: datetime) -> tuple[float, str]:
        delay, reason = self.delay, "interval"
        unlock_at = next_unlock_at(self.plan, now)
        if unlock_at is not None:
            until_unlock = (unlock_at - now).total_seconds()
            if until_unlock < delay:
                delay, reason = until_unlock, "time_unlock"
        return delay, reason

    async def __aiter__(self) -> AsyncIterator[WakeEvent]:
        yield WakeEvent(reason="startup", at=self.clock.now())
        while True:
            delay, reason = self.next_wake(self.clock.now())
            await asyncio.sleep(delay)
            yield WakeEvent(reason=reason, at=self.clock.now())


# ---------------------------------------------------------------------------
# Loop
# ---------------------------------------------------------------------------


class ReconciliationLoop:
    def __init__(
        self,
        store: Store,
        metrics: MetricSource,
        shield: ShieldSink,
        clock: Clock,
        scheduler: PendingChangeScheduler | None = None,
        transitions: Transitions | None = None,
        fetch_timeout: float = 10.0,
    ):
        self.store = store
        self.metrics = metrics
        self.shield = shield
        self.clock = clock
        self.scheduler = scheduler or PendingChangeScheduler(store)
        self.transitions = transitions or Transitions()
        self.lock = self.transitions.lock
        self.fetch_timeout = fetch_timeout
        self.last_outcome: ReconcileOutcome | None = None

    async def reconcile(self, reason: str = "wake") -> ReconcileOutcome:
        now = self.clock.now()
        weekday = weekday_of(now.date())
        generation = self.transitions.begin()

        async with self.lock:
            try:
                pending_applied = await self.scheduler.apply_if_due(weekday, now)
                await self.scheduler.apply_due_selections(now)
                container = (await load_schedule(self.store, weekday)).goal_for(weekday)
                selection = await load_selection(self.store)
            except GateError as exc:
                logger.error("Reconciliation (%s) could not load goals, shields unchanged: %s", reason, exc)
                return self._done("failed", weekday, reason, error=str(exc))

        if not evaluator.has_enabled_goals(container):
            logger.debug("No enabled goals for weekday %d, skipping reconciliation", weekday)
            return self._done("skipped", weekday, reason, pending_applied=pending_applied)

        try:
            snapshot = await collect_snapshot(self.metrics, container, now, self.fetch_timeout, strict=True)
        except MetricError as exc:
            logger.error("Reconciliation (%s) fetch failed, shields unchanged: %s", reason, exc)
            return self._done("failed", weekday, reason, pending_applied=pending_applied, error=str(exc))

        block = evaluator.should_block(container, snapshot)
        async with self.lock:
            if not self.transitions.is_current(generation):
                logger.info("Reconciliation (%s) overtaken by a newer transition, shields unchanged", reason)
                return self._done(
                    "superseded", weekday, reason, should_block=block, pending_applied=pending_applied
                )
            try:
                if block:
                    await self.shield.apply(selection)
                else:
                    await self.shield.remove()
            except ShieldError as exc:
                logger.error("Reconciliation (%s) shield update failed: %s", reason, exc)
                return self._done(
                    "failed", weekday, reason, should_block=block, pending_applied=pending_applied, error=str(exc)
                )

        logger.info(
            "Reconciliation (%s) complete: should_block=%s steps=%d energy=%.0f",
            reason,
            block,
            snapshot.steps,
            snapshot.active_energy,
        )
        return self._done("applied", weekday, reason, should_block=block, pending_applied=pending_applied)

    def _done(self, status: str, weekday: int, reason: str, **fields) -> ReconcileOutcome:
        self.last_outcome = ReconcileOutcome(status=status, weekday=weekday, reason=reason, **fields)
        return self.last_outcome

    async def handle_wake(self, event: WakeEvent) -> ReconcileOutcome:
        logger.debug("Wake (%s) at %s", event.reason, event.at.isoformat())
        return await self.reconcile(reason=event.reason)

    async def run(self, wakes: WakeSource) -> None:
        """Reconcile on every wake until the source is exhausted or the task is cancelled."""
        async for event in wakes:
            outcome = await self.handle_wake(event)
            if isinstance(wakes, IntervalWakeSource):
                if outcome.status == "failed":
                    wakes.failed()
                else:
                    wakes.succeeded()
                    wakes.set_plan(unlock_wake_plan(await self._schedule_or_empty()))

    async def _schedule_or_empty(self) -> WeeklySchedule:
        try:
            return await load_schedule(self.store, weekday_of(self.clock.now().date()))
        except GateError as exc:
            logger.warning("Could not refresh unlock plan: %s", exc)
            return WeeklySchedule()
