"""Tests for wake-driven reconciliation, the unlock wake plan and interval backoff."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from haygate.engine.errors import AuthorizationDenied, MetricUnavailable, ShieldUpdateFailed
from haygate.engine.models import AppSelection, ExerciseGoal, GateState, GoalContainer, StepGoal, TimeUnlockGoal
from haygate.engine.pending import PendingChangeScheduler
from haygate.engine.ports import WakeEvent
from haygate.engine.reconcile import (
    IntervalWakeSource,
    ReconciliationLoop,
    WeekdayUnlockEntry,
    next_unlock_at,
    unlock_wake_plan,
)
from haygate.engine.schedule import WeeklySchedule
from haygate.engine.store import BLOCKING_STATE_KEY, SELECTION_KEY
from tests.conftest import FixedClock, NOW, seed_schedule


@pytest.fixture()
def loop(store, metrics, shield, clock):
    return ReconciliationLoop(store, metrics, shield, clock)


class ListWakeSource:
    def __init__(self, events: list[WakeEvent]):
        self.events = events

    async def __aiter__(self):
        for event in self.events:
            yield event


class TestReconcile:
    @pytest.mark.asyncio
    async def test_no_enabled_goals_is_noop(self, loop, store, metrics, shield):
        await seed_schedule(store, GoalContainer(steps=StepGoal(enabled=False)))
        outcome = await loop.reconcile()
        assert outcome.status == "skipped"
        assert metrics.calls == []
        assert shield.commands == []

    @pytest.mark.asyncio
    async def test_unmet_applies_shield(self, loop, store, metrics, shield):
        selection = AppSelection(applications=frozenset({"app.feed"}))
        await store.set(SELECTION_KEY, selection.model_dump_json())
        metrics.steps = 100
        outcome = await loop.reconcile()
        assert outcome.status == "applied"
        assert outcome.should_block is True
        assert shield.commands == [("apply", selection)]

    @pytest.mark.asyncio
    async def test_met_removes_shield(self, loop, metrics, shield):
        metrics.steps = 10_000
        outcome = await loop.reconcile()
        assert outcome.should_block is False
        assert shield.last == "remove"

    @pytest.mark.asyncio
    async def test_one_fetch_per_exercise_goal(self, loop, store, metrics):
        await seed_schedule(store, GoalContainer(steps=None, exercise=(ExerciseGoal(), ExerciseGoal())))
        await loop.reconcile()
        assert metrics.calls == ["exercise", "exercise"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [MetricUnavailable("no data"), AuthorizationDenied("revoked")],
    )
    async def test_fetch_error_leaves_shield(self, loop, metrics, shield, error):
        metrics.errors["steps"] = error
        outcome = await loop.reconcile()
        assert outcome.status == "failed"
        assert outcome.error is not None
        assert shield.commands == []

    @pytest.mark.asyncio
    async def test_timeout_leaves_shield(self, store, metrics, shield, clock):
        loop = ReconciliationLoop(store, metrics, shield, clock, fetch_timeout=0.01)
        metrics.delay = 0.5
        outcome = await loop.reconcile()
        assert outcome.status == "failed"
        assert shield.commands == []

    @pytest.mark.asyncio
    async def test_shield_error_reported(self, loop, shield):
        shield.error = ShieldUpdateFailed("down")
        outcome = await loop.reconcile()
        assert outcome.status == "failed"
        assert outcome.should_block is True

    @pytest.mark.asyncio
    async def test_applies_due_pending_first(self, loop, store, metrics, clock):
        scheduler = PendingChangeScheduler(store)
        await scheduler.schedule_change(1, GoalContainer(steps=StepGoal(target=50)), NOW, NOW)
        metrics.steps = 100
        outcome = await loop.reconcile()
        assert outcome.pending_applied is True
        assert outcome.should_block is False

    @pytest.mark.asyncio
    async def test_does_not_write_blocking_state(self, loop, store):
        await loop.reconcile()
        assert BLOCKING_STATE_KEY not in store.data

    @pytest.mark.asyncio
    async def test_matches_controller_verdict(self, engine, metrics):
        metrics.steps = 4_000
        foreground = await engine.controller.refresh()
        background = await engine.loop.reconcile()
        assert background.should_block == foreground.evaluation.should_block


class TestSerialization:
    @pytest.mark.asyncio
    async def test_override_during_fetch_wins(self, engine, metrics, shield):
        metrics.steps = 6_000
        metrics.delay = 0.05
        background = asyncio.create_task(engine.loop.reconcile())
        await asyncio.sleep(0.01)

        code = engine.gatekeeper.issue_emergency_code().code
        result = await engine.gatekeeper.apply_emergency_change(
            1, code, GoalContainer(steps=StepGoal(target=5_000))
        )
        outcome = await background

        assert result.refresh.state == GateState.unlocked
        assert outcome.status == "superseded"
        assert [name for name, _ in shield.commands] == ["remove"]

    @pytest.mark.asyncio
    async def test_refresh_started_later_wins(self, engine, metrics, shield):
        metrics.steps = 20_000
        metrics.delay = 0.05
        background = asyncio.create_task(engine.loop.reconcile())
        await asyncio.sleep(0.01)

        foreground = await engine.controller.refresh()
        outcome = await background

        assert foreground.state == GateState.unlocked
        assert outcome.status == "superseded"
        assert [name for name, _ in shield.commands] == ["remove"]

    @pytest.mark.asyncio
    async def test_reconcile_started_later_supersedes_refresh(self, engine, metrics, shield):
        metrics.steps = 1
        metrics.delay = 0.05
        foreground = asyncio.create_task(engine.controller.refresh())
        await asyncio.sleep(0.01)

        outcome = await engine.loop.reconcile()

        assert (await foreground).superseded is True
        assert outcome.status == "applied"
        assert shield.last == "apply"


class TestRun:
    @pytest.mark.asyncio
    async def test_reconciles_each_wake(self, loop, shield):
        wakes = ListWakeSource([WakeEvent("health_update", NOW), WakeEvent("manual", NOW)])
        await loop.run(wakes)
        assert len(shield.commands) == 2
        assert loop.last_outcome.reason == "manual"

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_loop(self, loop, metrics, shield):
        metrics.errors["steps"] = MetricUnavailable("flaky")
        await loop.run(ListWakeSource([WakeEvent("interval", NOW)] * 3))
        assert loop.last_outcome.status == "failed"
        assert shield.commands == []


class TestUnlockPlan:
    def test_only_enabled_nonzero_unlocks(self):
        schedule = (
            WeeklySchedule()
            .with_goal(2, GoalContainer(time_unlock=TimeUnlockGoal(unlock_minutes=1020, enabled=True)))
            .with_goal(3, GoalContainer(time_unlock=TimeUnlockGoal(unlock_minutes=0, enabled=True)))
            .with_goal(4, GoalContainer(time_unlock=TimeUnlockGoal(unlock_minutes=600, enabled=False)))
        )
        assert unlock_wake_plan(schedule) == [WeekdayUnlockEntry(weekday=2, unlock_minutes=1020)]

    def test_next_unlock_later_today(self):
        plan = [WeekdayUnlockEntry(weekday=1, unlock_minutes=17 * 60)]
        assert next_unlock_at(plan, NOW) == datetime(2026, 2, 15, 17, 0, tzinfo=timezone.utc)

    def test_next_unlock_passed_today_is_next_week(self):
        plan = [WeekdayUnlockEntry(weekday=1, unlock_minutes=9 * 60)]
        assert next_unlock_at(plan, NOW) == datetime(2026, 2, 22, 9, 0, tzinfo=timezone.utc)

    def test_next_unlock_earliest_wins(self):
        plan = [
            WeekdayUnlockEntry(weekday=3, unlock_minutes=60),
            WeekdayUnlockEntry(weekday=2, unlock_minutes=1200),
        ]
        assert next_unlock_at(plan, NOW) == datetime(2026, 2, 16, 20, 0, tzinfo=timezone.utc)

    def test_empty_plan(self):
        assert next_unlock_at([], NOW) is None


class TestIntervalWakeSource:
    def test_backoff_doubles_and_caps(self):
        source = IntervalWakeSource(FixedClock(), interval=60, max_backoff=300)
        assert source.delay == 60
        source.failed()
        assert source.delay == 120
        source.failed()
        assert source.delay == 240
        source.failed()
        assert source.delay == 300
        source.succeeded()
        assert source.delay == 60

    def test_unlock_sooner_than_interval(self):
        plan = [WeekdayUnlockEntry(weekday=1, unlock_minutes=12 * 60 + 10)]
        source = IntervalWakeSource(FixedClock(), interval=3600, plan=plan)
        assert source.next_wake(NOW) == (600.0, "time_unlock")

    def test_interval_sooner_than_unlock(self):
        plan = [WeekdayUnlockEntry(weekday=1, unlock_minutes=20 * 60)]
        source = IntervalWakeSource(FixedClock(), interval=3600, plan=plan)
        assert source.next_wake(NOW) == (3600, "interval")

    @pytest.mark.asyncio
    async def test_fires_on_start_then_ticks(self):
        clock = FixedClock()
        source = IntervalWakeSource(clock, interval=0.001)
        events = []
        async for event in source:
            events.append(event)
            clock.advance(minutes=1)
            if len(events) == 3:
                break
        assert [e.reason for e in events] == ["startup", "interval", "interval"]
        assert events[1].at - events[0].at == timedelta(minutes=1)

    @pytest.mark.asyncio
    async def test_run_feeds_back_outcomes(self, loop, store, metrics):
        await seed_schedule(
            store,
            GoalContainer(time_unlock=TimeUnlockGoal(unlock_minutes=18 * 60, enabled=True)),
        )
        metrics.errors["steps"] = MetricUnavailable("flaky")
        source = CountedWakeSource(FixedClock(), count=3, interval=60)
        await loop.run(source)
        assert source.failures == 3
        assert source.delay == 480

        metrics.errors.clear()
        source.count = 1
        await loop.run(source)
        assert source.failures == 0
        assert source.plan == [WeekdayUnlockEntry(weekday=w, unlock_minutes=18 * 60) for w in range(1, 8)]


class CountedWakeSource(IntervalWakeSource):
    def __init__(self, clock, count: int, **kwargs):
        super().__init__(clock, **kwargs)
        self.count = count

    async def __aiter__(self):
        for _ in range(self.count):
            yield WakeEvent("interval", self.clock.now())
