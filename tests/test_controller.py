"""Tests for GateController refresh, rollover, failure handling and supersession."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from haygate.engine.controller import GateController
from haygate.engine.errors import AuthorizationDenied, MetricUnavailable, ShieldUpdateFailed
from haygate.engine.models import (
    AppSelection,
    BlockingState,
    EnergyGoal,
    ExerciseGoal,
    GateState,
    GoalContainer,
    StepGoal,
    TimeUnlockGoal,
)
from haygate.engine.pending import PendingChangeScheduler
from haygate.engine.schedule import load_schedule, save_schedule
from haygate.engine.store import BLOCKING_STATE_KEY, SELECTION_KEY
from tests.conftest import NOW, seed_schedule

SELECTION = AppSelection(applications=frozenset({"app.video"}), categories=frozenset({"social"}))


@pytest.fixture()
def controller(store, metrics, shield, clock):
    return GateController(store, metrics, shield, clock)


@pytest.fixture()
async def selected(store):
    await store.set(SELECTION_KEY, SELECTION.model_dump_json())


class TestRefresh:
    @pytest.mark.asyncio
    async def test_cold_start_derives_state(self, controller):
        status = await controller.status()
        assert status.state is None

    @pytest.mark.asyncio
    async def test_unmet_locks_with_selection(self, controller, metrics, shield, store, selected):
        metrics.steps = 4_500
        outcome = await controller.refresh()
        assert outcome.state == GateState.locked
        assert outcome.evaluation.should_block
        assert shield.commands == [("apply", SELECTION)]
        persisted = BlockingState.model_validate_json(store.data[BLOCKING_STATE_KEY])
        assert persisted.is_blocked is True
        assert persisted.last_evaluated_day == NOW.date().toordinal()

    @pytest.mark.asyncio
    async def test_met_unlocks(self, controller, metrics, shield):
        metrics.steps = 12_500
        outcome = await controller.refresh()
        assert outcome.state == GateState.unlocked
        assert shield.last == "remove"
        assert controller.is_goal_met()

    @pytest.mark.asyncio
    async def test_no_enabled_goals_unlocks(self, controller, store, shield, metrics):
        await seed_schedule(store, GoalContainer(steps=StepGoal(enabled=False)))
        outcome = await controller.refresh()
        assert outcome.state == GateState.unlocked
        assert shield.last == "remove"
        assert metrics.calls == []

    @pytest.mark.asyncio
    async def test_only_enabled_goals_fetched(self, controller, store, metrics):
        await seed_schedule(
            store,
            GoalContainer(exercise=(ExerciseGoal(), ExerciseGoal(enabled=False))),
        )
        await controller.refresh()
        assert sorted(metrics.calls) == ["exercise", "steps"]

    @pytest.mark.asyncio
    async def test_time_unlock_reached(self, controller, store, clock):
        await seed_schedule(
            store,
            GoalContainer(steps=None, time_unlock=TimeUnlockGoal(unlock_minutes=11 * 60, enabled=True)),
        )
        assert (await controller.refresh()).state == GateState.unlocked
        clock.current = datetime(2026, 2, 15, 10, 0, tzinfo=timezone.utc)
        assert (await controller.refresh()).state == GateState.locked


class TestDayRollover:
    @pytest.mark.asyncio
    async def test_new_day_relocks(self, controller, metrics, clock):
        metrics.steps = 12_000
        assert (await controller.refresh()).state == GateState.unlocked

        clock.advance(days=1)
        metrics.steps = 0
        outcome = await controller.refresh()
        assert outcome.rolled_over is True
        assert outcome.state == GateState.locked

    @pytest.mark.asyncio
    async def test_rollover_uses_new_weekday_goals(self, controller, store, metrics, clock):
        monday = GoalContainer(steps=StepGoal(target=100))
        schedule = (await load_schedule(store, 1)).with_goal(2, monday)
        await save_schedule(store, schedule, 1)
        metrics.steps = 500
        assert (await controller.refresh()).state == GateState.locked

        clock.advance(days=1)
        outcome = await controller.refresh()
        assert outcome.weekday == 2
        assert outcome.state == GateState.unlocked

    @pytest.mark.asyncio
    async def test_same_day_is_not_rollover(self, controller):
        await controller.refresh()
        assert (await controller.refresh()).rolled_over is False


class TestFailures:
    @pytest.mark.asyncio
    async def test_authorization_denied_keeps_state(self, controller, metrics, shield):
        metrics.steps = 20_000
        await controller.refresh()
        shield.commands.clear()

        metrics.errors["steps"] = AuthorizationDenied("revoked", metric="steps")
        outcome = await controller.refresh()
        assert outcome.error is not None
        assert outcome.state == GateState.unlocked
        assert shield.commands == []

    @pytest.mark.asyncio
    async def test_authorization_denied_on_cold_start(self, controller, metrics, store):
        metrics.errors["steps"] = AuthorizationDenied("never granted")
        outcome = await controller.refresh()
        assert outcome.state is None
        assert BLOCKING_STATE_KEY not in store.data

    @pytest.mark.asyncio
    async def test_unavailable_metric_is_zero(self, controller, store, metrics):
        await seed_schedule(
            store,
            GoalContainer(steps=StepGoal(target=100), energy=EnergyGoal(target=0, enabled=True)),
        )
        metrics.steps = 200
        metrics.errors["active_energy"] = MetricUnavailable("no samples")
        outcome = await controller.refresh()
        assert outcome.missing_metrics == ["active_energy"]
        assert outcome.state == GateState.unlocked

    @pytest.mark.asyncio
    async def test_unavailable_metric_can_lock(self, controller, metrics):
        metrics.errors["steps"] = MetricUnavailable("no samples")
        outcome = await controller.refresh()
        assert outcome.state == GateState.locked
        assert outcome.error is None

    @pytest.mark.asyncio
    async def test_timeout_is_a_missing_metric(self, store, metrics, shield, clock):
        controller = GateController(store, metrics, shield, clock, fetch_timeout=0.01)
        metrics.steps = 50_000
        metrics.delay = 0.5
        outcome = await controller.refresh()
        assert outcome.missing_metrics == ["steps"]
        assert outcome.state == GateState.locked

    @pytest.mark.asyncio
    async def test_shield_failure_keeps_state(self, controller, metrics, shield):
        metrics.steps = 20_000
        await controller.refresh()

        metrics.steps = 0
        shield.error = ShieldUpdateFailed("endpoint down")
        outcome = await controller.refresh()
        assert outcome.error is not None
        assert outcome.state == GateState.unlocked
        assert controller.state.is_blocked is False

    @pytest.mark.asyncio
    async def test_malformed_state_is_reset(self, store, metrics, shield, clock):
        await store.set(BLOCKING_STATE_KEY, "garbage")
        controller = GateController(store, metrics, shield, clock)
        outcome = await controller.refresh()
        assert outcome.rolled_over is True
        assert outcome.state == GateState.locked


class TestPendingOnRefresh:
    @pytest.mark.asyncio
    async def test_due_pending_applied(self, controller, store, metrics, clock):
        scheduler = PendingChangeScheduler(store)
        await scheduler.schedule_change(
            1, GoalContainer(steps=StepGoal(target=1_000)), datetime(2026, 2, 22, tzinfo=timezone.utc), NOW
        )
        metrics.steps = 2_000
        assert (await controller.refresh()).state == GateState.locked

        clock.advance(days=7)
        outcome = await controller.refresh()
        assert outcome.pending_applied is True
        assert outcome.state == GateState.unlocked


class TestSupersession:
    @pytest.mark.asyncio
    async def test_newer_refresh_wins(self, controller, metrics, store):
        metrics.delay = 0.05
        first = asyncio.create_task(controller.refresh(reason="first"))
        await asyncio.sleep(0.01)

        second = await controller.refresh(reason="second")
        stale = await first

        assert stale.superseded is True
        assert second.superseded is False
        assert second.state == GateState.locked
        assert BlockingState.model_validate_json(store.data[BLOCKING_STATE_KEY]).is_blocked is True


class TestOverrideAndStatus:
    @pytest.mark.asyncio
    async def test_written_goals_clear_pending_and_reevaluate(self, controller, store, metrics):
        scheduler = PendingChangeScheduler(store)
        lower = GoalContainer(steps=StepGoal(target=5_000))
        await scheduler.schedule_change(1, lower, datetime(2026, 2, 22, tzinfo=timezone.utc), NOW)
        metrics.steps = 6_000
        assert (await controller.refresh()).state == GateState.locked

        async with controller.lock:
            await controller.write_goals(1, lower)
        outcome = await controller.refresh(reason="override")
        assert outcome.state == GateState.unlocked
        live = (await load_schedule(store, 1)).goal_for(1)
        assert live.pending_change is None
        assert live.steps.target == 5_000

    @pytest.mark.asyncio
    async def test_state_survives_restart(self, controller, store, metrics, shield, clock):
        metrics.steps = 1
        await controller.refresh()
        restarted = GateController(store, metrics, shield, clock)
        status = await restarted.status()
        assert status.state == GateState.locked
        assert status.last_evaluated_day == NOW.date().toordinal()

    @pytest.mark.asyncio
    async def test_status_shows_pending(self, controller, store):
        scheduler = PendingChangeScheduler(store)
        await scheduler.schedule_change(
            1, GoalContainer(steps=StepGoal(target=1)), NOW + timedelta(days=7), NOW
        )
        status = await controller.status()
        assert status.weekday == 1
        assert status.pending_change is not None
