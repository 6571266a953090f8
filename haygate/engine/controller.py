"""GateController: the single writer for blocking state.

Every writer shares one Transitions object: its lock serialises writes and
its generation counter marks the most recently started transition.

Refresh sequence:
  1. (locked)   day rollover check, apply due pending changes, resolve today's goals
  2. (unlocked) fetch a fresh snapshot; a newer Refresh cancels this fetch
  3. (locked)   evaluate, issue the shield command, persist BlockingState

Evaluation-path errors never leave refresh(); they come back as a
RefreshOutcome with `error` set and BlockingState untouched. write_goals raises
on failure; its callers hold the lock and refresh afterwards.
"""

from __future__ import annotations

import asyncio
import logging

from pydantic import ValidationError

from haygate.engine import evaluator
from haygate.engine.errors import AuthorizationDenied, GateError, PersistenceError, ShieldError
from haygate.engine.models import (
    AppSelection,
    BlockingState,
    GateStatus,
    GoalContainer,
    GoalEvaluation,
    MetricSnapshot,
    RefreshOutcome,
)
from haygate.engine.pending import PendingChangeScheduler, load_selection
from haygate.engine.ports import Clock, MetricSource, ShieldSink
from haygate.engine.schedule import load_schedule, save_schedule, validate_weekday, weekday_of
from haygate.engine.snapshot import collect_snapshot, minutes_since_midnight
from haygate.engine.store import BLOCKING_STATE_KEY, Store

logger = logging.getLogger(__name__)


class Transitions:
    """Single-writer lock plus a generation counter.

    `begin()` starts a transition and makes every earlier one stale. A stale
    transition must not issue a shield command or write state.
    """

    def __init__(self):
        self.lock = asyncio.Lock()
        self.generation = 0

    def begin(self) -> int:
        self.generation += 1
        return self.generation

    def is_current(self, generation: int) -> bool:
        return generation == self.generation


class GateController:
    def __init__(
        self,
        store: Store,
        metrics: MetricSource,
        shield: ShieldSink,
        clock: Clock,
        scheduler: PendingChangeScheduler | None = None,
        fetch_timeout: float = 10.0,
        transitions: Transitions | None = None,
    ):
        self.store = store
        self.metrics = metrics
        self.shield = shield
        self.clock = clock
        self.scheduler = scheduler or PendingChangeScheduler(store)
        self.fetch_timeout = fetch_timeout

        self.transitions = transitions or Transitions()
        self.lock = self.transitions.lock
        self.state = BlockingState()
        self.last_snapshot: MetricSnapshot | None = None
        self.last_evaluation: GoalEvaluation | None = None

        self._state_loaded = False
        self._inflight_fetch: asyncio.Task | None = None

    # -- state persistence --------------------------------------------------

    async def _ensure_state(self) -> None:
        if self._state_loaded:
            return
        raw = await self.store.get(BLOCKING_STATE_KEY)
        if raw is not None:
            try:
                self.state = BlockingState.model_validate_json(raw)
            except ValidationError:
                logger.warning("Malformed blocking state in store; deriving it from the next evaluation")
                self.state = BlockingState()
        self._state_loaded = True

    def _outcome(self, **fields) -> RefreshOutcome:
        return RefreshOutcome(state=self.state.gate, **fields)

    # -- refresh ------------------------------------------------------------

    async def refresh(self, reason: str = "manual") -> RefreshOutcome:
        """Evaluate today's goals and bring the shield in line. Never raises GateError."""
        generation = self.transitions.begin()
        if self._inflight_fetch is not None and not self._inflight_fetch.done():
            self._inflight_fetch.cancel()

        async with self.lock:
            if not self.transitions.is_current(generation):
                return self._outcome(superseded=True)

            now = self.clock.now()
            today = now.date().toordinal()
            weekday = weekday_of(now.date())
            try:
                await self._ensure_state()
                rolled_over = self.state.last_evaluated_day != today
                if rolled_over:
                    # Yesterday's values must never satisfy today's goals
                    self.last_snapshot = MetricSnapshot.zero(minutes_since_midnight(now))
                    self.last_evaluation = None
                    logger.info("Day rollover to %s (weekday %d)", now.date().isoformat(), weekday)

                pending_applied = await self.scheduler.apply_if_due(weekday, now)
                await self.scheduler.apply_due_selections(now)
                container = (await load_schedule(self.store, weekday)).goal_for(weekday)
                selection = await load_selection(self.store)
            except GateError as exc:
                logger.error("Refresh (%s) could not load goals: %s", reason, exc)
                return self._outcome(weekday=weekday, error=str(exc))

        if not self.transitions.is_current(generation):
            return self._outcome(weekday=weekday, superseded=True)

        fetch = asyncio.create_task(
            collect_snapshot(self.metrics, container, now, self.fetch_timeout)
        )
        self._inflight_fetch = fetch
        try:
            snapshot = await fetch
        except asyncio.CancelledError:
            if not self.transitions.is_current(generation):
                logger.debug("Refresh (%s) superseded during fetch", reason)
                return self._outcome(weekday=weekday, superseded=True)
            if not fetch.done():
                fetch.cancel()
            raise
        except AuthorizationDenied as exc:
            logger.warning("Refresh (%s) aborted, health data not authorized: %s", reason, exc)
            return self._outcome(weekday=weekday, rolled_over=rolled_over, error=str(exc))
        except GateError as exc:
            logger.warning("Refresh (%s) fetch failed: %s", reason, exc)
            return self._outcome(weekday=weekday, rolled_over=rolled_over, error=str(exc))

        async with self.lock:
            if not self.transitions.is_current(generation):
                return self._outcome(weekday=weekday, superseded=True)
            return await self._commit(
                container, selection, snapshot, today, weekday, rolled_over, pending_applied, reason
            )

    async def _commit(
        self,
        container: GoalContainer,
        selection: AppSelection,
        snapshot: MetricSnapshot,
        today: int,
        weekday: int,
        rolled_over: bool,
        pending_applied: bool,
        reason: str,
    ) -> RefreshOutcome:
        evaluation = evaluator.evaluate(container, snapshot)
        missing = sorted(snapshot.missing)

        try:
            if evaluation.should_block:
                await self.shield.apply(selection)
            else:
                await self.shield.remove()
        except ShieldError as exc:
            logger.error("Shield update failed, blocking state unchanged: %s", exc)
            return self._outcome(
                weekday=weekday,
                evaluation=evaluation,
                rolled_over=rolled_over,
                pending_applied=pending_applied,
                error=str(exc),
                missing_metrics=missing,
            )

        was_blocked = self.state.is_blocked
        self.state = BlockingState(is_blocked=evaluation.should_block, last_evaluated_day=today)
        self.last_snapshot = snapshot
        self.last_evaluation = evaluation
        if was_blocked != self.state.is_blocked:
            logger.info("Gate %s (%s)", self.state.gate.value, reason)

        error = None
        try:
            await self.store.set(BLOCKING_STATE_KEY, self.state.model_dump_json())
        except PersistenceError as exc:
            logger.error("Could not persist blocking state: %s", exc)
            error = str(exc)

        return self._outcome(
            weekday=weekday,
            evaluation=evaluation,
            rolled_over=rolled_over,
            pending_applied=pending_applied,
            error=error,
            missing_metrics=missing,
        )

    # -- writes -------------------------------------------------------------

    async def write_goals(self, weekday: int, container: GoalContainer) -> None:
        """Replace a weekday's goals and drop its pending change, in one write. Caller holds the lock."""
        validate_weekday(weekday)
        today_weekday = weekday_of(self.clock.now().date())
        schedule = await load_schedule(self.store, today_weekday)
        await save_schedule(self.store, schedule.with_goal(weekday, container.without_pending()), today_weekday)

    # -- status -------------------------------------------------------------

    def is_goal_met(self) -> bool:
        return self.last_evaluation is not None and self.last_evaluation.all_met

    async def status(self) -> GateStatus:
        async with self.lock:
            now = self.clock.now()
            weekday = weekday_of(now.date())
            await self._ensure_state()
            schedule = await load_schedule(self.store, weekday)
            return GateStatus(
                state=self.state.gate,
                weekday=weekday,
                last_evaluated_day=self.state.last_evaluated_day,
                evaluation=self.last_evaluation,
                snapshot=self.last_snapshot,
                pending_change=schedule.goal_for(weekday).pending_change,
                pending_selections=await self.scheduler.pending_selections(),
            )
