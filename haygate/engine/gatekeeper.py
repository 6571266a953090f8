"""ChangeGatekeeper: decides whether a goal or selection edit applies now or waits.

Weakening edits to today's goals are only applied immediately when a freshly
fetched snapshot says edits need not be deferred. Otherwise they become a
pending change effective at the next occurrence of the weekday, unless the
user confirms an emergency code.
"""

from __future__ import annotations

import hmac
import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from haygate.engine import evaluator
from haygate.engine.controller import GateController
from haygate.engine.errors import EmergencyCodeRejected, GoalNotFound, InvalidGoalEdit, MetricError
from haygate.engine.models import (
    AppSelection,
    ChangeIntent,
    ChangeResult,
    ExerciseGoal,
    GoalContainer,
    GoalKind,
    PendingSelectionChange,
)
from haygate.engine.pending import load_selection, next_effective_at
from haygate.engine.ports import Clock
from haygate.engine.schedule import load_schedule, validate_weekday, weekday_of
from haygate.engine.snapshot import collect_snapshot

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def _compare(original_enabled: bool, proposed_enabled: bool, original: float, proposed: float) -> tuple[bool, bool]:
    """(looser, stricter) for one singleton goal."""
    if original_enabled and proposed_enabled:
        return proposed < original, proposed > original
    if original_enabled:
        return True, False
    if proposed_enabled:
        return False, True
    return False, False


def _singleton(goal, value_field: str) -> tuple[bool, float]:
    if goal is None:
        return False, 0
    return goal.enabled, getattr(goal, value_field)


def classify_goal_change(original: GoalContainer, proposed: GoalContainer) -> ChangeIntent:
    """Any looser component makes the whole change looser."""
    looser = False
    stricter = False

    for kind, value_field in (("steps", "target"), ("energy", "target"), ("time_unlock", "unlock_minutes")):
        was_on, was = _singleton(getattr(original, kind), value_field)
        now_on, now = _singleton(getattr(proposed, kind), value_field)
        eased, tightened = _compare(was_on, now_on, was, now)
        looser |= eased
        stricter |= tightened

    for goal in proposed.exercise:
        if not goal.enabled:
            continue
        before = original.find_exercise(goal.id)
        if before is None or not before.enabled:
            stricter = True
        elif goal.target_minutes < before.target_minutes:
            looser = True
        elif goal.target_minutes > before.target_minutes:
            stricter = True

    for goal in original.exercise:
        if not goal.enabled:
            continue
        after = proposed.find_exercise(goal.id)
        if after is None or not after.enabled:
            looser = True

    if looser:
        return ChangeIntent.looser
    if stricter:
        return ChangeIntent.stricter
    return ChangeIntent.neutral


def classify_selection_change(original: AppSelection, proposed: AppSelection) -> ChangeIntent:
    if original.applications - proposed.applications or original.categories - proposed.categories:
        return ChangeIntent.looser
    if proposed.applications - original.applications or proposed.categories - original.categories:
        return ChangeIntent.stricter
    return ChangeIntent.neutral


# ---------------------------------------------------------------------------
# Emergency codes
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class EmergencyCode:
    code: str
    expires_at: datetime


class EmergencyCodeIssuer:
    """One outstanding code at a time. A code is consumed by any verify attempt."""

    def __init__(self, clock: Clock, length: int = 4, ttl_seconds: int = 300):
        if length < 1:
            raise ValueError("emergency code length must be positive")
        self.clock = clock
        self.length = length
        self.ttl = timedelta(seconds=ttl_seconds)
        self._current: EmergencyCode | None = None

    def issue(self) -> EmergencyCode:
        code = str(secrets.randbelow(10**self.length)).zfill(self.length)
        self._current = EmergencyCode(code=code, expires_at=self.clock.now() + self.ttl)
        return self._current

    def verify(self, code: str) -> None:
        """Raise EmergencyCodeRejected unless `code` matches the live code."""
        current, self._current = self._current, None
        if current is None:
            raise EmergencyCodeRejected("No emergency code has been issued")
        if self.clock.now() >= current.expires_at:
            raise EmergencyCodeRejected("Emergency code expired")
        if not hmac.compare_digest(current.code.encode(), code.strip().encode()):
            raise EmergencyCodeRejected("Emergency code does not match")


# ---------------------------------------------------------------------------
# Gatekeeper
# ---------------------------------------------------------------------------


class ChangeGatekeeper:
    """Goal and selection commands.

    Read, classify and write happen under the writer lock. The fresh fetch a
    weakening edit needs runs outside it; afterwards the edit is planned again
    from the live value and, if that value moved in the meantime, re-checked.
    """

    def __init__(self, controller: GateController, codes: EmergencyCodeIssuer):
        self.controller = controller
        self.codes = codes

    @property
    def clock(self) -> Clock:
        return self.controller.clock

    async def _live(self, weekday: int) -> GoalContainer:
        now = self.clock.now()
        schedule = await load_schedule(self.controller.store, weekday_of(now.date()))
        return schedule.goal_for(weekday)

    async def should_defer_edits(self, container: GoalContainer | None = None) -> bool:
        """Fresh-fetch check for today's goals (or `container`); a failed fetch defers."""
        now = self.clock.now()
        if container is None:
            container = await self._live(weekday_of(now.date()))
        if not evaluator.has_enabled_goals(container):
            return False
        try:
            snapshot = await collect_snapshot(
                self.controller.metrics, container, now, self.controller.fetch_timeout, strict=True
            )
        except MetricError as exc:
            logger.warning("Fresh fetch for edit check failed, deferring: %s", exc)
            return True
        return evaluator.should_defer_edits(container, snapshot)

    # -- goal edits ---------------------------------------------------------

    async def _change_goals(
        self, weekday: int, build: Callable[[GoalContainer], GoalContainer]
    ) -> ChangeResult:
        """Apply or defer `build(live)` for `weekday`."""
        validate_weekday(weekday)
        checked: GoalContainer | None = None
        defer = False
        while True:
            async with self.controller.lock:
                now = self.clock.now()
                today = weekday_of(now.date())
                live = await self._live(weekday)
                proposed = build(live)
                intent = classify_goal_change(live, proposed)
                needs_check = weekday == today and intent == ChangeIntent.looser
                if not needs_check or live == checked:
                    if needs_check and defer:
                        return await self._defer_goal(weekday, proposed, intent, now)
                    await self.controller.write_goals(weekday, proposed)
                    break
            checked = live
            defer = await self.should_defer_edits(live)

        logger.info("Applied %s goal change for weekday %d", intent.value, weekday)
        outcome = None
        if weekday == today:
            outcome = await self.controller.refresh(reason="goal-change")
        return ChangeResult(weekday=weekday, intent=intent, applied=True, refresh=outcome)

    async def _defer_goal(
        self, weekday: int, proposed: GoalContainer, intent: ChangeIntent, now: datetime
    ) -> ChangeResult:
        """Caller holds the writer lock."""
        effective_at = next_effective_at(weekday, now)
        await self.controller.scheduler.schedule_change(weekday, proposed, effective_at, now)
        return ChangeResult(
            weekday=weekday, intent=intent, applied=False, deferred=True, effective_at=effective_at
        )

    async def submit_goal_change(self, weekday: int, proposed: GoalContainer) -> ChangeResult:
        return await self._change_goals(weekday, lambda live: proposed)

    async def add_goal(self, weekday: int, goal) -> ChangeResult:
        def build(live: GoalContainer) -> GoalContainer:
            if isinstance(goal, ExerciseGoal):
                if live.find_exercise(goal.id) is not None:
                    raise InvalidGoalEdit(f"Exercise goal {goal.id} already exists")
            else:
                existing = getattr(live, goal.kind)
                if existing is not None and existing.enabled:
                    raise InvalidGoalEdit(f"A {goal.kind} goal is already set for weekday {weekday}")
            return live.with_goal(goal)

        return await self._change_goals(weekday, build)

    async def update_goal(self, weekday: int, goal) -> ChangeResult:
        def build(live: GoalContainer) -> GoalContainer:
            if isinstance(goal, ExerciseGoal):
                if live.find_exercise(goal.id) is None:
                    raise GoalNotFound(f"No exercise goal with id {goal.id}")
            elif getattr(live, goal.kind) is None:
                raise GoalNotFound(f"No {goal.kind} goal for weekday {weekday}")
            return live.with_goal(goal)

        return await self._change_goals(weekday, build)

    async def remove_goal(self, weekday: int, kind: GoalKind, goal_id: uuid.UUID | None = None) -> ChangeResult:
        """Exercise goals are dropped; singleton goals are disabled and keep their target."""

        def build(live: GoalContainer) -> GoalContainer:
            if kind == GoalKind.exercise:
                return live.without_goal(kind, goal_id)
            existing = getattr(live, kind.value)
            if existing is None:
                raise GoalNotFound(f"No {kind.value} goal for weekday {weekday}")
            return live.with_goal(existing.model_copy(update={"enabled": False}))

        return await self._change_goals(weekday, build)

    async def schedule_pending_goal(self, weekday: int, proposed: GoalContainer) -> ChangeResult:
        """Defer `proposed` to the weekday's next occurrence without any check."""
        validate_weekday(weekday)
        async with self.controller.lock:
            now = self.clock.now()
            intent = classify_goal_change(await self._live(weekday), proposed)
            return await self._defer_goal(weekday, proposed, intent, now)

    async def apply_emergency_change(
        self, weekday: int, code: str, proposed: GoalContainer | None = None
    ) -> ChangeResult:
        """Apply `proposed` (or the weekday's pending proposal) now, behind the emergency code."""
        validate_weekday(weekday)
        async with self.controller.lock:
            live = await self._live(weekday)
            if proposed is None:
                pending = live.pending_change
                if pending is None:
                    raise GoalNotFound(f"No pending goal change for weekday {weekday}")
                proposed = pending.proposal
            self.codes.verify(code)
            intent = classify_goal_change(live, proposed)
            await self.controller.write_goals(weekday, proposed)

        logger.info("Emergency goal change applied to weekday %d", weekday)
        outcome = await self.controller.refresh(reason="override")
        return ChangeResult(weekday=weekday, intent=intent, applied=True, emergency=True, refresh=outcome)

    async def cancel_pending_goal(self, weekday: int) -> bool:
        validate_weekday(weekday)
        async with self.controller.lock:
            return await self.controller.scheduler.cancel(weekday, self.clock.now())

    # -- selection edits ----------------------------------------------------

    async def update_selection(self, selection: AppSelection) -> ChangeResult:
        checked: AppSelection | None = None
        defer = False
        while True:
            async with self.controller.lock:
                now = self.clock.now()
                today = weekday_of(now.date())
                current = await load_selection(self.controller.store)
                intent = classify_selection_change(current, selection)
                if selection == current:
                    return ChangeResult(weekday=today, intent=intent, applied=False)
                if intent != ChangeIntent.looser or current == checked:
                    if intent == ChangeIntent.looser and defer:
                        tomorrow = today % 7 + 1
                        effective_at = next_effective_at(tomorrow, now)
                        await self.controller.scheduler.schedule_selection(tomorrow, selection, effective_at)
                        return ChangeResult(
                            weekday=tomorrow, intent=intent, applied=False, deferred=True, effective_at=effective_at
                        )
                    await self.controller.scheduler.replace_selection(selection)
                    break
            checked = current
            defer = await self.should_defer_edits()

        outcome = await self.controller.refresh(reason="selection-change")
        return ChangeResult(weekday=today, intent=intent, applied=True, refresh=outcome)

    async def apply_emergency_selection(self, code: str, selection: AppSelection | None = None) -> ChangeResult:
        """Make `selection` (or the latest pending selection) live now, behind the emergency code."""
        async with self.controller.lock:
            today = weekday_of(self.clock.now().date())
            if selection is None:
                pending: list[PendingSelectionChange] = await self.controller.scheduler.pending_selections()
                if not pending:
                    raise GoalNotFound("No pending selection change")
                selection = pending[-1].proposal
            self.codes.verify(code)
            current = await load_selection(self.controller.store)
            intent = classify_selection_change(current, selection)
            await self.controller.scheduler.replace_selection(selection)

        logger.info(
            "Emergency selection change applied (%d apps, %d categories)",
            len(selection.applications),
            len(selection.categories),
        )
        outcome = await self.controller.refresh(reason="override")
        return ChangeResult(weekday=today, intent=intent, applied=True, emergency=True, refresh=outcome)

    async def cancel_pending_selection(self, weekday: int | None = None) -> bool:
        async with self.controller.lock:
            return await self.controller.scheduler.cancel_selection(weekday)

    def issue_emergency_code(self) -> EmergencyCode:
        code = self.codes.issue()
        logger.info("Issued emergency code valid until %s", code.expires_at.isoformat())
        return code
