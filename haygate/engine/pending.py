"""Deferred goal and app-selection changes, one of each per weekday.

A pending goal change lives on its weekday's GoalContainer, so applying it
(swap container, clear record) is a single schedule write. Pending selections
are kept together under PENDING_SELECTIONS_KEY and applied together with the
live selection in one write.
"""

from __future__ import annotations

import logging
from datetime import datetime, time, timedelta

from pydantic import TypeAdapter, ValidationError

from haygate.engine.models import AppSelection, GoalContainer, PendingGoalChange, PendingSelectionChange
from haygate.engine.schedule import WeeklySchedule, load_schedule, save_schedule, validate_weekday, weekday_of
from haygate.engine.store import PENDING_SELECTIONS_KEY, SELECTION_KEY, Store

logger = logging.getLogger(__name__)

_pending_selections = TypeAdapter(dict[int, PendingSelectionChange])


def next_effective_at(weekday: int, now: datetime) -> datetime:
    """Next local midnight that starts `weekday`, strictly after `now`.

    For today's weekday this is seven days out.
    """
    days_ahead = (weekday - weekday_of(now.date())) % 7 or 7
    target = now.date() + timedelta(days=days_ahead)
    return datetime.combine(target, time.min, tzinfo=now.tzinfo)


async def load_selection(store: Store) -> AppSelection:
    raw = await store.get(SELECTION_KEY)
    if raw is None:
        return AppSelection()
    try:
        return AppSelection.model_validate_json(raw)
    except ValidationError:
        logger.warning("Malformed app selection in store; treating as empty")
        return AppSelection()


class PendingChangeScheduler:
    def __init__(self, store: Store):
        self.store = store

    async def _load(self, now: datetime) -> WeeklySchedule:
        return await load_schedule(self.store, weekday_of(now.date()))

    async def _save(self, schedule: WeeklySchedule, now: datetime) -> None:
        await save_schedule(self.store, schedule, weekday_of(now.date()))

    # -- goal changes -------------------------------------------------------

    async def schedule_change(
        self,
        weekday: int,
        proposed: GoalContainer,
        effective_at: datetime,
        now: datetime,
    ) -> PendingGoalChange:
        """Record `proposed` for `weekday`, replacing any earlier pending change."""
        validate_weekday(weekday)
        schedule = await self._load(now)
        live = schedule.goal_for(weekday)
        updated = live.with_pending(proposed, effective_at)
        await self._save(schedule.with_goal(weekday, updated), now)
        logger.info("Deferred goal change for weekday %d until %s", weekday, effective_at.isoformat())
        return updated.pending_change

    async def pending_change(self, weekday: int, now: datetime) -> PendingGoalChange | None:
        schedule = await self._load(now)
        return schedule.goal_for(validate_weekday(weekday)).pending_change

    async def apply_if_due(self, weekday: int, now: datetime) -> bool:
        """Swap in the pending proposal once its instant has passed. Returns whether it did."""
        schedule = await self._load(now)
        pending = schedule.goal_for(validate_weekday(weekday)).pending_change
        if pending is None or not pending.is_due(now):
            return False

        await self._save(schedule.with_goal(weekday, pending.proposal), now)
        logger.info("Applied pending goal change for weekday %d", weekday)
        return True

    async def cancel(self, weekday: int, now: datetime) -> bool:
        schedule = await self._load(now)
        live = schedule.goal_for(validate_weekday(weekday))
        if live.pending_change is None:
            return False
        await self._save(schedule.with_goal(weekday, live.without_pending()), now)
        logger.info("Cancelled pending goal change for weekday %d", weekday)
        return True

    # -- selection changes --------------------------------------------------

    async def _load_selections(self) -> dict[int, PendingSelectionChange]:
        raw = await self.store.get(PENDING_SELECTIONS_KEY)
        if raw is None:
            return {}
        try:
            return _pending_selections.validate_json(raw)
        except ValidationError:
            logger.warning("Malformed pending selections in store; discarding them")
            return {}

    @staticmethod
    def _dump_selections(records: dict[int, PendingSelectionChange]) -> str:
        return _pending_selections.dump_json(records).decode()

    async def schedule_selection(
        self,
        weekday: int,
        proposal: AppSelection,
        effective_at: datetime,
    ) -> PendingSelectionChange:
        validate_weekday(weekday)
        records = await self._load_selections()
        record = PendingSelectionChange(weekday=weekday, proposal=proposal, effective_at=effective_at)
        records[weekday] = record
        await self.store.set(PENDING_SELECTIONS_KEY, self._dump_selections(records))
        logger.info("Deferred selection change until %s", effective_at.isoformat())
        return record

    async def pending_selection(self, weekday: int) -> PendingSelectionChange | None:
        records = await self._load_selections()
        return records.get(validate_weekday(weekday))

    async def pending_selections(self) -> list[PendingSelectionChange]:
        records = await self._load_selections()
        return sorted(records.values(), key=lambda r: r.effective_at)

    async def apply_selection_if_due(self, weekday: int, now: datetime) -> AppSelection | None:
        """Make the weekday's pending selection live if due. Returns the new selection."""
        records = await self._load_selections()
        record = records.get(validate_weekday(weekday))
        if record is None or not record.is_due(now):
            return None

        del records[weekday]
        await self.store.set_many(
            {
                SELECTION_KEY: record.proposal.model_dump_json(),
                PENDING_SELECTIONS_KEY: self._dump_selections(records),
            }
        )
        logger.info("Applied pending selection change for weekday %d", weekday)
        return record.proposal

    async def apply_due_selections(self, now: datetime) -> AppSelection | None:
        """Apply every due selection record in effective order; the latest wins."""
        applied: AppSelection | None = None
        for record in await self.pending_selections():
            if record.is_due(now):
                applied = await self.apply_selection_if_due(record.weekday, now)
        return applied

    async def cancel_selection(self, weekday: int | None = None) -> bool:
        """Drop one weekday's pending selection, or all of them when weekday is None."""
        records = await self._load_selections()
        if weekday is None:
            if not records:
                return False
            records = {}
        else:
            if records.pop(validate_weekday(weekday), None) is None:
                return False
        await self.store.set(PENDING_SELECTIONS_KEY, self._dump_selections(records))
        return True

    async def replace_selection(self, selection: AppSelection) -> None:
        """Make `selection` live and drop every pending selection in one write."""
        await self.store.set_many(
            {
                SELECTION_KEY: selection.model_dump_json(),
                PENDING_SELECTIONS_KEY: self._dump_selections({}),
            }
        )
