"""Weekly goal schedule: one GoalContainer per weekday.

Weekdays use the 1–7 numbering 1 = Sunday, 2 = Monday … 7 = Saturday.

Storage: JSON under WEEKLY_SCHEDULE_KEY. On first load with no schedule the
legacy single-day record (LEGACY_GOAL_KEY, or the older integer
LEGACY_STEP_KEY) is replicated to all seven days. Every save also rewrites the
legacy record with today's container so older readers stay in sync.
"""

from __future__ import annotations

import logging
from datetime import date

from pydantic import BaseModel, Field, ValidationError, field_validator

from haygate.engine import evaluator
from haygate.engine.errors import InvalidGoalEdit
from haygate.engine.models import GoalContainer, StepGoal
from haygate.engine.store import LEGACY_GOAL_KEY, LEGACY_STEP_KEY, WEEKLY_SCHEDULE_KEY, Store

logger = logging.getLogger(__name__)

WEEKDAYS = range(1, 8)

_FULL_NAMES = ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")
_SHORT_NAMES = ("Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat")


def weekday_of(day: date) -> int:
    """Map a date to 1 (Sunday) … 7 (Saturday)."""
    return day.isoweekday() % 7 + 1


def ordered_weekdays(first_weekday: int = 1) -> list[int]:
    """The seven weekdays starting at `first_weekday` (1 for US, 2 for most of Europe)."""
    return [(first_weekday - 1 + i) % 7 + 1 for i in range(7)]


def full_name(weekday: int) -> str:
    return _FULL_NAMES[weekday - 1]


def short_name(weekday: int) -> str:
    return _SHORT_NAMES[weekday - 1]


def validate_weekday(weekday: int) -> int:
    if weekday not in WEEKDAYS:
        raise InvalidGoalEdit(f"weekday must be 1–7, got {weekday}")
    return weekday


class WeeklySchedule(BaseModel):
    days: dict[int, GoalContainer] = Field(default_factory=dict, validate_default=True)

    model_config = {"frozen": True}

    @field_validator("days")
    @classmethod
    def _fill_all_days(cls, value: dict[int, GoalContainer]) -> dict[int, GoalContainer]:
        for weekday in value:
            validate_weekday(weekday)
        return {weekday: value[weekday] if weekday in value else GoalContainer() for weekday in WEEKDAYS}

    @classmethod
    def repeating(cls, container: GoalContainer) -> WeeklySchedule:
        """Same container on every day. Pending state belongs to the old record and is dropped."""
        clean = container.without_pending()
        return cls(days={weekday: clean for weekday in WEEKDAYS})

    def goal_for(self, weekday: int) -> GoalContainer:
        return self.days[weekday] if weekday in self.days else GoalContainer()

    def today(self, day: date) -> GoalContainer:
        return self.goal_for(weekday_of(day))

    def with_goal(self, weekday: int, container: GoalContainer) -> WeeklySchedule:
        validate_weekday(weekday)
        days = dict(self.days)
        days[weekday] = container
        return WeeklySchedule(days=days)


class DaySummary(BaseModel):
    weekday: int
    name: str
    short_name: str
    goal_summary: str
    goal_count: int
    is_today: bool
    has_pending: bool


def day_summaries(schedule: WeeklySchedule, today_weekday: int, first_weekday: int = 1) -> list[DaySummary]:
    summaries: list[DaySummary] = []
    for weekday in ordered_weekdays(first_weekday):
        container = schedule.goal_for(weekday)
        summaries.append(
            DaySummary(
                weekday=weekday,
                name=full_name(weekday),
                short_name=short_name(weekday),
                goal_summary=evaluator.goal_summary(container),
                goal_count=evaluator.enabled_goal_count(container),
                is_today=weekday == today_weekday,
                has_pending=container.pending_change is not None,
            )
        )
    return summaries


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


async def load_legacy_goal(store: Store) -> GoalContainer:
    """Read the single-day record, falling back to the integer step goal, then defaults."""
    raw = await store.get(LEGACY_GOAL_KEY)
    if raw is not None:
        try:
            return GoalContainer.model_validate_json(raw)
        except ValidationError:
            logger.warning("Malformed legacy goal record; ignoring it")

    raw_steps = await store.get(LEGACY_STEP_KEY)
    if raw_steps is not None:
        try:
            target = int(raw_steps)
        except ValueError:
            target = 0
        if target > 0:
            return GoalContainer(steps=StepGoal(target=target))

    return GoalContainer()


async def load_schedule(store: Store, today_weekday: int) -> WeeklySchedule:
    raw = await store.get(WEEKLY_SCHEDULE_KEY)
    if raw is not None:
        try:
            return WeeklySchedule.model_validate_json(raw)
        except ValidationError:
            logger.warning("Malformed weekly schedule in store; rebuilding from legacy record")

    legacy = await load_legacy_goal(store)
    migrated = WeeklySchedule.repeating(legacy)
    await save_schedule(store, migrated, today_weekday)
    logger.info("Migrated single-day goal to weekly schedule")
    return migrated


async def save_schedule(store: Store, schedule: WeeklySchedule, today_weekday: int) -> None:
    await store.set_many(
        {
            WEEKLY_SCHEDULE_KEY: schedule.model_dump_json(),
            LEGACY_GOAL_KEY: schedule.goal_for(today_weekday).model_dump_json(),
        }
    )
