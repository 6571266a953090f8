"""Goal, schedule and gate-state contract: Pydantic v2 models."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import AwareDatetime, BaseModel, Field, field_validator, model_validator

from haygate.engine.errors import GoalNotFound


class GoalKind(str, Enum):
    steps = "steps"
    energy = "energy"
    exercise = "exercise"
    time_unlock = "time_unlock"


class ActivityFilter(str, Enum):
    any = "any"
    walking = "walking"
    running = "running"
    cycling = "cycling"
    hiit = "hiit"
    strength_training = "strength_training"

    @property
    def display_name(self) -> str:
        return _ACTIVITY_NAMES[self]


_ACTIVITY_NAMES = {
    ActivityFilter.any: "Any",
    ActivityFilter.walking: "Walking",
    ActivityFilter.running: "Running",
    ActivityFilter.cycling: "Cycling",
    ActivityFilter.hiit: "HIIT",
    ActivityFilter.strength_training: "Strength",
}


class BlockingStrategy(str, Enum):
    all = "all"
    any = "any"  # decode-only; normalised to `all` on load


class GateState(str, Enum):
    unlocked = "unlocked"
    locked = "locked"


# ---------------------------------------------------------------------------
# Goals
# ---------------------------------------------------------------------------


class StepGoal(BaseModel):
    kind: Literal["steps"] = "steps"
    target: int = Field(default=10_000, ge=0)
    enabled: bool = True

    model_config = {"frozen": True}


class EnergyGoal(BaseModel):
    kind: Literal["energy"] = "energy"
    target: int = Field(default=500, ge=0)  # kcal
    enabled: bool = False

    model_config = {"frozen": True}


class ExerciseGoal(BaseModel):
    kind: Literal["exercise"] = "exercise"
    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    target_minutes: int = Field(default=30, ge=0)
    activity: ActivityFilter = ActivityFilter.any
    enabled: bool = True

    model_config = {"frozen": True}


class TimeUnlockGoal(BaseModel):
    kind: Literal["time_unlock"] = "time_unlock"
    unlock_minutes: int = Field(default=0, ge=0, le=1439)  # minutes since local midnight
    enabled: bool = False

    model_config = {"frozen": True}


GoalSpec = Annotated[
    Union[StepGoal, EnergyGoal, ExerciseGoal, TimeUnlockGoal],
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Day container + pending variant
# ---------------------------------------------------------------------------


class NoPending(BaseModel):
    state: Literal["none"] = "none"

    model_config = {"frozen": True}


class PendingGoalChange(BaseModel):
    state: Literal["pending"] = "pending"
    proposal: GoalContainer
    effective_at: AwareDatetime

    model_config = {"frozen": True}

    @field_validator("proposal")
    @classmethod
    def _proposal_has_no_pending(cls, value: GoalContainer) -> GoalContainer:
        return value.without_pending()

    def is_due(self, now: datetime) -> bool:
        return now >= self.effective_at


PendingState = Annotated[Union[NoPending, PendingGoalChange], Field(discriminator="state")]


class GoalContainer(BaseModel):
    """Every goal active for one weekday."""

    steps: StepGoal | None = Field(default_factory=StepGoal)
    energy: EnergyGoal | None = Field(default_factory=EnergyGoal)
    exercise: tuple[ExerciseGoal, ...] = ()
    time_unlock: TimeUnlockGoal | None = Field(default_factory=TimeUnlockGoal)
    strategy: BlockingStrategy = BlockingStrategy.all
    pending: PendingState = Field(default_factory=NoPending)

    model_config = {"frozen": True}

    @field_validator("strategy")
    @classmethod
    def _normalise_strategy(cls, value: BlockingStrategy) -> BlockingStrategy:
        return BlockingStrategy.all

    @model_validator(mode="after")
    def _unique_exercise_ids(self) -> GoalContainer:
        ids = [g.id for g in self.exercise]
        if len(ids) != len(set(ids)):
            raise ValueError("exercise goal ids must be unique")
        return self

    # -- accessors ----------------------------------------------------------

    def goals(self) -> list[StepGoal | EnergyGoal | ExerciseGoal | TimeUnlockGoal]:
        """Present goals in display order: steps, energy, exercise…, time."""
        found: list = []
        if self.steps is not None:
            found.append(self.steps)
        if self.energy is not None:
            found.append(self.energy)
        found.extend(self.exercise)
        if self.time_unlock is not None:
            found.append(self.time_unlock)
        return found

    def enabled_goals(self) -> list[StepGoal | EnergyGoal | ExerciseGoal | TimeUnlockGoal]:
        return [g for g in self.goals() if g.enabled]

    def find_exercise(self, goal_id: uuid.UUID) -> ExerciseGoal | None:
        for goal in self.exercise:
            if goal.id == goal_id:
                return goal
        return None

    @property
    def pending_change(self) -> PendingGoalChange | None:
        if isinstance(self.pending, PendingGoalChange):
            return self.pending
        return None

    def same_goals(self, other: GoalContainer) -> bool:
        """Equality that ignores pending state."""
        return self.without_pending() == other.without_pending()

    # -- copies -------------------------------------------------------------

    def without_pending(self) -> GoalContainer:
        if isinstance(self.pending, NoPending):
            return self
        return self.model_copy(update={"pending": NoPending()})

    def with_pending(self, proposal: GoalContainer, effective_at: datetime) -> GoalContainer:
        change = PendingGoalChange(proposal=proposal, effective_at=effective_at)
        return self.model_copy(update={"pending": change})

    def with_goal(self, goal: StepGoal | EnergyGoal | ExerciseGoal | TimeUnlockGoal) -> GoalContainer:
        """Insert or replace a goal. Exercise goals are matched by id."""
        if isinstance(goal, ExerciseGoal):
            replaced = False
            exercise: list[ExerciseGoal] = []
            for existing in self.exercise:
                if existing.id == goal.id:
                    exercise.append(goal)
                    replaced = True
                else:
                    exercise.append(existing)
            if not replaced:
                exercise.append(goal)
            return self.model_copy(update={"exercise": tuple(exercise)})
        return self.model_copy(update={goal.kind: goal})

    def without_goal(self, kind: GoalKind, goal_id: uuid.UUID | None = None) -> GoalContainer:
        if kind == GoalKind.exercise:
            if goal_id is None or self.find_exercise(goal_id) is None:
                raise GoalNotFound(f"No exercise goal with id {goal_id}")
            remaining = tuple(g for g in self.exercise if g.id != goal_id)
            return self.model_copy(update={"exercise": remaining})
        if getattr(self, kind.value) is None:
            raise GoalNotFound(f"No {kind.value} goal to remove")
        return self.model_copy(update={kind.value: None})


PendingGoalChange.model_rebuild()
GoalContainer.model_rebuild()


# ---------------------------------------------------------------------------
# App selection
# ---------------------------------------------------------------------------


class AppSelection(BaseModel):
    """Opaque application / category tokens handed to the shield layer."""

    applications: frozenset[str] = frozenset()
    categories: frozenset[str] = frozenset()

    model_config = {"frozen": True}

    @property
    def is_empty(self) -> bool:
        return not self.applications and not self.categories


class PendingSelectionChange(BaseModel):
    weekday: int = Field(ge=1, le=7)
    proposal: AppSelection
    effective_at: AwareDatetime

    model_config = {"frozen": True}

    def is_due(self, now: datetime) -> bool:
        return now >= self.effective_at


# ---------------------------------------------------------------------------
# Metrics, evaluation, state
# ---------------------------------------------------------------------------


class MetricSnapshot(BaseModel):
    """Raw values for one evaluation. Never reused across evaluations."""

    steps: int = 0
    active_energy: float = 0.0
    exercise_minutes: dict[uuid.UUID, int] = Field(default_factory=dict)
    minutes_since_midnight: int = Field(default=0, ge=0, le=1439)
    missing: frozenset[str] = frozenset()  # metrics that failed and were zero-filled

    model_config = {"frozen": True}

    @classmethod
    def zero(cls, minutes_since_midnight: int = 0) -> MetricSnapshot:
        return cls(minutes_since_midnight=minutes_since_midnight)


class GoalResult(BaseModel):
    kind: GoalKind
    goal_id: uuid.UUID | None = None
    current: float
    target: float
    met: bool
    progress: float  # 0–1


class GoalEvaluation(BaseModel):
    results: list[GoalResult] = Field(default_factory=list)
    has_enabled_goals: bool = False
    all_met: bool = True
    should_block: bool = False
    should_defer_edits: bool = False


class BlockingState(BaseModel):
    is_blocked: bool | None = None  # None until the first evaluation
    last_evaluated_day: int | None = None  # date.toordinal() of the local day

    @property
    def gate(self) -> GateState | None:
        if self.is_blocked is None:
            return None
        return GateState.locked if self.is_blocked else GateState.unlocked


# ---------------------------------------------------------------------------
# Command / outcome payloads
# ---------------------------------------------------------------------------


class ChangeIntent(str, Enum):
    stricter = "stricter"
    looser = "looser"
    neutral = "neutral"


class RefreshOutcome(BaseModel):
    state: GateState | None = None
    evaluation: GoalEvaluation | None = None
    weekday: int | None = None
    rolled_over: bool = False
    pending_applied: bool = False
    superseded: bool = False
    error: str | None = None
    missing_metrics: list[str] = Field(default_factory=list)


class ChangeResult(BaseModel):
    weekday: int
    intent: ChangeIntent
    applied: bool
    deferred: bool = False
    effective_at: datetime | None = None
    emergency: bool = False
    refresh: RefreshOutcome | None = None  # set when the change was applied to today


class GateStatus(BaseModel):
    state: GateState | None = None
    weekday: int
    last_evaluated_day: int | None = None
    evaluation: GoalEvaluation | None = None
    snapshot: MetricSnapshot | None = None
    pending_change: PendingGoalChange | None = None
    pending_selections: list[PendingSelectionChange] = Field(default_factory=list)


class ReconcileOutcome(BaseModel):
    status: Literal["skipped", "applied", "failed", "superseded"]
    weekday: int
    reason: str = "wake"
    should_block: bool | None = None
    pending_applied: bool = False
    error: str | None = None
