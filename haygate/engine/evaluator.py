"""Pure stateless goal evaluation: math only, never raises."""

from __future__ import annotations

from haygate.engine.models import (
    EnergyGoal,
    ExerciseGoal,
    GoalContainer,
    GoalEvaluation,
    GoalKind,
    GoalResult,
    MetricSnapshot,
    StepGoal,
    TimeUnlockGoal,
)


def _current_and_target(goal, snapshot: MetricSnapshot) -> tuple[float, float]:
    if isinstance(goal, StepGoal):
        return float(snapshot.steps), float(goal.target)
    if isinstance(goal, EnergyGoal):
        return float(snapshot.active_energy), float(goal.target)
    if isinstance(goal, ExerciseGoal):
        return float(snapshot.exercise_minutes.get(goal.id, 0)), float(goal.target_minutes)
    if isinstance(goal, TimeUnlockGoal):
        return float(snapshot.minutes_since_midnight), float(goal.unlock_minutes)
    raise TypeError(f"Unknown goal type: {type(goal).__name__}")


def goal_met(goal, snapshot: MetricSnapshot) -> bool:
    """Whether a single goal is satisfied by the snapshot.

    A time-unlock of 0 minutes is treated as always met.
    """
    if isinstance(goal, TimeUnlockGoal) and goal.unlock_minutes == 0:
        return True
    current, target = _current_and_target(goal, snapshot)
    return current >= target


def progress(goal, snapshot: MetricSnapshot) -> float:
    """Fraction (0–1) of the goal reached, capped at 1. A zero target is complete."""
    current, target = _current_and_target(goal, snapshot)
    if target <= 0:
        return 1.0
    return min(max(current / target, 0.0), 1.0)


def has_enabled_goals(container: GoalContainer) -> bool:
    return any(g.enabled for g in container.goals())


def all_met(container: GoalContainer, snapshot: MetricSnapshot) -> bool:
    """Every enabled goal met. Vacuously true for an empty goal set."""
    return all(goal_met(g, snapshot) for g in container.enabled_goals())


def should_block(container: GoalContainer, snapshot: MetricSnapshot) -> bool:
    if not has_enabled_goals(container):
        return False
    return not all_met(container, snapshot)


def should_defer_edits(container: GoalContainer, snapshot: MetricSnapshot) -> bool:
    """Whether a weakening edit for today must be deferred.

    Kept separate from should_block; the two must agree.
    """
    enabled = container.enabled_goals()
    if not enabled:
        return False
    for goal in enabled:
        if not goal_met(goal, snapshot):
            return True
    return False


def evaluate(container: GoalContainer, snapshot: MetricSnapshot) -> GoalEvaluation:
    results: list[GoalResult] = []
    for goal in container.enabled_goals():
        current, target = _current_and_target(goal, snapshot)
        results.append(
            GoalResult(
                kind=GoalKind(goal.kind),
                goal_id=goal.id if isinstance(goal, ExerciseGoal) else None,
                current=current,
                target=target,
                met=goal_met(goal, snapshot),
                progress=progress(goal, snapshot),
            )
        )

    return GoalEvaluation(
        results=results,
        has_enabled_goals=has_enabled_goals(container),
        all_met=all_met(container, snapshot),
        should_block=should_block(container, snapshot),
        should_defer_edits=should_defer_edits(container, snapshot),
    )


# ---------------------------------------------------------------------------
# Display helpers
# ---------------------------------------------------------------------------


def enabled_goal_count(container: GoalContainer) -> int:
    return len(container.enabled_goals())


def goal_summary(container: GoalContainer) -> str:
    """Human-readable list of enabled goals, e.g. "Steps · Active Energy · 2 Exercise"."""
    parts: list[str] = []
    if container.steps is not None and container.steps.enabled:
        parts.append("Steps")
    if container.energy is not None and container.energy.enabled:
        parts.append("Active Energy")

    exercise = [g for g in container.exercise if g.enabled]
    if len(exercise) == 1:
        parts.append(exercise[0].activity.display_name)
    elif len(exercise) > 1:
        parts.append(f"{len(exercise)} Exercise")

    if container.time_unlock is not None and container.time_unlock.enabled:
        parts.append("Time")

    return " · ".join(parts) if parts else "No goals set"
