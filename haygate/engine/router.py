"""Gate HTTP router: status, refresh, goal and selection commands."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from haygate.auth import verify_api_key
from haygate.engine.container import Engine, get_engine
from haygate.engine.errors import (
    EmergencyCodeRejected,
    GateError,
    GoalNotFound,
    InvalidGoalEdit,
    PersistenceError,
)
from haygate.engine.models import (
    AppSelection,
    ChangeResult,
    GateStatus,
    GoalContainer,
    GoalKind,
    GoalSpec,
    ReconcileOutcome,
    RefreshOutcome,
)
from haygate.engine.pending import load_selection
from haygate.engine.schedule import day_summaries, load_schedule, validate_weekday, weekday_of

router = APIRouter(prefix="/gate", tags=["gate"])


class GoalRequest(BaseModel):
    goal: GoalSpec


class EmergencyGoalRequest(BaseModel):
    code: str
    proposal: GoalContainer | None = None  # None applies the weekday's pending change


class EmergencySelectionRequest(BaseModel):
    code: str
    selection: AppSelection | None = None  # None applies the latest pending selection


def _http_error(exc: GateError) -> HTTPException:
    if isinstance(exc, GoalNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, InvalidGoalEdit):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, EmergencyCodeRejected):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, PersistenceError):
        return HTTPException(status_code=503, detail=str(exc))
    return HTTPException(status_code=502, detail=str(exc))


def _weekday(value: int) -> int:
    try:
        return validate_weekday(value)
    except InvalidGoalEdit as exc:
        raise HTTPException(status_code=422, detail=str(exc))


# ---------------------------------------------------------------------------
# /gate/status, /gate/refresh, /gate/reconcile
# ---------------------------------------------------------------------------


@router.get("/status", response_model=GateStatus)
async def gate_status(
    engine: Engine = Depends(get_engine),
    _: str = Depends(verify_api_key),
) -> GateStatus:
    try:
        return await engine.controller.status()
    except GateError as exc:
        raise _http_error(exc)


@router.post("/refresh", response_model=RefreshOutcome)
async def gate_refresh(
    engine: Engine = Depends(get_engine),
    _: str = Depends(verify_api_key),
) -> RefreshOutcome:
    return await engine.controller.refresh(reason="manual")


@router.post("/reconcile", response_model=ReconcileOutcome)
async def gate_reconcile(
    engine: Engine = Depends(get_engine),
    _: str = Depends(verify_api_key),
) -> ReconcileOutcome:
    return await engine.loop.reconcile(reason="manual")


# ---------------------------------------------------------------------------
# /gate/schedule
# ---------------------------------------------------------------------------


@router.get("/schedule")
async def gate_schedule(
    engine: Engine = Depends(get_engine),
    _: str = Depends(verify_api_key),
    first_weekday: int = Query(default=1, ge=1, le=7, description="Weekday the list starts on (1 = Sunday)"),
) -> dict:
    today = weekday_of(engine.clock.now().date())
    try:
        schedule = await load_schedule(engine.store, today)
    except GateError as exc:
        raise _http_error(exc)
    return {
        "today": today,
        "days": [s.model_dump() for s in day_summaries(schedule, today, first_weekday)],
        "schedule": schedule.model_dump(mode="json"),
    }


@router.get("/schedule/{weekday}", response_model=GoalContainer)
async def gate_schedule_day(
    weekday: int,
    engine: Engine = Depends(get_engine),
    _: str = Depends(verify_api_key),
) -> GoalContainer:
    weekday = _weekday(weekday)
    try:
        schedule = await load_schedule(engine.store, weekday_of(engine.clock.now().date()))
    except GateError as exc:
        raise _http_error(exc)
    return schedule.goal_for(weekday)


# ---------------------------------------------------------------------------
# /gate/goals/{weekday}: single-goal edits
# ---------------------------------------------------------------------------


@router.post("/goals/{weekday}", response_model=ChangeResult)
async def add_goal(
    weekday: int,
    body: GoalRequest,
    engine: Engine = Depends(get_engine),
    _: str = Depends(verify_api_key),
) -> ChangeResult:
    try:
        return await engine.gatekeeper.add_goal(_weekday(weekday), body.goal)
    except GateError as exc:
        raise _http_error(exc)


@router.put("/goals/{weekday}", response_model=ChangeResult)
async def update_goal(
    weekday: int,
    body: GoalRequest,
    engine: Engine = Depends(get_engine),
    _: str = Depends(verify_api_key),
) -> ChangeResult:
    try:
        return await engine.gatekeeper.update_goal(_weekday(weekday), body.goal)
    except GateError as exc:
        raise _http_error(exc)


@router.delete("/goals/{weekday}/{kind}", response_model=ChangeResult)
async def remove_goal(
    weekday: int,
    kind: GoalKind,
    engine: Engine = Depends(get_engine),
    _: str = Depends(verify_api_key),
    goal_id: uuid.UUID | None = Query(default=None, description="Exercise goal id"),
) -> ChangeResult:
    try:
        return await engine.gatekeeper.remove_goal(_weekday(weekday), kind, goal_id)
    except GateError as exc:
        raise _http_error(exc)


# ---------------------------------------------------------------------------
# /gate/days/{weekday}: whole-day edits, pending, emergency
# ---------------------------------------------------------------------------


@router.put("/days/{weekday}", response_model=ChangeResult)
async def replace_day(
    weekday: int,
    body: GoalContainer,
    engine: Engine = Depends(get_engine),
    _: str = Depends(verify_api_key),
) -> ChangeResult:
    try:
        return await engine.gatekeeper.submit_goal_change(_weekday(weekday), body)
    except GateError as exc:
        raise _http_error(exc)


@router.post("/days/{weekday}/pending", response_model=ChangeResult)
async def schedule_pending_goal(
    weekday: int,
    body: GoalContainer,
    engine: Engine = Depends(get_engine),
    _: str = Depends(verify_api_key),
) -> ChangeResult:
    try:
        return await engine.gatekeeper.schedule_pending_goal(_weekday(weekday), body)
    except GateError as exc:
        raise _http_error(exc)


@router.delete("/days/{weekday}/pending")
async def cancel_pending_goal(
    weekday: int,
    engine: Engine = Depends(get_engine),
    _: str = Depends(verify_api_key),
) -> dict[str, bool]:
    try:
        cancelled = await engine.gatekeeper.cancel_pending_goal(_weekday(weekday))
    except GateError as exc:
        raise _http_error(exc)
    return {"cancelled": cancelled}


@router.post("/days/{weekday}/emergency", response_model=ChangeResult)
async def apply_emergency_change(
    weekday: int,
    body: EmergencyGoalRequest,
    engine: Engine = Depends(get_engine),
    _: str = Depends(verify_api_key),
) -> ChangeResult:
    try:
        return await engine.gatekeeper.apply_emergency_change(_weekday(weekday), body.code, body.proposal)
    except GateError as exc:
        raise _http_error(exc)


@router.post("/emergency-code")
async def issue_emergency_code(
    engine: Engine = Depends(get_engine),
    _: str = Depends(verify_api_key),
) -> dict[str, str]:
    issued = engine.gatekeeper.issue_emergency_code()
    return {"code": issued.code, "expires_at": issued.expires_at.isoformat()}


# ---------------------------------------------------------------------------
# /gate/selection
# ---------------------------------------------------------------------------


@router.get("/selection", response_model=AppSelection)
async def get_selection(
    engine: Engine = Depends(get_engine),
    _: str = Depends(verify_api_key),
) -> AppSelection:
    try:
        return await load_selection(engine.store)
    except GateError as exc:
        raise _http_error(exc)


@router.put("/selection", response_model=ChangeResult)
async def update_selection(
    body: AppSelection,
    engine: Engine = Depends(get_engine),
    _: str = Depends(verify_api_key),
) -> ChangeResult:
    try:
        return await engine.gatekeeper.update_selection(body)
    except GateError as exc:
        raise _http_error(exc)


@router.post("/selection/emergency", response_model=ChangeResult)
async def apply_emergency_selection(
    body: EmergencySelectionRequest,
    engine: Engine = Depends(get_engine),
    _: str = Depends(verify_api_key),
) -> ChangeResult:
    try:
        return await engine.gatekeeper.apply_emergency_selection(body.code, body.selection)
    except GateError as exc:
        raise _http_error(exc)


@router.delete("/selection/pending")
async def cancel_pending_selection(
    engine: Engine = Depends(get_engine),
    _: str = Depends(verify_api_key),
    weekday: int | None = Query(default=None, description="Weekday to cancel (omit for all)"),
) -> dict[str, bool]:
    try:
        if weekday is not None:
            weekday = _weekday(weekday)
        cancelled = await engine.gatekeeper.cancel_pending_selection(weekday)
    except GateError as exc:
        raise _http_error(exc)
    return {"cancelled": cancelled}
