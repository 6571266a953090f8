"""Concrete adapters: health_connect tables as a MetricSource, HTTP shield endpoint as a ShieldSink.

Metric rows share the health_connect schema: id, device_id, date, collected_at,
received_at, source_type, schema_version, source, raw_data (JSONB). Intraday
rows are cumulative; the latest one for today wins, the daily row is the
fallback. Paths into raw_data:
  raw_data->>'steps_total'
  raw_data->>'active_calories_burned'
  raw_data->'exercise_sessions'->N->>'exercise_type' / 'duration_minutes'

No row for today means nothing was recorded yet and reads as zero.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any
from zoneinfo import ZoneInfo

import httpx
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from haygate.engine.errors import (
    AuthorizationDenied,
    MetricUnavailable,
    ShieldNotAuthorized,
    ShieldUpdateFailed,
)
from haygate.engine.models import ActivityFilter, AppSelection

METRIC_PATHS: dict[str, tuple[str, ...]] = {
    "steps": ("steps_total",),
    "active_energy": ("active_calories_burned", "energy_summary.active_kcal"),
}

# Health Connect exercise_type values counted for each filter
ACTIVITY_TYPES: dict[ActivityFilter, frozenset[str]] = {
    ActivityFilter.walking: frozenset({"walking"}),
    ActivityFilter.running: frozenset({"running", "running_treadmill"}),
    ActivityFilter.cycling: frozenset({"biking", "biking_stationary", "cycling"}),
    ActivityFilter.hiit: frozenset({"high_intensity_interval_training", "hiit"}),
    ActivityFilter.strength_training: frozenset({"strength_training", "weightlifting"}),
}

# Postgres SQLSTATEs that mean "you may not read this"
_DENIED_SQLSTATES = {"42501", "28000", "28P01"}


def _resolve_key(data: Any, key: str) -> Any:
    """Resolve a dot-path key like 'foo.bar' or 'list.0.field' in nested dicts/lists."""
    current = data
    for part in key.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return None
        else:
            return None
    return current


def _as_number(raw: Any, metric: str) -> float:
    if raw is None:
        return 0.0
    if isinstance(raw, bool):
        raise MetricUnavailable(f"{metric} is not numeric: {raw!r}", metric=metric)
    if isinstance(raw, (int, float)):
        return float(raw)
    if isinstance(raw, str):
        try:
            return float(raw)
        except ValueError:
            pass
    raise MetricUnavailable(f"{metric} is not numeric: {raw!r}", metric=metric)


def extract_metric(raw_data: dict[str, Any] | None, metric: str) -> float:
    """First configured path that holds a value; 0 when none does."""
    if not raw_data:
        return 0.0
    for path in METRIC_PATHS[metric]:
        raw = _resolve_key(raw_data, path)
        if raw is not None:
            return _as_number(raw, metric)
    return 0.0


def exercise_minutes(raw_data: dict[str, Any] | None, activity: ActivityFilter) -> int:
    """Sum session minutes matching the filter; `any` counts every session."""
    if not raw_data:
        return 0
    sessions = raw_data.get("exercise_sessions") or []
    wanted = ACTIVITY_TYPES.get(activity)
    total = 0.0
    for session in sessions:
        if not isinstance(session, dict):
            continue
        if wanted is not None and session.get("exercise_type") not in wanted:
            continue
        total += _as_number(session.get("duration_minutes"), "exercise")
    return int(total)


def _translate(exc: SQLAlchemyError, metric: str) -> Exception:
    if isinstance(exc, DBAPIError):
        sqlstate = getattr(exc.orig, "sqlstate", None) or getattr(exc.orig, "pgcode", None)
        if sqlstate in _DENIED_SQLSTATES:
            return AuthorizationDenied(f"Read of {metric} denied: {exc}", metric=metric)
    return MetricUnavailable(f"Read of {metric} failed: {exc}", metric=metric)


class SqlMetricSource:
    """Reads today's values from health_connect_intraday_logs / health_connect_daily."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        tz_name: str = "UTC",
        device_id: str | None = None,
    ):
        self._session_factory = session_factory
        self._tz = ZoneInfo(tz_name)
        self._device_id = device_id

    def _today(self) -> date:
        return datetime.now(self._tz).date()

    async def _latest_raw_data(self, session: AsyncSession, table: str, target_date: date) -> dict[str, Any] | None:
        query = f"SELECT raw_data FROM {table} WHERE date = :target_date"
        params: dict[str, Any] = {"target_date": target_date}
        if self._device_id is not None:
            query += " AND device_id = :device_id"
            params["device_id"] = self._device_id
        query += " ORDER BY collected_at DESC LIMIT 1"

        result = await session.execute(text(query), params)
        row = result.fetchone()
        if row is None:
            return None
        return row[0]

    async def _today_raw_data(self, metric: str) -> dict[str, Any] | None:
        today = self._today()
        try:
            async with self._session_factory() as session:
                raw = await self._latest_raw_data(session, "health_connect_intraday_logs", today)
                if raw is None:
                    raw = await self._latest_raw_data(session, "health_connect_daily", today)
        except SQLAlchemyError as exc:
            raise _translate(exc, metric) from exc
        return raw

    async def fetch_steps(self) -> int:
        return int(extract_metric(await self._today_raw_data("steps"), "steps"))

    async def fetch_active_energy(self) -> float:
        return extract_metric(await self._today_raw_data("active_energy"), "active_energy")

    async def fetch_exercise_minutes(self, activity: ActivityFilter) -> int:
        return exercise_minutes(await self._today_raw_data("exercise"), activity)


class HttpShieldSink:
    """Forwards shield commands to the on-device enforcement endpoint.

    POST {base}/apply  {"applications": [...], "categories": [...]}
    POST {base}/remove
    """

    def __init__(self, base_url: str, timeout: float = 5.0, client: httpx.AsyncClient | None = None):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._client = client

    async def _post(self, path: str, payload: dict[str, Any] | None = None) -> None:
        url = f"{self._base_url}/{path}"
        try:
            if self._client is not None:
                resp = await self._client.post(url, json=payload, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    resp = await client.post(url, json=payload)
        except httpx.HTTPError as exc:
            raise ShieldUpdateFailed(f"Shield {path} failed: {exc}") from exc

        if resp.status_code in (401, 403):
            raise ShieldNotAuthorized(f"Shield {path} refused: {resp.status_code}")
        if resp.status_code >= 400:
            raise ShieldUpdateFailed(f"Shield {path} failed: {resp.status_code} {resp.text}")

    async def apply(self, selection: AppSelection) -> None:
        await self._post(
            "apply",
            {
                "applications": sorted(selection.applications),
                "categories": sorted(selection.categories),
            },
        )

    async def remove(self) -> None:
        await self._post("remove")
