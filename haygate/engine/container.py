"""Wiring: one Engine per process, built from settings or from injected parts."""

from __future__ import annotations

from dataclasses import dataclass

from haygate.config import Settings, settings
from haygate.engine.controller import GateController
from haygate.engine.gatekeeper import ChangeGatekeeper, EmergencyCodeIssuer
from haygate.engine.pending import PendingChangeScheduler
from haygate.engine.ports import Clock, MetricSource, ShieldSink, SystemClock
from haygate.engine.reconcile import IntervalWakeSource, ReconciliationLoop
from haygate.engine.store import Store


@dataclass
class Engine:
    store: Store
    clock: Clock
    controller: GateController
    gatekeeper: ChangeGatekeeper
    loop: ReconciliationLoop

    def wake_source(self, config: Settings = settings) -> IntervalWakeSource:
        return IntervalWakeSource(
            self.clock,
            interval=config.reconcile_interval_seconds,
            max_backoff=config.reconcile_max_backoff_seconds,
        )


def build_engine(
    store: Store,
    metrics: MetricSource,
    shield: ShieldSink,
    clock: Clock,
    config: Settings = settings,
) -> Engine:
    scheduler = PendingChangeScheduler(store)
    controller = GateController(
        store,
        metrics,
        shield,
        clock,
        scheduler=scheduler,
        fetch_timeout=config.metric_fetch_timeout_seconds,
    )
    codes = EmergencyCodeIssuer(
        clock,
        length=config.emergency_code_length,
        ttl_seconds=config.emergency_code_ttl_seconds,
    )
    loop = ReconciliationLoop(
        store,
        metrics,
        shield,
        clock,
        scheduler=scheduler,
        transitions=controller.transitions,
        fetch_timeout=config.metric_fetch_timeout_seconds,
    )
    return Engine(
        store=store,
        clock=clock,
        controller=controller,
        gatekeeper=ChangeGatekeeper(controller, codes),
        loop=loop,
    )


_engine: Engine | None = None


def default_engine() -> Engine:
    """Postgres-backed engine for the running service, built on first use."""
    global _engine
    if _engine is None:
        from haygate.db import async_session
        from haygate.engine.sources import HttpShieldSink, SqlMetricSource
        from haygate.engine.store import SqlStore

        _engine = build_engine(
            SqlStore(async_session),
            SqlMetricSource(async_session, tz_name=settings.default_tz, device_id=settings.device_id),
            HttpShieldSink(settings.shield_endpoint_url, timeout=settings.shield_timeout_seconds),
            SystemClock(settings.default_tz),
        )
    return _engine


def get_engine() -> Engine:
    """FastAPI dependency; tests override it with an engine built on fakes."""
    return default_engine()
