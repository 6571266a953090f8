import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from haygate.config import settings
from haygate.engine.container import default_engine
from haygate.engine.errors import PersistenceError
from haygate.engine.router import router as gate_router
from haygate.engine.store import SqlStore

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    engine = default_engine()
    if isinstance(engine.store, SqlStore):
        try:
            await engine.store.ensure_table()
        except PersistenceError as exc:
            logger.error("Store unavailable at startup: %s", exc)

    reconciler = asyncio.create_task(engine.loop.run(engine.wake_source()))
    try:
        yield
    finally:
        reconciler.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await reconciler


app = FastAPI(title="Haygate", version="0.1.0", lifespan=lifespan)
app.include_router(gate_router)


@app.get("/")
async def root() -> dict:
    return {
        "status": "ok",
        "docs": "/docs",
        "health": "/health",
        "gate": {
            "status": "/gate/status",
            "refresh": "/gate/refresh",
            "reconcile": "/gate/reconcile",
            "schedule": "/gate/schedule",
            "schedule_day": "/gate/schedule/{weekday}",
            "goals": "/gate/goals/{weekday}",
            "days": "/gate/days/{weekday}",
            "days_pending": "/gate/days/{weekday}/pending",
            "days_emergency": "/gate/days/{weekday}/emergency",
            "emergency_code": "/gate/emergency-code",
            "selection": "/gate/selection",
            "selection_emergency": "/gate/selection/emergency",
            "selection_pending": "/gate/selection/pending",
        },
    }


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}
