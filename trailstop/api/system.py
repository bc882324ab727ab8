"""System API: health check, scheduler status, tick log, manual tick."""

from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session, select

from trailstop.api.deps import get_active_scheduler, get_store, get_tick_runner
from trailstop.database import get_session
from trailstop.engine.errors import StoreUnavailable, TrailingStopError
from trailstop.models.tick_log import TickLog
from trailstop.services.store import PositionStore

router = APIRouter(prefix="/api/system", tags=["system"])


@router.get("/health")
def health_check():
    return {"status": "ok"}


@router.get("/scheduler")
def scheduler_status(scheduler=Depends(get_active_scheduler)):
    """Active scheduler with its registered jobs."""
    return scheduler.status()


@router.get("/queue-status")
def queue_status(
    store: PositionStore = Depends(get_store),
    scheduler=Depends(get_active_scheduler),
):
    try:
        counts = store.count_by_status()
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    stats = scheduler.status()
    stats.pop("jobs", None)
    return {"positions": counts, "scheduler": stats}


@router.post("/tick/{state_key}")
async def run_tick(
    state_key: str,
    runner=Depends(get_tick_runner),
    scheduler=Depends(get_active_scheduler),
):
    """Run one tick for a position right now, outside its schedule."""
    try:
        result = await runner.run(state_key)
    except TrailingStopError as e:
        raise HTTPException(status_code=500, detail=str(e))
    if result.done:
        scheduler.unschedule(state_key)
    return asdict(result)


@router.get("/logs")
def tick_logs(
    state_key: str | None = None,
    action: str | None = None,
    limit: int = 100,
    offset: int = 0,
    session: Session = Depends(get_session),
):
    stmt = select(TickLog).order_by(TickLog.timestamp.desc())
    if state_key is not None:
        stmt = stmt.where(TickLog.state_key == state_key)
    if action is not None:
        stmt = stmt.where(TickLog.action == action)
    stmt = stmt.offset(offset).limit(limit)
    return session.exec(stmt).all()
