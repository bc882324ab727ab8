"""Trailing stop positions API."""

from fastapi import APIRouter, Depends, HTTPException

from trailstop.api.deps import get_active_scheduler, get_optional_scheduler, get_store
from trailstop.engine.errors import (
    PositionClosedError,
    PositionNotFound,
    SchedulerUnavailable,
    StoreUnavailable,
)
from trailstop.models.trailing_stop import PositionStatus
from trailstop.schemas.trailing_stop import CreatedResponse, TrailingStopCreate, TrailingStopRead
from trailstop.services import positions as service
from trailstop.services.store import PositionStore

router = APIRouter(prefix="/api/positions", tags=["positions"])


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, PositionNotFound):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, PositionClosedError):
        return HTTPException(status_code=409, detail=str(e))
    return HTTPException(status_code=503, detail=str(e))


@router.post("", response_model=CreatedResponse, status_code=201)
def create_position(
    data: TrailingStopCreate,
    store: PositionStore = Depends(get_store),
    scheduler=Depends(get_active_scheduler),
):
    try:
        state_key = service.create_position(data, store, scheduler)
        position = service.get_position(state_key, store)
    except (SchedulerUnavailable, StoreUnavailable, PositionNotFound) as e:
        raise _http_error(e)
    return CreatedResponse(state_key=state_key, status=position.status)


@router.get("", response_model=list[TrailingStopRead])
def list_positions(
    status: PositionStatus | None = None,
    store: PositionStore = Depends(get_store),
):
    try:
        return service.list_active_positions(store, [status] if status else None)
    except StoreUnavailable as e:
        raise _http_error(e)


@router.get("/{state_key}", response_model=TrailingStopRead)
def get_position(state_key: str, store: PositionStore = Depends(get_store)):
    try:
        return service.get_position(state_key, store)
    except (PositionNotFound, StoreUnavailable) as e:
        raise _http_error(e)


@router.post("/{state_key}/cancel", response_model=TrailingStopRead)
async def cancel_position(
    state_key: str,
    store: PositionStore = Depends(get_store),
    scheduler=Depends(get_optional_scheduler),
):
    try:
        return await service.cancel_position(state_key, store, scheduler)
    except (PositionNotFound, PositionClosedError, StoreUnavailable) as e:
        raise _http_error(e)


@router.post("/{state_key}/recreate", response_model=CreatedResponse, status_code=201)
def recreate_position(
    state_key: str,
    store: PositionStore = Depends(get_store),
    scheduler=Depends(get_active_scheduler),
):
    """Operator recovery: start a new position from an errored or cancelled one."""
    try:
        new_key = service.recreate_position(state_key, store, scheduler)
        position = service.get_position(new_key, store)
    except (PositionNotFound, PositionClosedError, SchedulerUnavailable, StoreUnavailable) as e:
        raise _http_error(e)
    return CreatedResponse(state_key=new_key, status=position.status)
