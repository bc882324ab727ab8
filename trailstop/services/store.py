"""Position store: durable CRUD over trailing_stop rows.

Every database failure is re-raised as StoreUnavailable so callers can tell a
storage hiccup apart from a problem with the position itself.
"""

import functools
import logging
from collections.abc import Iterable
from datetime import datetime, timezone

from sqlalchemy import func, update
from sqlalchemy.exc import DBAPIError, TimeoutError as PoolTimeoutError
from sqlmodel import Session, select

from trailstop.engine.errors import StaleStateError, StoreUnavailable
from trailstop.models.tick_log import TickLog
from trailstop.models.trailing_stop import (
    MONITORED_STATUSES,
    PositionStatus,
    TrailingStop,
)

logger = logging.getLogger(__name__)

# Fields a full-record write may not touch
_IMMUTABLE_FIELDS = {"state_key", "created_at", "version"}


def _guard(method):
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except (DBAPIError, PoolTimeoutError) as e:
            raise StoreUnavailable(f"{method.__name__} failed: {e}") from e

    return wrapper


class PositionStore:
    """Key-addressed store for TrailingStop rows."""

    def __init__(self, bind=None):
        if bind is None:
            from trailstop.database import engine as bind
        self.engine = bind

    def _session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    @_guard
    def get(self, state_key: str) -> TrailingStop | None:
        with self._session() as session:
            return session.get(TrailingStop, state_key)

    @_guard
    def upsert(self, position: TrailingStop, expected_version: int | None = None) -> TrailingStop:
        """Write the full record, last writer wins.

        With expected_version the write only lands if nobody else wrote the
        row since it was read; otherwise StaleStateError is raised.
        """
        now = datetime.now(timezone.utc)
        values = {
            k: v for k, v in position.model_dump().items() if k not in _IMMUTABLE_FIELDS
        }
        values["updated_at"] = now

        with self._session() as session:
            if expected_version is not None:
                result = session.execute(
                    update(TrailingStop)
                    .where(TrailingStop.state_key == position.state_key)
                    .where(TrailingStop.version == expected_version)
                    .values(**values, version=expected_version + 1)
                )
                if result.rowcount == 0:
                    session.rollback()
                    raise StaleStateError(
                        f"{position.state_key} changed since version {expected_version}"
                    )
                session.commit()
                return session.get(TrailingStop, position.state_key)

            current = session.get(TrailingStop, position.state_key)
            if current is None:
                current = TrailingStop(
                    state_key=position.state_key,
                    created_at=position.created_at or now,
                    version=1,
                    **values,
                )
            else:
                for key, value in values.items():
                    setattr(current, key, value)
                current.version += 1
            session.add(current)
            session.commit()
            session.refresh(current)
            return current

    @_guard
    def list_by_status(self, statuses: Iterable[PositionStatus]) -> list[TrailingStop]:
        wanted = [PositionStatus(s) for s in statuses]
        with self._session() as session:
            stmt = (
                select(TrailingStop)
                .where(TrailingStop.status.in_(wanted))  # type: ignore[attr-defined]
                .order_by(TrailingStop.created_at)
            )
            return list(session.exec(stmt).all())

    @_guard
    def mark_cancelled(self, state_key: str) -> TrailingStop | None:
        """Cancel a monitored row. Terminal rows are returned untouched."""
        with self._session() as session:
            session.execute(
                update(TrailingStop)
                .where(TrailingStop.state_key == state_key)
                .where(TrailingStop.status.in_(list(MONITORED_STATUSES)))  # type: ignore[attr-defined]
                .values(
                    status=PositionStatus.CANCELLED,
                    updated_at=datetime.now(timezone.utc),
                    version=TrailingStop.version + 1,
                )
            )
            session.commit()
            return session.get(TrailingStop, state_key)

    @_guard
    def mark_error(self, state_key: str, message: str) -> bool:
        """Move a monitored row to error. Returns False if it was already terminal."""
        with self._session() as session:
            result = session.execute(
                update(TrailingStop)
                .where(TrailingStop.state_key == state_key)
                .where(TrailingStop.status.in_(list(MONITORED_STATUSES)))  # type: ignore[attr-defined]
                .values(
                    status=PositionStatus.ERROR,
                    error_message=message[:1000],
                    updated_at=datetime.now(timezone.utc),
                    version=TrailingStop.version + 1,
                )
            )
            session.commit()
            return result.rowcount > 0

    @_guard
    def count_by_status(self) -> dict[str, int]:
        with self._session() as session:
            rows = session.exec(
                select(TrailingStop.status, func.count()).group_by(TrailingStop.status)
            ).all()
        return {PositionStatus(status).value: count for status, count in rows}

    @_guard
    def log_tick(
        self,
        state_key: str,
        status: str,
        action: str | None = None,
        price: float | None = None,
        scheduler: str | None = None,
        message: str | None = None,
    ):
        with self._session() as session:
            session.add(
                TickLog(
                    state_key=state_key,
                    status=PositionStatus(status).value,
                    action=action,
                    price=price,
                    scheduler=scheduler,
                    message=message,
                )
            )
            session.commit()
