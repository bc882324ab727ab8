"""Stateless trailing-stop decision logic.

Both schedulers call `evaluate` on every tick. Nothing here does I/O and
the input position is never mutated.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from trailstop.engine.errors import PositionFatalError
from trailstop.models.trailing_stop import PositionSide, PositionStatus, TrailingStop


class Action(str, Enum):
    ACTIVATED = "activated"
    ADJUSTED = "adjusted"
    TRIGGERED = "triggered"
    NO_OP = "no-op"


@dataclass(frozen=True)
class Evaluation:
    state: TrailingStop
    action: Action

    @property
    def changed(self) -> bool:
        return self.action != Action.NO_OP


def compute_trigger_price(side: PositionSide, highest_price: float, trailing_percent: float) -> float:
    """Stop level that sits `trailing_percent` behind the favorable extreme."""
    if side == PositionSide.SELL:
        return highest_price * (100 - trailing_percent) / 100
    return highest_price * (100 + trailing_percent) / 100


def is_improvement(side: PositionSide, price: float, extreme: float) -> bool:
    """Sell positions trail the high, buy positions trail the low."""
    return price > extreme if side == PositionSide.SELL else price < extreme


def crossed_activation(side: PositionSide, price: float, activation_price: float) -> bool:
    return price >= activation_price if side == PositionSide.SELL else price <= activation_price


def crossed_trigger(side: PositionSide, price: float, trigger_price: float) -> bool:
    return price <= trigger_price if side == PositionSide.SELL else price >= trigger_price


def validate(position: TrailingStop) -> None:
    """Raise PositionFatalError if the row cannot be evaluated."""
    if not position.symbol:
        raise PositionFatalError("missing symbol")
    try:
        PositionSide(position.side)
    except ValueError:
        raise PositionFatalError(f"unknown side {position.side!r}")
    if position.trailing_percent is None or not position.trailing_percent > 0:
        raise PositionFatalError(f"invalid trailing_percent {position.trailing_percent!r}")
    if position.status == PositionStatus.PENDING_ACTIVATION and position.activation_price is None:
        raise PositionFatalError("pending_activation without activation_price")
    if position.status == PositionStatus.ACTIVE and not _is_number(position.highest_price):
        raise PositionFatalError("active position without highest_price")


def evaluate(position: TrailingStop, price: float, now: datetime | None = None) -> Evaluation:
    """Apply one price observation to a position.

    Returns a new TrailingStop and the action taken. Feeding the same price
    twice yields the same state the second time.
    """
    if position.is_terminal:
        return Evaluation(state=position, action=Action.NO_OP)

    validate(position)
    now = now or datetime.now(timezone.utc)
    side = PositionSide(position.side)
    changes: dict = {}
    action = Action.NO_OP

    status = position.status
    highest = position.highest_price

    if status == PositionStatus.PENDING_ACTIVATION:
        if not crossed_activation(side, price, position.activation_price):
            return Evaluation(state=position, action=Action.NO_OP)
        status = PositionStatus.ACTIVE
        highest = price
        changes.update(status=status, activated_at=now)
        action = Action.ACTIVATED

    if is_improvement(side, price, highest):
        highest = price

    trigger = compute_trigger_price(side, highest, position.trailing_percent)
    if highest != position.highest_price or trigger != position.trigger_price:
        changes.update(highest_price=highest, trigger_price=trigger)
        if action == Action.NO_OP:
            action = Action.ADJUSTED

    if crossed_trigger(side, price, trigger):
        changes.update(status=PositionStatus.TRIGGERED, triggered_at=now)
        action = Action.TRIGGERED

    if not changes:
        return Evaluation(state=position, action=Action.NO_OP)
    return Evaluation(state=_clone(position, **changes), action=action)


def _clone(position: TrailingStop, **changes) -> TrailingStop:
    data = position.model_dump()
    data.update(changes)
    return TrailingStop(**data)


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not math.isnan(value)
