"""Shared fixtures: in-memory database, position factory, Redis and price doubles."""

import fnmatch
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import create_engine

from trailstop.database import create_db_and_tables
from trailstop.engine.errors import PriceUnavailable
from trailstop.engine.position_engine import compute_trigger_price
from trailstop.models.trailing_stop import PositionSide, PositionStatus, TrailingStop
from trailstop.services.store import PositionStore


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_db_and_tables(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine):
    return PositionStore(bind=engine)


_counter = 0


def make_position(
    side: PositionSide = PositionSide.SELL,
    status: PositionStatus = PositionStatus.ACTIVE,
    highest_price: float = 100.0,
    trailing_percent: float = 5.0,
    activation_price: float | None = None,
    symbol: str = "BTC/USDT",
    state_key: str | None = None,
    **overrides,
) -> TrailingStop:
    global _counter
    _counter += 1
    fields = dict(
        state_key=state_key or f"BTCUSDT-{1700000000000 + _counter}-abc{_counter:03d}",
        symbol=symbol,
        side=side,
        entry_price=highest_price,
        quantity=1.0,
        trailing_percent=trailing_percent,
        activation_price=activation_price,
        highest_price=highest_price,
        trigger_price=compute_trigger_price(side, highest_price, trailing_percent),
        status=status,
        created_at=datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=_counter),
    )
    fields.update(overrides)
    return TrailingStop(**fields)


@pytest.fixture
def position_factory():
    return make_position


class FakePriceSource:
    """Returns queued prices per symbol; raises PriceUnavailable when told to."""

    def __init__(self, prices: dict[str, float] | None = None):
        self.prices = dict(prices or {})
        self.calls: list[str] = []

    def fetch_last_price(self, symbol: str) -> float:
        self.calls.append(symbol)
        price = self.prices.get(symbol)
        if isinstance(price, Exception):
            raise price
        if price is None:
            raise PriceUnavailable(f"No price for {symbol}")
        return price


@pytest.fixture
def prices():
    return FakePriceSource()


class FakeRedis:
    """The handful of redis-py calls the queue scheduler makes, kept in dicts.

    Strings are returned decoded, matching a client built with
    decode_responses=True. Key expiry is not simulated.
    """

    def __init__(self, reachable: bool = True):
        self.reachable = reachable
        self.strings: dict[str, str] = {}
        self.hashes: dict[str, dict[str, str]] = {}
        self.lists: dict[str, list[str]] = {}
        self.closed = False

    def ping(self):
        if not self.reachable:
            import redis
            raise redis.ConnectionError("Connection refused")
        return True

    def hset(self, name, key, value):
        bucket = self.hashes.setdefault(name, {})
        created = key not in bucket
        bucket[key] = value
        return int(created)

    def hget(self, name, key):
        return self.hashes.get(name, {}).get(key)

    def hdel(self, name, *keys):
        bucket = self.hashes.get(name, {})
        return sum(1 for k in keys if bucket.pop(k, None) is not None)

    def hkeys(self, name):
        return list(self.hashes.get(name, {}))

    def hlen(self, name):
        return len(self.hashes.get(name, {}))

    def set(self, name, value, nx=False, px=None):
        if nx and name in self.strings:
            return None
        self.strings[name] = value
        return True

    def get(self, name):
        return self.strings.get(name)

    def delete(self, *names):
        return sum(1 for n in names if self.strings.pop(n, None) is not None)

    def keys(self, pattern="*"):
        return [k for k in self.strings if fnmatch.fnmatch(k, pattern)]

    def llen(self, name):
        return len(self.lists.get(name, []))

    def close(self):
        self.closed = True


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def unreachable_redis():
    return FakeRedis(reachable=False)
