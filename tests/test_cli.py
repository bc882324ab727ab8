"""Tests for the operator CLI."""

from unittest.mock import MagicMock, patch

import pytest
import redis

from trailstop import cli
from trailstop.engine.errors import SchedulerUnavailable
from trailstop.models.trailing_stop import PositionStatus


@pytest.fixture(autouse=True)
def _store(store):
    with patch("trailstop.cli.PositionStore", return_value=store), \
         patch("trailstop.cli.setup_logging"):
        yield


def test_usage_without_command(capsys):
    with pytest.raises(SystemExit) as exc:
        cli.main([])
    assert exc.value.code == 1
    assert "Commands:" in capsys.readouterr().out


def test_list(store, position_factory, capsys):
    pos = store.upsert(position_factory())
    cli.main(["list"])
    out = capsys.readouterr().out
    assert pos.state_key in out
    assert "active" in out


def test_show_unknown_exits(capsys):
    with pytest.raises(SystemExit):
        cli.main(["show", "missing"])
    assert "not found" in capsys.readouterr().out


def test_cancel_uses_queue_scheduler(store, position_factory, capsys):
    pos = store.upsert(position_factory())
    queue = MagicMock()
    with patch("trailstop.cli._queue", return_value=queue):
        cli.main(["cancel", pos.state_key])

    assert store.get(pos.state_key).status == PositionStatus.CANCELLED
    queue.unschedule.assert_called_once_with(pos.state_key)
    assert "cancelled" in capsys.readouterr().out


def test_cancel_works_while_redis_is_down(store, position_factory, capsys):
    pos = store.upsert(position_factory())
    queue = MagicMock()
    queue.start.side_effect = SchedulerUnavailable("Queue backend unreachable: Connection refused")
    queue.unschedule.side_effect = redis.ConnectionError("Connection refused")

    with patch("trailstop.engine.queue_scheduler.get_queue_scheduler", return_value=queue):
        cli.main(["cancel", pos.state_key])

    assert store.get(pos.state_key).status == PositionStatus.CANCELLED
    queue.start.assert_not_called()
    assert "cancelled" in capsys.readouterr().out
