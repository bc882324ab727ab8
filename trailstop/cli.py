"""CLI tool for operator tasks.

Usage:
    python -m trailstop.cli init-db
    python -m trailstop.cli list [status]
    python -m trailstop.cli show <state_key>
    python -m trailstop.cli cancel <state_key>
    python -m trailstop.cli recreate <state_key>

recreate schedules on the queue, so Redis must be reachable. cancel always
updates the row and removes the queue entry when Redis answers.
"""

import asyncio
import sys

from trailstop.database import create_db_and_tables
from trailstop.engine.errors import TrailingStopError
from trailstop.models.trailing_stop import PositionSide, PositionStatus
from trailstop.services import positions as service
from trailstop.services.store import PositionStore
from trailstop.utils.logging import setup_logging

COMMANDS = ("init-db", "list", "show", "cancel", "recreate")


def _queue(start: bool = True):
    from trailstop.engine.queue_scheduler import get_queue_scheduler

    scheduler = get_queue_scheduler()
    if start:
        scheduler.start()
    return scheduler


def init_db():
    create_db_and_tables()
    print("Tables created.")


def list_positions(status: str | None = None):
    statuses = [PositionStatus(status)] if status else None
    rows = service.list_active_positions(PositionStore(), statuses)
    if not rows:
        print("No positions.")
        return
    for pos in rows:
        print(
            f"{pos.state_key}  {pos.symbol:<12} {PositionSide(pos.side).value:<4} "
            f"{PositionStatus(pos.status).value:<18} "
            f"extreme={pos.highest_price:g} trigger={pos.trigger_price:g}"
        )


def show_position(state_key: str):
    pos = service.get_position(state_key, PositionStore())
    for key, value in pos.model_dump().items():
        print(f"{key:>18}: {value}")


def cancel(state_key: str):
    pos = asyncio.run(service.cancel_position(state_key, PositionStore(), _queue(start=False)))
    print(f"{pos.state_key} is {PositionStatus(pos.status).value}.")


def recreate(state_key: str):
    new_key = service.recreate_position(state_key, PositionStore(), _queue())
    print(f"Recreated {state_key} as {new_key}.")


def main(argv: list[str] | None = None):
    args = sys.argv[1:] if argv is None else argv
    if not args or args[0] not in COMMANDS:
        print("Usage: python -m trailstop.cli <command> [args]")
        print(f"Commands: {', '.join(COMMANDS)}")
        sys.exit(1)

    setup_logging()
    command, rest = args[0], args[1:]
    needs_key = command in ("show", "cancel", "recreate")
    if needs_key and not rest:
        print(f"Usage: python -m trailstop.cli {command} <state_key>")
        sys.exit(1)

    try:
        if command == "init-db":
            init_db()
        elif command == "list":
            list_positions(rest[0] if rest else None)
        elif command == "show":
            show_position(rest[0])
        elif command == "cancel":
            cancel(rest[0])
        elif command == "recreate":
            recreate(rest[0])
    except (TrailingStopError, ValueError) as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
