"""SQLModel database engine and session management."""

import logging

from sqlalchemy import inspect
from sqlmodel import SQLModel, create_engine, Session

from trailstop.config import settings

logger = logging.getLogger(__name__)

# SQLite needs check_same_thread=False; PostgreSQL does not
connect_args = {}
if settings.database_url.startswith("sqlite"):
    connect_args["check_same_thread"] = False
    connect_args["timeout"] = settings.store_timeout_seconds
elif settings.database_url.startswith("postgresql"):
    connect_args["connect_timeout"] = int(settings.store_timeout_seconds)

engine = create_engine(
    settings.database_url,
    echo=False,
    connect_args=connect_args,
    pool_pre_ping=True,
)


def _run_migrations(bind=None):
    """Add audit columns that older trailing_stop tables were created without."""
    from sqlalchemy import text

    bind = bind or engine
    inspector = inspect(bind)

    if "trailing_stop" not in inspector.get_table_names():
        return

    columns = {col["name"] for col in inspector.get_columns("trailing_stop")}
    added = {
        "version": "INTEGER NOT NULL DEFAULT 0",
        "activated_at": "TIMESTAMP",
        "sell_order_id": "VARCHAR",
    }
    for name, ddl in added.items():
        if name in columns:
            continue
        logger.info(f"Migrating: adding trailing_stop.{name}")
        with bind.connect() as conn:
            conn.execute(text(f"ALTER TABLE trailing_stop ADD COLUMN {name} {ddl}"))
            conn.commit()


def create_db_and_tables(bind=None):
    """Create all tables. Called on startup."""
    import trailstop.models  # noqa: F401  registers tables on the metadata

    bind = bind or engine
    SQLModel.metadata.create_all(bind)
    _run_migrations(bind)


def get_session() -> Session:
    """Dependency that yields a database session."""
    with Session(engine) as session:
        yield session
