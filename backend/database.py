"""SQLModel database engine and session management."""

import logging

from sqlalchemy import inspect
from sqlmodel import SQLModel, create_engine, Session

from backend.config import settings

logger = logging.getLogger(__name__)


def make_engine(database_url: str):
    """Create an engine; SQLite needs check_same_thread=False, PostgreSQL does not."""
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(
        database_url,
        echo=False,
        connect_args=connect_args,
    )


engine = make_engine(settings.database_url)


def _run_migrations(target=None):
    """Run lightweight schema migrations for columns added after first deploy."""
    from sqlalchemy import text

    target = target or engine
    inspector = inspect(target)

    tables = inspector.get_table_names()
    if "user" in tables:
        user_columns = {col["name"] for col in inspector.get_columns("user")}
        if "is_admin" not in user_columns:
            logger.info("Migrating: adding user.is_admin")
            with target.connect() as conn:
                conn.execute(text('ALTER TABLE "user" ADD COLUMN is_admin BOOLEAN NOT NULL DEFAULT FALSE'))
                conn.commit()

    if "position" not in tables:
        return

    columns = {col["name"] for col in inspector.get_columns("position")}
    if "close_reason" not in columns:
        logger.info("Migrating: adding position.close_reason")
        with target.connect() as conn:
            conn.execute(text("ALTER TABLE position ADD COLUMN close_reason VARCHAR(16)"))
            conn.commit()

    # Composite index used by the tick path: open positions per symbol
    existing_indexes = inspector.get_indexes("position")
    if not any(idx["name"] == "ix_position_symbol_status" for idx in existing_indexes):
        with target.connect() as conn:
            conn.execute(text(
                "CREATE INDEX ix_position_symbol_status ON position (symbol, status)"
            ))
            conn.commit()


def create_db_and_tables(target=None):
    """Create all tables. Called on startup."""
    import backend.models  # noqa: F401  (populate metadata)

    target = target or engine
    SQLModel.metadata.create_all(target)
    _run_migrations(target)


def get_session() -> Session:
    """Dependency that yields a database session."""
    with Session(engine) as session:
        yield session
