"""Database engine and session management."""

from collections.abc import Generator
from pathlib import Path
from typing import Annotated

from fastapi import Depends
from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from salesync.core.config import settings


def make_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine, handling SQLite specially."""
    connect_args = {}
    pool_config = {}

    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        if ":memory:" in database_url:
            # One shared connection, otherwise every session sees an empty database
            pool_config = {"poolclass": StaticPool}
        else:
            pool_config = {"pool_pre_ping": True}
    else:
        pool_config = {
            "pool_size": 5,
            "max_overflow": 10,
            "pool_pre_ping": True,
            "pool_recycle": 3600,
        }

    engine = create_engine(database_url, connect_args=connect_args, echo=echo, **pool_config)

    if database_url.startswith("sqlite"):
        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def ensure_sqlite_dir(database_url: str) -> None:
    """Create the parent directory of a file-backed SQLite database."""
    if not database_url.startswith("sqlite") or ":memory:" in database_url:
        return
    path = database_url.split(":///", 1)[-1]
    if path:
        Path(path).parent.mkdir(parents=True, exist_ok=True)


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


ledger_engine = make_engine(settings.ledger_database_url, echo=False)
LedgerSessionLocal = make_session_factory(ledger_engine)


def get_ledger_db() -> Generator[Session, None, None]:
    """Get ledger database session dependency."""
    db = LedgerSessionLocal()
    try:
        yield db
    finally:
        db.close()


LedgerDbSession = Annotated[Session, Depends(get_ledger_db)]
