from __future__ import annotations

from pathlib import Path
from typing import Optional

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

from meeting_intel.config import Settings

_engine: Optional[Engine] = None


def _enable_sqlite_pragmas(dbapi_conn, _record) -> None:  # noqa: ANN001 - DBAPI connection
    cursor = dbapi_conn.cursor()
    # SQLite ignores ON DELETE CASCADE unless this is set per connection
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


def create_db_engine(database_path: Path | str) -> Engine:
    engine = create_engine(f"sqlite:///{database_path}", connect_args={"check_same_thread": False})
    event.listen(engine, "connect", _enable_sqlite_pragmas)
    return engine


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        settings = Settings()
        settings.database_path.parent.mkdir(parents=True, exist_ok=True)
        _engine = create_db_engine(settings.database_path)
    return _engine


def new_session() -> Session:
    return Session(get_engine())


def init_db(engine: Optional[Engine] = None) -> Engine:
    engine = engine or get_engine()
    # Import table modules so their metadata is registered
    from meeting_intel.models import chat_message, meeting, setting, summary, transcript  # noqa: F401

    # Enable WAL
    with engine.begin() as conn:
        conn.exec_driver_sql("PRAGMA journal_mode=WAL;")
        conn.exec_driver_sql("PRAGMA synchronous=NORMAL;")
    SQLModel.metadata.create_all(engine)
    return engine
