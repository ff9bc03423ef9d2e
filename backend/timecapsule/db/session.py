# backend/timecapsule/db/session.py
from __future__ import annotations

import os
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from timecapsule.core.config import settings

DATABASE_URL = settings.database_url


def _ensure_sqlite_dir(url: str) -> None:
    if not url.startswith("sqlite:///") or url.endswith(":memory:"):
        return
    directory = os.path.dirname(url[len("sqlite:///"):])
    if directory:
        os.makedirs(directory, exist_ok=True)


def enable_sqlite_foreign_keys(target: Engine) -> None:
    """SQLite ignores ON DELETE CASCADE unless the pragma is set per connection."""
    if target.dialect.name != "sqlite":
        return

    @event.listens_for(target, "connect")
    def _set_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


_ensure_sqlite_dir(DATABASE_URL)

engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {},
)
enable_sqlite_foreign_keys(engine)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
    bind=engine,
)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
