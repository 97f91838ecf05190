from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, inspect as sa_inspect, text
from sqlalchemy.orm import Session, sessionmaker

from pitchdesk.config import get_settings
from pitchdesk.models import Base

log = logging.getLogger(__name__)

_lock = threading.Lock()
_engine = None
_SessionLocal = None

# Columns added after the first release: {table: {column: DDL type + default}}
_LATE_COLUMNS: dict[str, dict[str, str]] = {
    "submissions": {
        "analysis_error": "TEXT",
        "analyzed_at": "DATETIME",
        "source": "VARCHAR(50) DEFAULT 'startup_form'",
    },
    "evaluations": {
        "group_scores_json": "TEXT DEFAULT '{}'",
        "schema_version": "INTEGER DEFAULT 1",
    },
}


def init_db(db_path: str | Path | None = None) -> None:
    global _engine, _SessionLocal
    with _lock:
        if _engine is not None:
            _engine.dispose()
        if db_path is None:
            db_path = get_settings().database_path
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite:///{db_path}"
        _engine = create_engine(url, connect_args={"check_same_thread": False})
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
        _migrate_existing_db(_engine)
    log.info("Database ready at %s", db_path)


def _migrate_existing_db(engine) -> None:
    """Add columns that may be missing in older databases."""
    inspector = sa_inspect(engine)
    for table, late in _LATE_COLUMNS.items():
        if not inspector.has_table(table):
            continue
        columns = {col["name"] for col in inspector.get_columns(table)}
        for name, ddl in late.items():
            if name not in columns:
                with engine.begin() as conn:
                    conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {name} {ddl}"))
                log.info("Added column %s.%s", table, name)
    seed_scoring_prompts(engine)


def seed_scoring_prompts(engine) -> None:
    """Seed the default rubric prompt if the table is empty."""
    with engine.connect() as conn:
        count = conn.execute(text("SELECT COUNT(*) FROM scoring_prompts")).scalar()
        if count > 0:
            return
    from pitchdesk.scorer import DEFAULT_PROMPTS
    with engine.begin() as conn:
        for key, (label, content) in DEFAULT_PROMPTS.items():
            conn.execute(text(
                "INSERT INTO scoring_prompts (key, label, content) VALUES (:key, :label, :content)"
            ), {"key": key, "label": label, "content": content})


def get_session() -> Session:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        factory = _SessionLocal
    return factory()  # type: ignore[misc]


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Context manager providing a transactional session scope.

    Usage (MCP server, background tasks, scripts)::

        with session_scope() as session:
            ...
    """
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
