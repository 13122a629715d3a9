# FILE: pharmapos/api/deps.py
from __future__ import annotations

from typing import Callable, Generator

from sqlalchemy.orm import Session

from pharmapos.db.session import SessionLocal


def get_session_factory() -> Callable[[], Session]:
    """Session maker for work that outlives the request (background tasks)."""
    return SessionLocal


def get_db() -> Generator[Session, None, None]:
    """
    One session per request, closed when the response is done.

    On SQLite the first query takes the write lock (BEGIN IMMEDIATE), so
    handlers must keep these sessions short and close them before handing
    work to another session, e.g. a background task.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
