# pharmapos/db/session.py
from __future__ import annotations

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from pharmapos.core.config import settings


def _enable_sqlite_immediate_transactions(eng: Engine) -> None:
    """
    pysqlite defers BEGIN until the first DML, so two writers can both read
    and then deadlock on the upgrade to a write lock. Take the write lock at
    BEGIN instead so concurrent sales queue on the busy timeout.

    Every transaction is a writer here, reads included: a session that has
    run a query holds the database lock until it commits, rolls back or
    closes.
    """

    @event.listens_for(eng, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(eng, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def make_engine(db_uri: str | None = None, *, echo: bool | None = None) -> Engine:
    uri = db_uri or settings.DATABASE_URL
    echo = settings.DB_ECHO if echo is None else echo

    if uri.startswith("sqlite"):
        eng = create_engine(
            uri,
            echo=echo,
            connect_args={
                "check_same_thread": False,
                "timeout": settings.DB_LOCK_TIMEOUT_SECONDS,
            },
            future=True,
        )
        _enable_sqlite_immediate_transactions(eng)
        return eng

    return create_engine(
        uri,
        echo=echo,
        pool_pre_ping=True,
        pool_recycle=280,
        pool_size=10,
        max_overflow=20,
        pool_timeout=settings.DB_LOCK_TIMEOUT_SECONDS,
        future=True,
    )


engine: Engine = make_engine()

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    future=True,
)

