from __future__ import annotations

import time
from contextlib import contextmanager
from collections.abc import Generator

from flask import Flask, g
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker


def init_db(app: Flask) -> None:
    db_url = app.config["DATABASE_URL"]
    is_postgres = db_url.startswith("postgres")
    engine_kwargs: dict[str, object] = {
        "future": True,
        "pool_pre_ping": True,
    }
    if is_postgres:
        engine_kwargs.update(
            {
                "pool_recycle": 1800,
                "pool_size": 5,
                "max_overflow": 10,
                "pool_timeout": 30,
            }
        )
    engine = create_engine(db_url, **engine_kwargs)
    if app.config.get("ENV") != "production":
        @event.listens_for(engine, "checkout")
        def _receive_checkout(dbapi_connection, connection_record, connection_proxy):  # type: ignore[no-redef]
            app.logger.debug("DB connection checkout from pool")
    app.extensions["sqlalchemy_engine"] = engine
    app.extensions["sqlalchemy_sessionmaker"] = sessionmaker(
        bind=engine,
        class_=Session,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


def mis_connect_args(url: str, timeout_seconds: float) -> dict[str, object]:
    """Driver-level statement bound so a hung MIS query fails instead of blocking the sweep."""
    seconds = max(1, int(round(timeout_seconds)))
    if url.startswith("mysql"):
        return {"connect_timeout": seconds, "read_timeout": seconds, "write_timeout": seconds}
    if url.startswith("postgres"):
        return {"connect_timeout": seconds, "options": f"-c statement_timeout={seconds * 1000}"}
    return {}


def install_sqlite_statement_deadline(engine: Engine, timeout_seconds: float) -> None:
    """
    sqlite has no statement timeout; a progress handler interrupts any statement
    (execute + fetch) running past the deadline with OperationalError("interrupted").
    """

    @event.listens_for(engine, "connect")
    def _connect(dbapi_connection, connection_record):  # type: ignore[no-redef]
        state: dict[str, float | None] = {"deadline": None}
        connection_record.info["statement_deadline"] = state

        def _over_deadline() -> int:
            deadline = state["deadline"]
            return 1 if deadline is not None and time.monotonic() > deadline else 0

        dbapi_connection.set_progress_handler(_over_deadline, 1000)

    @event.listens_for(engine, "before_cursor_execute")
    def _start(conn, cursor, statement, parameters, context, executemany):  # type: ignore[no-redef]
        state = conn.info.get("statement_deadline")
        if state is not None:
            state["deadline"] = time.monotonic() + timeout_seconds

    @event.listens_for(engine, "checkin")
    def _clear(dbapi_connection, connection_record):  # type: ignore[no-redef]
        state = connection_record.info.get("statement_deadline")
        if state is not None:
            state["deadline"] = None


def create_mis_engine(
    url: str,
    *,
    fetch_timeout_seconds: float = 20.0,
    pool_size: int = 5,
    pool_timeout_seconds: int = 10,
) -> Engine:
    engine_kwargs: dict[str, object] = {
        "future": True,
        "pool_pre_ping": True,
    }
    if not url.startswith("sqlite"):
        # Shared, bounded pool: the refresh sweep is sequential so this caps load on MIS.
        engine_kwargs.update(
            {
                "pool_recycle": 1800,
                "pool_size": pool_size,
                "max_overflow": 0,
                "pool_timeout": pool_timeout_seconds,
                "connect_args": mis_connect_args(url, fetch_timeout_seconds),
            }
        )
    engine = create_engine(url, **engine_kwargs)
    if url.startswith("sqlite"):
        install_sqlite_statement_deadline(engine, fetch_timeout_seconds)
    return engine


def init_mis_engine(app: Flask) -> Engine | None:
    """
    Read-only pooled engine for the legacy operations (MIS) database.
    Returns None when MIS_DATABASE_URL is unset.
    """
    url = (app.config.get("MIS_DATABASE_URL") or "").strip()
    if not url:
        return None
    engine = create_mis_engine(
        url,
        fetch_timeout_seconds=float(app.config.get("MIS_FETCH_TIMEOUT_SECONDS") or 20),
        pool_size=int(app.config.get("MIS_POOL_SIZE") or 5),
        pool_timeout_seconds=int(app.config.get("MIS_POOL_TIMEOUT_SECONDS") or 10),
    )
    app.extensions["mis_engine"] = engine
    return engine


def db_session(app: Flask | None = None) -> Session:
    """
    Request-scoped session. Use inside request handlers.
    """
    if hasattr(g, "db_session") and g.db_session is not None:
        return g.db_session
    if app is None:
        from flask import current_app

        app = current_app
    sm = app.extensions["sqlalchemy_sessionmaker"]
    g.db_session = sm()  # type: ignore[assignment]
    return g.db_session


def teardown_db_session(_exc: BaseException | None) -> None:
    s: Session | None = getattr(g, "db_session", None)
    if s is not None:
        try:
            s.close()
        except Exception:
            pass
        g.db_session = None


@contextmanager
def session_scope(app: Flask) -> Generator[Session, None, None]:
    """
    Non-request helper for scripts and background work: yields a session and commits/rolls back.
    """
    sm = app.extensions["sqlalchemy_sessionmaker"]
    s: Session = sm()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
