from __future__ import annotations

import os
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from app.backoffice.db import create_mis_engine as create_backoffice_mis_engine


def create_script_engine(db_url: str) -> Engine:
    return create_engine(
        db_url,
        future=True,
        pool_pre_ping=True,
        pool_recycle=1800,
    )


def script_sessionmaker(db_url: str) -> sessionmaker:
    engine = create_script_engine(db_url)
    return sessionmaker(bind=engine, class_=Session, autoflush=False, autocommit=False, expire_on_commit=False, future=True)


def create_mis_engine(mis_url: str) -> Engine:
    """Read-only MIS engine for scripts; pool and statement bounds come from the same env vars as the app."""
    return create_backoffice_mis_engine(
        mis_url,
        fetch_timeout_seconds=float(os.environ.get("MIS_FETCH_TIMEOUT_SECONDS") or 20),
        pool_size=int(os.environ.get("MIS_POOL_SIZE") or 5),
        pool_timeout_seconds=int(os.environ.get("MIS_POOL_TIMEOUT_SECONDS") or 10),
    )


@contextmanager
def script_session(db_url: str):
    sm = script_sessionmaker(db_url)
    s: Session = sm()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
        sm.kw["bind"].dispose()
