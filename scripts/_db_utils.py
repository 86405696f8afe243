from __future__ import annotations

import os
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker


def script_database_url(database_url: str | None = None) -> str:
    return (database_url or os.environ.get("DATABASE_URL") or "sqlite:///pms.db").strip()


@contextmanager
def script_session(db_url: str):
    engine = create_engine(db_url, future=True, pool_pre_ping=True)
    sm = sessionmaker(bind=engine, class_=Session, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
    s: Session = sm()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
        engine.dispose()
