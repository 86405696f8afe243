from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from collections.abc import Callable, Generator
from typing import TypeVar

from flask import Flask, g
from sqlalchemy import create_engine, event
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from app.pms.errors import Unavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


def build_engine(db_url: str, *, env: str = "development"):
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
    elif db_url.startswith("sqlite"):
        # Writers queue on the file lock instead of failing immediately.
        engine_kwargs["connect_args"] = {"timeout": 30, "check_same_thread": False}
    engine = create_engine(db_url, **engine_kwargs)
    if env != "production":
        @event.listens_for(engine, "checkout")
        def _receive_checkout(dbapi_connection, connection_record, connection_proxy):  # type: ignore[no-redef]
            logger.debug("DB connection checkout from pool")
    return engine


def build_sessionmaker(engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        class_=Session,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


def init_db(app: Flask) -> None:
    engine = build_engine(app.config["DATABASE_URL"], env=app.config.get("ENV") or "development")
    app.extensions["sqlalchemy_engine"] = engine
    app.extensions["sqlalchemy_sessionmaker"] = build_sessionmaker(engine)


def db_session(app: Flask | None = None) -> Session:
    """
    Request-scoped session. Use inside request handlers for reads.
    Lifecycle transitions open their own short transactions.
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
            logger.exception("Failed to close request session")
        g.db_session = None


@contextmanager
def session_scope(app_or_sessionmaker: Flask | sessionmaker) -> Generator[Session, None, None]:
    """
    Non-request helper: yields a session and commits/rolls back.
    """
    if isinstance(app_or_sessionmaker, Flask):
        sm = app_or_sessionmaker.extensions["sqlalchemy_sessionmaker"]
    else:
        sm = app_or_sessionmaker
    s: Session = sm()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()


def with_store_retry(fn: Callable[[], T], *, attempts: int = 3, backoff_seconds: float = 0.2) -> T:
    """
    Run `fn`, retrying transient store failures with linear backoff.

    Only OperationalError (lost connection, lock timeout) is treated as transient.
    After the last attempt the failure surfaces as Unavailable.
    """
    last_err: Exception | None = None
    for attempt in range(max(1, attempts)):
        try:
            return fn()
        except OperationalError as e:
            last_err = e
            logger.warning("STORE: transient failure attempt=%s/%s err=%s", attempt + 1, attempts, str(e)[:200])
            if attempt + 1 < attempts:
                time.sleep(min(backoff_seconds * (attempt + 1), 5))
    raise Unavailable() from last_err
