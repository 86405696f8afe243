"""Tests for the bootstrap administrator seed."""
import pytest
from sqlalchemy import create_engine

from app.pms.db import build_sessionmaker, session_scope
from app.pms.models import Actor, AuditEvent, Base
from scripts import init_db


@pytest.fixture()
def db_url(tmp_path, monkeypatch):
    url = f"sqlite:///{tmp_path/'seed.db'}"
    monkeypatch.setenv("ADMIN_EMAIL", " Root@Example.com ")
    monkeypatch.setenv("ADMIN_NAME", "Root")
    engine = create_engine(url, future=True)
    Base.metadata.create_all(bind=engine)
    engine.dispose()
    return url


def _sessions(db_url):
    return build_sessionmaker(create_engine(db_url, future=True))


def test_seed_creates_verified_admin_once(db_url):
    first = init_db.seed_only(database_url=db_url)
    second = init_db.seed_only(database_url=db_url)
    assert first == second

    with session_scope(_sessions(db_url)) as s:
        admin = s.query(Actor).one()
        assert (admin.email, admin.role, admin.verification_status, admin.is_active) == (
            "root@example.com",
            "administrator",
            "verified",
            True,
        )
        # Only the run that changed something is audited.
        assert [e.action for e in s.query(AuditEvent).all()] == ["actor.bootstrap"]


def test_seed_reactivates_disabled_admin(db_url):
    admin_id = init_db.seed_only(database_url=db_url)
    with session_scope(_sessions(db_url)) as s:
        s.get(Actor, admin_id).is_active = False

    assert init_db.seed_only(database_url=db_url) == admin_id
    with session_scope(_sessions(db_url)) as s:
        assert s.get(Actor, admin_id).is_active is True
        assert s.query(AuditEvent).filter(AuditEvent.action == "actor.bootstrap").count() == 2


def test_seed_never_promotes_other_roles(db_url):
    with session_scope(_sessions(db_url)) as s:
        s.add(Actor(email="root@example.com", role="clinician", verification_status="pending"))

    assert init_db.seed_only(database_url=db_url) is None
    with session_scope(_sessions(db_url)) as s:
        actor = s.query(Actor).one()
        assert (actor.role, actor.verification_status) == ("clinician", "pending")
        assert s.query(AuditEvent).count() == 0
