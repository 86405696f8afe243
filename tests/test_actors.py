"""Tests for actor registration and administrator account management."""
import pytest

from app.pms import create_app
from app.pms.db import session_scope
from app.pms.errors import Conflict, Forbidden, InvalidArgument, NotFound
from app.pms.models import Actor, AuditEvent, Base
from app.pms.modules.actors.service import context_for
from app.pms.modules.notifications.models import Notification
from app.pms.rbac import ActorContext


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("NOTIFICATION_WORKERS", "0")

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)
    return app


@pytest.fixture()
def admin(app):
    with session_scope(app) as s:
        a = Actor(email="admin@example.com", role="administrator", verification_status="verified", is_active=True)
        s.add(a)
        s.flush()
        return context_for(a)


@pytest.fixture()
def administration(app):
    return app.extensions["pms.actors"]


def _types_for(app, actor_id):
    with session_scope(app) as s:
        return [n.type for n in s.query(Notification).filter(Notification.recipient_id == actor_id).order_by(Notification.id)]


def test_register_starts_pending_and_notifies_admins(app, admin, administration):
    actor = administration.register_actor("  Doc@Example.com ", "Dr. Who", "clinician")
    assert actor.email == "doc@example.com"
    assert actor.verification_status == "pending"
    assert actor.is_active is True
    assert _types_for(app, admin.id) == ["verification_pending"]

    with pytest.raises(InvalidArgument):
        administration.register_actor("doc@example.com", "Again", "clinician")
    with pytest.raises(InvalidArgument):
        administration.register_actor("someone@example.com", "X", "superuser")
    with pytest.raises(InvalidArgument):
        administration.register_actor("not-an-email", "X", "subject")


def test_pending_account_cannot_act_until_verified(app, admin, administration):
    doc = administration.register_actor("doc@example.com", "Doc", "clinician")
    ctx = context_for(doc)
    with pytest.raises(Forbidden):
        app.extensions["pms.lifecycle"].list_records(ctx)

    verified = administration.verify_actor(admin, doc.id)
    assert verified.verification_status == "verified"
    assert verified.verified_by_actor_id == admin.id
    assert _types_for(app, doc.id) == ["account_verified"]
    assert app.extensions["pms.lifecycle"].list_records(context_for(verified)) == []

    with pytest.raises(Conflict):
        administration.verify_actor(admin, doc.id)


def test_reject_requires_reason_and_notifies(app, admin, administration):
    pat = administration.register_actor("pat@example.com", "Pat", "subject")
    with pytest.raises(InvalidArgument):
        administration.reject_actor(admin, pat.id, " ")
    with pytest.raises(InvalidArgument):
        administration.reject_actor(admin, admin.id, "self")

    rejected = administration.reject_actor(admin, pat.id, "Could not confirm identity.")
    assert rejected.verification_status == "rejected"
    assert rejected.rejection_reason == "Could not confirm identity."
    assert _types_for(app, pat.id) == ["account_rejected"]
    with session_scope(app) as s:
        n = s.query(Notification).filter(Notification.recipient_id == pat.id).one()
        assert n.priority == "high"
        assert "Could not confirm identity." in n.message


def test_admin_operations_require_manage_actors(admin, administration):
    doc = administration.register_actor("doc@example.com", "Doc", "clinician")
    administration.verify_actor(admin, doc.id)
    doc_ctx = ActorContext(id=doc.id, role="clinician", verification_status="verified")

    with pytest.raises(Forbidden):
        administration.verify_actor(doc_ctx, doc.id)
    with pytest.raises(Forbidden):
        administration.list_actors(doc_ctx)
    with pytest.raises(Forbidden):
        administration.actor_statistics(doc_ctx)
    with pytest.raises(NotFound):
        administration.verify_actor(admin, 9999)


def test_registered_administrator_needs_another_admin(app, admin, administration):
    newcomer = administration.register_actor("boss@example.com", "Boss", "administrator")
    ctx = context_for(newcomer)
    assert ctx.is_admin
    with pytest.raises(Forbidden):
        administration.list_actors(ctx)
    verified = administration.verify_actor(admin, newcomer.id)
    assert len(administration.list_actors(context_for(verified))) == 2


def test_soft_disable(app, admin, administration):
    doc = administration.register_actor("doc@example.com", "Doc", "clinician")
    administration.verify_actor(admin, doc.id)

    disabled = administration.set_active(admin, doc.id, False)
    assert disabled.is_active is False
    with pytest.raises(Forbidden):
        app.extensions["pms.lifecycle"].list_records(context_for(disabled))
    with pytest.raises(InvalidArgument):
        administration.set_active(admin, admin.id, False)

    enabled = administration.set_active(admin, doc.id, True)
    assert enabled.is_active is True
    with session_scope(app) as s:
        actions = [a for (a,) in s.query(AuditEvent.action).filter(AuditEvent.entity_id == str(doc.id)).order_by(AuditEvent.id)]
    assert actions == ["actor.register", "actor.verify", "actor.disable", "actor.enable"]


def test_list_and_statistics(admin, administration):
    administration.register_actor("doc@example.com", "Doc", "clinician")
    pat = administration.register_actor("pat@example.com", "Pat", "subject")
    administration.verify_actor(admin, pat.id)

    assert [a.email for a in administration.list_actors(admin, status="pending")] == ["doc@example.com"]
    assert [a.email for a in administration.list_actors(admin, role="subject")] == ["pat@example.com"]
    with pytest.raises(InvalidArgument):
        administration.list_actors(admin, role="nurse")

    stats = administration.actor_statistics(admin)
    assert stats["total"] == 3
    assert stats["pending"] == 1
    assert stats["inactive"] == 0
    assert stats["by_role"]["subject"]["verified"] == 1
    assert stats["by_role"]["clinician"]["pending"] == 1


def test_bulk_verify_continues_past_bad_ids(app, admin, administration):
    doc = administration.register_actor("doc@example.com", "Doc", "clinician")
    pat = administration.register_actor("pat@example.com", "Pat", "subject")
    administration.verify_actor(admin, pat.id)

    result = administration.bulk_verify_actors(admin, [doc.id, pat.id, 4242, doc.id])
    assert result == {
        "verified": [doc.id],
        "skipped": [{"actor_id": pat.id, "code": "conflict"}, {"actor_id": 4242, "code": "not_found"}],
    }
    assert _types_for(app, doc.id) == ["account_verified"]

    for bad in ([], [True], ["1"], "1,2"):
        with pytest.raises(InvalidArgument):
            administration.bulk_verify_actors(admin, bad)
    with pytest.raises(InvalidArgument):
        administration.bulk_verify_actors(admin, list(range(1, 300)))
    with pytest.raises(Forbidden):
        administration.bulk_verify_actors(context_for(pat), [doc.id])
