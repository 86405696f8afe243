"""Tests for notification dispatch, outbox retry and the recipient inbox."""
import threading
import time

import pytest
from sqlalchemy.exc import OperationalError

from app.pms import create_app
from app.pms.db import session_scope
from app.pms.errors import NotFound
from app.pms.events import EventKind, TransitionEvent
from app.pms.models import Actor, Base, OutboxEvent
from app.pms.modules.notifications.models import Notification
from app.pms.rbac import ActorContext


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("NOTIFICATION_WORKERS", "0")
    monkeypatch.setenv("NOTIFICATION_MAX_ATTEMPTS", "2")

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)
    return app


@pytest.fixture()
def actors(app):
    with session_scope(app) as s:
        rows = {
            "admin": Actor(email="admin@example.com", role="administrator", verification_status="verified"),
            "admin2": Actor(email="admin2@example.com", role="administrator", verification_status="verified"),
            "disabled_admin": Actor(
                email="old-admin@example.com", role="administrator", verification_status="verified", is_active=False
            ),
            "entry": Actor(email="entry@example.com", role="data-entry", verification_status="verified"),
            "clinician": Actor(email="doc@example.com", role="clinician", verification_status="verified"),
            "subject": Actor(email="pat@example.com", role="subject", verification_status="verified"),
        }
        s.add_all(rows.values())
        s.flush()
        return {
            k: ActorContext(id=a.id, role=a.role, verification_status=a.verification_status, is_active=a.is_active)
            for k, a in rows.items()
        }


@pytest.fixture()
def dispatcher(app):
    return app.extensions["pms.notifications"]


def _count(app, **filters):
    with session_scope(app) as s:
        return s.query(Notification).filter_by(**filters).count()


def _record_event(actors, kind=EventKind.RECORD_VERIFIED, **extra):
    return TransitionEvent.new(
        kind,
        actor=actors["clinician"],
        record={
            "id": 1,
            "subject_id": actors["subject"].id,
            "clinician_id": actors["clinician"].id,
            "entered_by": actors["entry"].id,
            "status": "verified",
            "version": 2,
        },
        extra=extra,
    )


def test_redelivery_is_idempotent(app, actors, dispatcher):
    event = _record_event(actors)
    first = dispatcher.dispatch(event)
    assert len(first) == 1
    assert dispatcher.dispatch(event) == []
    assert dispatcher.dispatch(TransitionEvent.from_payload(event.to_payload())) == []
    assert _count(app, event_id=event.event_id) == 1


@pytest.mark.parametrize(
    "kind, recipient, expected_type, priority, action_required",
    [
        (EventKind.RECORD_CREATED, "clinician", "new_record", "high", True),
        (EventKind.RECORD_VERIFIED, "subject", "record_verified", "medium", False),
        (EventKind.RECORD_REJECTED, "entry", "record_rejected", "high", True),
        (EventKind.CORRECTION_REQUESTED, "clinician", "correction_request", "high", True),
        (EventKind.CORRECTION_APPROVED, "subject", "correction_approved", "medium", False),
        (EventKind.CORRECTION_REJECTED, "subject", "correction_rejected", "medium", False),
    ],
)
def test_record_events_target_counter_party(app, actors, dispatcher, kind, recipient, expected_type, priority, action_required):
    event = _record_event(actors, kind, reason="r", response="done")
    dispatcher.dispatch(event)
    with session_scope(app) as s:
        rows = s.query(Notification).filter(Notification.event_id == event.event_id).all()
        assert [n.recipient_id for n in rows] == [actors[recipient].id]
        n = rows[0]
        assert (n.type, n.priority, n.action_required, n.read) == (expected_type, priority, action_required, False)
        assert n.data["event_id"] == event.event_id
        assert "#1" in n.message


def test_registration_broadcasts_to_active_verified_admins(app, actors, dispatcher):
    event = TransitionEvent.new(
        EventKind.ACTOR_REGISTERED, extra={"actor_id": 999, "email": "new@example.com", "role": "clinician"}
    )
    created = dispatcher.dispatch(event)
    assert len(created) == 2
    with session_scope(app) as s:
        rows = s.query(Notification).filter(Notification.event_id == event.event_id).order_by(Notification.recipient_id).all()
        assert [n.recipient_id for n in rows] == sorted([actors["admin"].id, actors["admin2"].id])
        assert all(n.recipient_role == "administrator" and n.type == "verification_pending" for n in rows)
        assert "new@example.com" in rows[0].message


def test_failed_dispatch_stays_in_outbox_and_retries(app, actors, dispatcher, monkeypatch):
    lifecycle = app.extensions["pms.lifecycle"]
    original = dispatcher._dispatch
    state = {"down": True}

    def flaky(event):
        if state["down"]:
            raise RuntimeError("delivery store down")
        return original(event)

    monkeypatch.setattr(dispatcher, "_dispatch", flaky)
    record = lifecycle.submit(
        actors["entry"], subject_id=actors["subject"].id, clinician_id=actors["clinician"].id, fields={"dosage": "5mg"}
    )
    # The transition committed even though dispatch failed.
    assert record.status == "pending"
    assert _count(app, recipient_id=actors["clinician"].id) == 0
    with session_scope(app) as s:
        row = s.query(OutboxEvent).one()
        assert (row.status, row.attempts) == ("pending", 1)
        assert "delivery store down" in row.last_error

    state["down"] = False
    stats = dispatcher.retry_pending()
    assert stats == {"attempted": 1, "dispatched": 1, "failed": 0}
    assert _count(app, recipient_id=actors["clinician"].id, type="new_record") == 1
    with session_scope(app) as s:
        row = s.query(OutboxEvent).one()
        assert row.status == "dispatched"
        assert row.dispatched_at is not None

    assert dispatcher.retry_pending() == {"attempted": 0, "dispatched": 0, "failed": 0}


def test_outbox_row_fails_after_max_attempts(app, actors, dispatcher, monkeypatch):
    def boom(event):
        raise RuntimeError("still down")

    monkeypatch.setattr(dispatcher, "_dispatch", boom)
    app.extensions["pms.lifecycle"].submit(
        actors["entry"], subject_id=actors["subject"].id, clinician_id=actors["clinician"].id, fields={"a": 1}
    )
    assert dispatcher.retry_pending() == {"attempted": 1, "dispatched": 0, "failed": 1}
    with session_scope(app) as s:
        row = s.query(OutboxEvent).one()
        assert (row.status, row.attempts) == ("failed", 2)
    assert dispatcher.retry_pending()["attempted"] == 0


def test_failing_subscriber_does_not_block_others(app, actors):
    bus = app.extensions["pms.bus"]
    seen = []

    def record_seen(event):
        seen.append(event)

    def broken(event):
        raise ValueError("ui refresh hook exploded")

    bus.subscribe(broken)
    bus.subscribe(record_seen, kinds=[EventKind.RECORD_CREATED])
    try:
        app.extensions["pms.lifecycle"].submit(
            actors["entry"], subject_id=actors["subject"].id, clinician_id=actors["clinician"].id, fields={"a": 1}
        )
    finally:
        bus.unsubscribe(broken)
        bus.unsubscribe(record_seen)
    assert [e.kind for e in seen] == [EventKind.RECORD_CREATED]
    assert _count(app, recipient_id=actors["clinician"].id) == 1


def test_inbox_mark_read_is_recipient_only(app, actors, dispatcher):
    dispatcher.dispatch(_record_event(actors, EventKind.RECORD_VERIFIED))
    dispatcher.dispatch(_record_event(actors, EventKind.CORRECTION_APPROVED, response="ok"))
    subject = actors["subject"]

    inbox = dispatcher.list_for_recipient(subject)
    assert [n.type for n in inbox] == ["correction_approved", "record_verified"]
    assert dispatcher.unread_count(subject) == 2

    with pytest.raises(NotFound):
        dispatcher.mark_read(actors["clinician"], inbox[0].id)
    with pytest.raises(NotFound):
        dispatcher.mark_read(subject, 424242)

    n = dispatcher.mark_read(subject, inbox[0].id)
    assert n.read is True
    assert n.read_at is not None
    assert dispatcher.unread_count(subject) == 1
    assert [x.type for x in dispatcher.list_for_recipient(subject, unread_only=True)] == ["record_verified"]

    assert dispatcher.mark_all_read(subject) == 1
    assert dispatcher.unread_count(subject) == 0
    assert dispatcher.mark_all_read(subject) == 0


def test_inbox_limit(actors, dispatcher):
    for _ in range(3):
        dispatcher.dispatch(_record_event(actors, EventKind.RECORD_VERIFIED))
    assert len(dispatcher.list_for_recipient(actors["subject"], limit=2)) == 2
    assert len(dispatcher.list_for_recipient(actors["subject"])) == 3


def test_inbox_filters_by_type_and_priority(actors, dispatcher):
    subject = actors["subject"]
    dispatcher.dispatch(_record_event(actors, EventKind.RECORD_VERIFIED))
    dispatcher.dispatch(_record_event(actors, EventKind.CORRECTION_REJECTED, response="no"))
    dispatcher.dispatch(_record_event(actors, EventKind.RECORD_VERIFIED))

    rows = dispatcher.list_for_recipient(subject, notification_type="record_verified")
    assert [n.type for n in rows] == ["record_verified", "record_verified"]
    assert dispatcher.list_for_recipient(subject, notification_type="new_record") == []
    assert len(dispatcher.list_for_recipient(subject, priority="medium")) == 3
    assert dispatcher.list_for_recipient(subject, priority="high") == []


# ─────────────────────────────────────────────────────────────────────────────
# Worker pool
# ─────────────────────────────────────────────────────────────────────────────


def test_transition_returns_before_delivery(app, actors, dispatcher, monkeypatch):
    monkeypatch.setattr(dispatcher, "workers", 1)
    original = dispatcher._dispatch
    started = threading.Event()
    release = threading.Event()

    def parked(event):
        started.set()
        if not release.wait(timeout=10):
            raise RuntimeError("delivery was never released")
        return original(event)

    monkeypatch.setattr(dispatcher, "_dispatch", parked)
    try:
        record = app.extensions["pms.lifecycle"].submit(
            actors["entry"], subject_id=actors["subject"].id, clinician_id=actors["clinician"].id, fields={"a": 1}
        )
        assert record.status == "pending"
        assert started.wait(timeout=5)
        # Delivery is still parked on the worker.
        assert _count(app, recipient_id=actors["clinician"].id) == 0
        with session_scope(app) as s:
            assert s.query(OutboxEvent).one().status == "pending"

        release.set()
        assert dispatcher.wait_idle(timeout=10)
    finally:
        release.set()
        dispatcher.shutdown()

    assert _count(app, recipient_id=actors["clinician"].id, type="new_record") == 1
    with session_scope(app) as s:
        assert s.query(OutboxEvent).one().status == "dispatched"


def test_failing_delivery_does_not_delay_transition(app, actors, dispatcher, monkeypatch):
    monkeypatch.setattr(dispatcher, "workers", 1)
    monkeypatch.setattr(dispatcher, "store_retry_backoff_seconds", 0.5)
    calls = []

    def store_down(event):
        calls.append(event.event_id)
        raise OperationalError("INSERT INTO notifications", {}, Exception("disk I/O error"))

    monkeypatch.setattr(dispatcher, "_dispatch", store_down)
    try:
        began = time.monotonic()
        app.extensions["pms.lifecycle"].submit(
            actors["entry"], subject_id=actors["subject"].id, clinician_id=actors["clinician"].id, fields={"a": 1}
        )
        elapsed = time.monotonic() - began
        assert dispatcher.wait_idle(timeout=30)
    finally:
        dispatcher.shutdown()

    # Delivery backs off for 0.5s + 1.0s before giving up; the submit never waits on it.
    assert elapsed < 1.0
    assert len(calls) == dispatcher.store_retry_attempts
    with session_scope(app) as s:
        row = s.query(OutboxEvent).one()
        assert (row.status, row.attempts) == ("pending", 1)
        assert row.last_error.startswith("Unavailable")
