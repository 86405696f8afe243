import pytest
from sqlalchemy.exc import OperationalError

from app.pms import create_app
from app.pms.db import session_scope
from app.pms.models import Actor, Base
from app.pms.modules.records import service


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("NOTIFICATION_WORKERS", "0")

    app = create_app()

    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        s.add_all(
            [
                Actor(email="admin@example.com", role="administrator", verification_status="verified"),
                Actor(email="entry@example.com", role="data-entry", verification_status="verified"),
                Actor(email="doc@example.com", role="clinician", verification_status="verified"),
                Actor(email="pat@example.com", role="subject", verification_status="verified"),
            ]
        )
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def ids(app):
    with session_scope(app) as s:
        return {a.role: a.id for a in s.query(Actor).all()}


def _as(actor_id):
    return {"X-Actor-Id": str(actor_id)}


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True
    assert client.get("/healthz").status_code == 200


def test_identity_required(client):
    r = client.get("/records")
    assert r.status_code == 401
    assert r.json["error"]["code"] == "unauthenticated"

    # Unknown or malformed identities are anonymous.
    assert client.get("/records", headers=_as(9999)).status_code == 401
    assert client.get("/records", headers={"X-Actor-Id": "abc"}).status_code == 401


def test_record_flow_over_http(client, ids):
    r = client.post(
        "/records",
        json={"subject_id": ids["subject"], "clinician_id": ids["clinician"], "fields": {"dosage": "5mg"}},
        headers=_as(ids["data-entry"]),
    )
    assert r.status_code == 201
    record_id = r.json["record"]["id"]
    assert r.json["record"]["status"] == "pending"

    # Subject cannot see it yet; invisible looks the same as missing.
    r = client.get(f"/records/{record_id}", headers=_as(ids["subject"]))
    assert r.status_code == 404

    r = client.post(f"/records/{record_id}/verify", headers=_as(ids["subject"]))
    assert r.status_code == 403
    assert r.json["error"] == {"code": "forbidden", "message": "Not authorized for this action.", "retry": "do_not_retry"}

    r = client.post(f"/records/{record_id}/verify", headers=_as(ids["clinician"]))
    assert r.status_code == 200
    assert r.json["record"]["status"] == "verified"

    r = client.post(f"/records/{record_id}/verify", headers=_as(ids["clinician"]))
    assert r.status_code == 409
    assert r.json["error"]["retry"] == "retry_with_fresh_read"

    r = client.post(
        f"/records/{record_id}/corrections",
        json={"reason": "wrong dosage", "requested_changes": {"dosage": "10mg"}},
        headers=_as(ids["subject"]),
    )
    assert r.status_code == 201
    assert r.json["record"]["status"] == "correction_requested"
    request_id = r.json["correction_request"]["id"]

    r = client.post(f"/records/{record_id}/corrections", json={"reason": "again"}, headers=_as(ids["subject"]))
    assert r.status_code == 403
    assert r.json["error"]["code"] == "already_pending"

    r = client.get("/corrections?status=pending", headers=_as(ids["clinician"]))
    assert [c["id"] for c in r.json["correction_requests"]] == [request_id]

    r = client.post(
        f"/corrections/{request_id}/resolve",
        json={"approved": True, "response": "Fixed.", "patch": {"dosage": "10mg"}},
        headers=_as(ids["clinician"]),
    )
    assert r.status_code == 200
    assert r.json["record"]["status"] == "verified"
    assert r.json["record"]["fields"]["dosage"] == "10mg"
    assert r.json["record"]["has_active_correction"] is False

    r = client.get(f"/records/{record_id}", headers=_as(ids["subject"]))
    assert r.status_code == 200

    r = client.get("/records/stats", headers=_as(ids["subject"]))
    assert r.json["stats"]["total_records"] == 1
    assert r.json["stats"]["unread_notifications"] == 2


def test_bad_input_is_400(client, ids):
    r = client.post("/records", json={"subject_id": "x"}, headers=_as(ids["data-entry"]))
    assert r.status_code == 400
    assert r.json["error"]["code"] == "invalid_argument"

    r = client.post("/records", data="[1, 2]", content_type="application/json", headers=_as(ids["data-entry"]))
    assert r.status_code == 400

    r = client.post("/corrections/1/resolve", json={"approved": "yes", "response": "x"}, headers=_as(ids["clinician"]))
    assert r.status_code == 400


def test_notifications_inbox(client, ids):
    client.post(
        "/records",
        json={"subject_id": ids["subject"], "clinician_id": ids["clinician"], "fields": {"dosage": "5mg"}},
        headers=_as(ids["data-entry"]),
    )
    doc = _as(ids["clinician"])
    r = client.get("/notifications/unread-count", headers=doc)
    assert r.json["unread"] == 1

    r = client.get("/notifications?unread=1", headers=doc)
    assert r.status_code == 200
    notes = r.json["notifications"]
    assert [n["type"] for n in notes] == ["new_record"]

    r = client.post(f"/notifications/{notes[0]['id']}/read", headers=_as(ids["subject"]))
    assert r.status_code == 404

    r = client.post(f"/notifications/{notes[0]['id']}/read", headers=doc)
    assert r.status_code == 200
    assert r.json["notification"]["read"] is True

    r = client.get("/notifications", headers=doc)
    assert r.status_code == 200
    assert len(r.json["notifications"]) == 1
    assert client.get("/notifications?type=record_verified", headers=doc).json["notifications"] == []

    r = client.post("/notifications/read-all", headers=doc)
    assert r.json["updated"] == 0


def test_registration_and_admin_actor_routes(client, ids):
    r = client.post("/auth/register", json={"email": "new@example.com", "display_name": "New", "role": "clinician"})
    assert r.status_code == 201
    new_id = r.json["actor"]["id"]
    assert r.json["actor"]["verification_status"] == "pending"

    r = client.get("/auth/me", headers=_as(new_id))
    assert r.json["actor"]["email"] == "new@example.com"

    r = client.get("/admin/actors?status=pending", headers=_as(ids["clinician"]))
    assert r.status_code == 403

    admin = _as(ids["administrator"])
    r = client.get("/admin/actors?status=pending", headers=admin)
    assert [a["id"] for a in r.json["actors"]] == [new_id]

    r = client.post(f"/admin/actors/{new_id}/verify", headers=admin)
    assert r.json["actor"]["verification_status"] == "verified"

    r = client.post(f"/admin/actors/{new_id}/active", json={"active": False}, headers=admin)
    assert r.json["actor"]["is_active"] is False

    r = client.get("/admin/actors/stats", headers=admin)
    assert r.json["stats"]["inactive"] == 1

    r = client.get("/admin/audit?action=actor.", headers=admin)
    assert {e["action"] for e in r.json["events"]} == {"actor.register", "actor.verify", "actor.disable"}

    r = client.post("/admin/outbox/retry", headers=admin)
    assert r.json["result"]["attempted"] == 0


def test_unknown_route_is_json_404(client):
    r = client.get("/nope")
    assert r.status_code == 404
    assert r.json["error"]["code"] == "not_found"


def test_bulk_verify_reports_skipped_accounts(client, ids):
    new_ids = []
    for email in ("a@example.com", "b@example.com"):
        r = client.post("/auth/register", json={"email": email, "display_name": email, "role": "subject"})
        new_ids.append(r.json["actor"]["id"])

    admin = _as(ids["administrator"])
    r = client.post("/admin/actors/bulk-verify", json={"actor_ids": [*new_ids, ids["clinician"], 9999]}, headers=admin)
    assert r.status_code == 200
    assert r.json["result"]["verified"] == new_ids
    assert r.json["result"]["skipped"] == [
        {"actor_id": ids["clinician"], "code": "conflict"},
        {"actor_id": 9999, "code": "not_found"},
    ]

    r = client.post("/admin/actors/bulk-verify", json={"actor_ids": []}, headers=admin)
    assert r.status_code == 400
    r = client.post("/admin/actors/bulk-verify", json={"actor_ids": new_ids}, headers=_as(ids["clinician"]))
    assert r.status_code == 403


def test_store_outage_is_503_retry_later(app, client, ids, monkeypatch):
    r = client.post(
        "/records",
        json={"subject_id": ids["subject"], "clinician_id": ids["clinician"], "fields": {"dosage": "5mg"}},
        headers=_as(ids["data-entry"]),
    )
    record_id = r.json["record"]["id"]

    def store_down(s, record_id, **kwargs):
        raise OperationalError("UPDATE records", {}, Exception("server closed the connection unexpectedly"))

    monkeypatch.setattr(service, "compare_and_set", store_down)
    monkeypatch.setattr(app.extensions["pms.lifecycle"], "store_retry_backoff_seconds", 0)
    r = client.post(f"/records/{record_id}/verify", headers=_as(ids["clinician"]))
    assert r.status_code == 503
    assert r.json["error"] == {
        "code": "unavailable",
        "message": "The record store is temporarily unavailable.",
        "retry": "retry_later",
    }
