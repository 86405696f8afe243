"""
Record and correction routes (JSON).
All authorization happens inside RecordLifecycle; routes only parse input.
"""
from __future__ import annotations

from flask import Blueprint, current_app, g, request

from app.pms.errors import InvalidArgument
from app.pms.rbac import require_actor
from app.pms.utils import int_field, json_body

from .service import Decision, RecordLifecycle

bp = Blueprint("records", __name__)


def lifecycle() -> RecordLifecycle:
    return current_app.extensions["pms.lifecycle"]


# ─────────────────────────────────────────────────────────────────────────────
# Records
# ─────────────────────────────────────────────────────────────────────────────


@bp.post("/records")
@require_actor()
def records_submit():
    payload = json_body()
    record = lifecycle().submit(
        g.actor,
        subject_id=int_field(payload, "subject_id"),
        clinician_id=int_field(payload, "clinician_id"),
        fields=payload.get("fields"),
    )
    return {"record": record.to_dict()}, 201


@bp.get("/records")
@require_actor()
def records_list():
    status = (request.args.get("status") or "").strip() or None
    records = lifecycle().list_records(g.actor, status=status)
    return {"records": [r.to_dict() for r in records]}


@bp.get("/records/stats")
@require_actor()
def records_stats():
    stats = lifecycle().dashboard_stats(g.actor)
    stats["unread_notifications"] = current_app.extensions["pms.notifications"].unread_count(g.actor)
    return {"stats": stats}


@bp.get("/records/<int:record_id>")
@require_actor()
def records_detail(record_id: int):
    return {"record": lifecycle().get_record(g.actor, record_id).to_dict()}


@bp.post("/records/<int:record_id>/verify")
@require_actor()
def records_verify(record_id: int):
    return {"record": lifecycle().verify(g.actor, record_id).to_dict()}


@bp.post("/records/<int:record_id>/edit-and-verify")
@require_actor()
def records_edit_and_verify(record_id: int):
    payload = json_body()
    record = lifecycle().edit_and_verify(g.actor, record_id, payload.get("patch"))
    return {"record": record.to_dict()}


@bp.post("/records/<int:record_id>/reject")
@require_actor()
def records_reject(record_id: int):
    payload = json_body()
    record = lifecycle().reject_record(g.actor, record_id, payload.get("reason"))
    return {"record": record.to_dict()}


@bp.post("/records/<int:record_id>/corrections")
@require_actor()
def records_request_correction(record_id: int):
    payload = json_body()
    record = lifecycle().request_correction(
        g.actor,
        record_id,
        payload.get("reason"),
        payload.get("requested_changes"),
    )
    request_dict = record.correction_requests[-1].to_dict() if record.correction_requests else None
    return {"record": record.to_dict(), "correction_request": request_dict}, 201


# ─────────────────────────────────────────────────────────────────────────────
# Correction requests
# ─────────────────────────────────────────────────────────────────────────────


@bp.get("/corrections")
@require_actor()
def corrections_list():
    status = (request.args.get("status") or "").strip() or None
    rows = lifecycle().list_correction_requests(g.actor, status=status)
    return {"correction_requests": [cr.to_dict() for cr in rows]}


@bp.get("/corrections/<int:request_id>")
@require_actor()
def corrections_detail(request_id: int):
    return {"correction_request": lifecycle().get_correction_request(g.actor, request_id).to_dict()}


@bp.post("/corrections/<int:request_id>/resolve")
@require_actor()
def corrections_resolve(request_id: int):
    payload = json_body()
    approved = payload.get("approved")
    if not isinstance(approved, bool):
        raise InvalidArgument("approved must be true or false.")
    record_id = payload.get("record_id")
    if record_id is not None:
        record_id = int_field(payload, "record_id")
    decision = Decision(approved=approved, response=payload.get("response"), patch=payload.get("patch"))
    record = lifecycle().resolve_correction(g.actor, request_id, decision, record_id=record_id)
    return {"record": record.to_dict()}
