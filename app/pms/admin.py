from datetime import date, datetime, time, timedelta

from flask import Blueprint, current_app, g, request

from app.pms.db import db_session
from app.pms.models import AuditEvent
from app.pms.rbac import MANAGE_ACTORS, VIEW_ALL, require_actor

bp = Blueprint("admin", __name__)


def _parse_date(s: str) -> date | None:
    s = (s or "").strip()
    if not s:
        return None
    try:
        return date.fromisoformat(s)
    except ValueError:
        return None


@bp.get("/audit")
@require_actor(VIEW_ALL)
def audit_list():
    """
    Last 200 audit events with simple filters:
    - action (substring)
    - entity_type / entity_id (exact)
    - date_from / date_to (YYYY-MM-DD)
    """
    s = db_session()
    action = (request.args.get("action") or "").strip()
    entity_type = (request.args.get("entity_type") or "").strip()
    entity_id = (request.args.get("entity_id") or "").strip()
    date_from = _parse_date(request.args.get("date_from") or "")
    date_to = _parse_date(request.args.get("date_to") or "")

    q = s.query(AuditEvent)
    if action:
        q = q.filter(AuditEvent.action.like(f"%{action}%"))
    if entity_type:
        q = q.filter(AuditEvent.entity_type == entity_type)
    if entity_id:
        q = q.filter(AuditEvent.entity_id == entity_id)
    if date_from:
        q = q.filter(AuditEvent.created_at >= datetime.combine(date_from, time.min))
    if date_to:
        q = q.filter(AuditEvent.created_at < datetime.combine(date_to + timedelta(days=1), time.min))

    events = q.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(200).all()
    return {
        "events": [
            {
                "id": e.id,
                "created_at": e.created_at.isoformat() if e.created_at else None,
                "request_id": e.request_id,
                "actor_id": e.actor_id,
                "actor_role": e.actor_role,
                "action": e.action,
                "entity_type": e.entity_type,
                "entity_id": e.entity_id,
                "reason": e.reason,
                "metadata": e.metadata_json,
            }
            for e in events
        ]
    }


@bp.post("/outbox/retry")
@require_actor(MANAGE_ACTORS)
def outbox_retry():
    limit = request.args.get("limit", 100, type=int) or 100
    stats = current_app.extensions["pms.notifications"].retry_pending(limit=max(1, min(limit, 1000)))
    current_app.logger.info("Outbox retry triggered by actor_id=%s: %s", g.actor.id, stats)
    return {"result": stats}
