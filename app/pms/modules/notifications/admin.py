from __future__ import annotations

from flask import Blueprint, current_app, g, request

from app.pms.errors import InvalidArgument
from app.pms.rbac import require_actor

from .service import NotificationDispatcher

bp = Blueprint("notifications", __name__)


def dispatcher() -> NotificationDispatcher:
    return current_app.extensions["pms.notifications"]


@bp.get("")
@require_actor()
def notifications_list():
    unread_only = (request.args.get("unread") or "").strip().lower() in ("1", "true", "yes")
    raw_limit = (request.args.get("limit") or "").strip()
    try:
        limit = int(raw_limit) if raw_limit else None
    except ValueError:
        raise InvalidArgument("limit must be an integer.") from None
    rows = dispatcher().list_for_recipient(
        g.actor,
        unread_only=unread_only,
        notification_type=(request.args.get("type") or "").strip() or None,
        priority=(request.args.get("priority") or "").strip() or None,
        limit=limit,
    )
    return {"notifications": [n.to_dict() for n in rows]}


@bp.get("/unread-count")
@require_actor()
def notifications_unread_count():
    return {"unread": dispatcher().unread_count(g.actor)}


@bp.post("/<int:notification_id>/read")
@require_actor()
def notifications_mark_read(notification_id: int):
    return {"notification": dispatcher().mark_read(g.actor, notification_id).to_dict()}


@bp.post("/read-all")
@require_actor()
def notifications_mark_all_read():
    return {"updated": dispatcher().mark_all_read(g.actor)}
