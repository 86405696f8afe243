"""
Administrator routes for actor accounts.
"""
from __future__ import annotations

from flask import Blueprint, current_app, g, request

from app.pms.errors import InvalidArgument
from app.pms.utils import json_body
from app.pms.rbac import MANAGE_ACTORS, require_actor

from .service import ActorAdministration

bp = Blueprint("actors", __name__)


def administration() -> ActorAdministration:
    return current_app.extensions["pms.actors"]


@bp.get("/actors")
@require_actor(MANAGE_ACTORS)
def actors_list():
    role = (request.args.get("role") or "").strip() or None
    status = (request.args.get("status") or "").strip() or None
    rows = administration().list_actors(g.actor, role=role, status=status)
    return {"actors": [a.to_dict() for a in rows]}


@bp.get("/actors/stats")
@require_actor(MANAGE_ACTORS)
def actors_stats():
    return {"stats": administration().actor_statistics(g.actor)}


@bp.post("/actors/bulk-verify")
@require_actor(MANAGE_ACTORS)
def actors_bulk_verify():
    payload = json_body()
    return {"result": administration().bulk_verify_actors(g.actor, payload.get("actor_ids"))}


@bp.post("/actors/<int:actor_id>/verify")
@require_actor(MANAGE_ACTORS)
def actors_verify(actor_id: int):
    return {"actor": administration().verify_actor(g.actor, actor_id).to_dict()}


@bp.post("/actors/<int:actor_id>/reject")
@require_actor(MANAGE_ACTORS)
def actors_reject(actor_id: int):
    payload = json_body()
    return {"actor": administration().reject_actor(g.actor, actor_id, payload.get("reason")).to_dict()}


@bp.post("/actors/<int:actor_id>/active")
@require_actor(MANAGE_ACTORS)
def actors_set_active(actor_id: int):
    payload = json_body()
    active = payload.get("active")
    if not isinstance(active, bool):
        raise InvalidArgument("active must be true or false.")
    return {"actor": administration().set_active(g.actor, actor_id, active).to_dict()}
