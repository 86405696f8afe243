from __future__ import annotations

import uuid

from flask import Blueprint, current_app, g, request

from app.pms.db import db_session
from app.pms.models import Actor
from app.pms.modules.actors.service import ActorAdministration, context_for
from app.pms.utils import json_body
from app.pms.rbac import require_actor

bp = Blueprint("auth", __name__)

ACTOR_HEADER = "X-Actor-Id"


def load_current_actor() -> None:
    """
    Resolves g.actor from the identity header set by the upstream gateway.
    Also assigns a per-request request_id (for audit/log correlation).
    The role always comes from the actors table, never from the request.
    """
    g.request_id = (request.headers.get("X-Request-Id") or "").strip()[:64] or uuid.uuid4().hex
    g.actor = None
    if request.path.startswith(("/health", "/healthz")):
        return

    raw = (request.headers.get(ACTOR_HEADER) or "").strip()
    if not raw:
        return
    try:
        actor_id = int(raw)
    except ValueError:
        current_app.logger.warning("Ignoring malformed %s header request_id=%s", ACTOR_HEADER, g.request_id)
        return

    actor = db_session().get(Actor, actor_id)
    if actor is None:
        return
    g.actor = context_for(actor)


@bp.post("/register")
def register():
    payload = json_body()
    administration: ActorAdministration = current_app.extensions["pms.actors"]
    actor = administration.register_actor(payload.get("email"), payload.get("display_name"), payload.get("role"))
    return {"actor": actor.to_dict()}, 201


@bp.get("/me")
@require_actor()
def me():
    actor = db_session().get(Actor, g.actor.id)
    return {"actor": actor.to_dict() if actor else None}
