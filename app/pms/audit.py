import json
from typing import Any

from flask import g, has_request_context
from sqlalchemy.orm import Session

from app.pms.models import AuditEvent


def record_event(
    s: Session,
    *,
    actor,
    action: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> AuditEvent:
    """
    Append-only audit event helper.

    `actor` is anything with `id` and `role` (ActorContext or Actor), or None for
    system actions such as self-registration.
    """
    rid = request_id
    if rid is None and has_request_context():
        rid = getattr(g, "request_id", None)
    ev = AuditEvent(
        request_id=rid,
        actor_id=actor.id if actor else None,
        actor_role=actor.role if actor else None,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        reason=reason,
        metadata_json=json.dumps(metadata, sort_keys=True, default=str) if metadata else None,
    )
    s.add(ev)
    return ev
