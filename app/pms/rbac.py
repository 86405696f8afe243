"""
Role access policy.

`authorize()` is a pure function of (actor context, action, resource ownership).
It holds no state and touches no database; callers load the resource first and
pass its ownership facts in.
"""
from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from functools import wraps
from typing import Any

from flask import g

from app.pms.constants import (
    ACTOR_VERIFIED,
    RECORD_VERIFIED,
    ROLE_ADMINISTRATOR,
    ROLE_CLINICIAN,
    ROLE_DATA_ENTRY,
    ROLE_SUBJECT,
)
from app.pms.errors import Forbidden

# Fixed action set
CREATE = "create"
VERIFY = "verify"
EDIT_AND_VERIFY = "editAndVerify"
REQUEST_CORRECTION = "requestCorrection"
APPROVE_CORRECTION = "approveCorrection"
REJECT_CORRECTION = "rejectCorrection"
VIEW_OWN = "viewOwn"
VIEW_ALL = "viewAll"
MANAGE_ACTORS = "manageActors"

ACTIONS = frozenset(
    {
        CREATE,
        VERIFY,
        EDIT_AND_VERIFY,
        REQUEST_CORRECTION,
        APPROVE_CORRECTION,
        REJECT_CORRECTION,
        VIEW_OWN,
        VIEW_ALL,
        MANAGE_ACTORS,
    }
)


@dataclass(frozen=True)
class ActorContext:
    """Caller identity as supplied by the identity service. Trusted as-is."""

    id: int
    role: str
    verification_status: str
    is_active: bool = True

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMINISTRATOR


@dataclass(frozen=True)
class ResourceOwnership:
    subject_id: int | None = None
    clinician_id: int | None = None
    entered_by: int | None = None
    status: str | None = None


NO_RESOURCE = ResourceOwnership()


def ownership_of(record) -> ResourceOwnership:
    return ResourceOwnership(
        subject_id=record.subject_id,
        clinician_id=record.clinician_id,
        entered_by=record.entered_by,
        status=record.status,
    )


def authorize(ctx: ActorContext | None, action: str, ownership: ResourceOwnership = NO_RESOURCE) -> bool:
    if ctx is None or not ctx.is_active or ctx.verification_status != ACTOR_VERIFIED:
        return False
    role = ctx.role

    if action == CREATE:
        return role in (ROLE_DATA_ENTRY, ROLE_ADMINISTRATOR)

    if action in (VERIFY, EDIT_AND_VERIFY):
        if role == ROLE_ADMINISTRATOR:
            return True
        return role == ROLE_CLINICIAN and ownership.clinician_id == ctx.id

    if action == REQUEST_CORRECTION:
        return role == ROLE_SUBJECT and ownership.subject_id == ctx.id and ownership.status == RECORD_VERIFIED

    if action in (APPROVE_CORRECTION, REJECT_CORRECTION):
        if role == ROLE_ADMINISTRATOR:
            return True
        return role == ROLE_CLINICIAN and ownership.clinician_id == ctx.id

    if action == VIEW_OWN:
        if role == ROLE_SUBJECT:
            return ownership.subject_id == ctx.id and ownership.status == RECORD_VERIFIED
        if role == ROLE_CLINICIAN:
            return ownership.clinician_id == ctx.id
        if role == ROLE_DATA_ENTRY:
            return ownership.entered_by == ctx.id
        return False

    if action in (VIEW_ALL, MANAGE_ACTORS):
        return role == ROLE_ADMINISTRATOR

    return False


def can_view(ctx: ActorContext | None, ownership: ResourceOwnership) -> bool:
    return authorize(ctx, VIEW_ALL) or authorize(ctx, VIEW_OWN, ownership)


def require(ctx: ActorContext | None, action: str, ownership: ResourceOwnership = NO_RESOURCE) -> None:
    if not authorize(ctx, action, ownership):
        raise Forbidden()


def require_actor(action: str | None = None) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Route guard: an identified actor is required (401 otherwise). When `action`
    is given it must be authorized without resource ownership (e.g. manageActors).
    Resource-scoped checks happen inside the service operations.
    """

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            ctx: ActorContext | None = getattr(g, "actor", None)
            if ctx is None:
                return {"error": {"code": "unauthenticated", "message": "Actor identity required.", "retry": "do_not_retry"}}, 401
            if action is not None and not authorize(ctx, action):
                g.missing_action = action
                raise Forbidden()
            return fn(*args, **kwargs)

        return wrapped

    return decorator
