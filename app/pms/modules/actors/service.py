"""
Actor administration: self-registration plus the administrator actions that
move an account through pending -> verified | rejected and soft-disable it.
Actors are never deleted.
"""
from __future__ import annotations

import logging
from datetime import datetime
from functools import partial
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from app.pms import rbac
from app.pms.audit import record_event
from app.pms.constants import (
    ACTOR_PENDING,
    ACTOR_REJECTED,
    ACTOR_STATUSES,
    ACTOR_VERIFIED,
    BULK_VERIFY_LIMIT,
    ROLES,
)
from app.pms.db import with_store_retry
from app.pms.errors import Conflict, InvalidArgument, NotFound
from app.pms.events import EventBus, EventKind, TransitionEvent, stage_event
from app.pms.models import Actor
from app.pms.modules.records.corrections import require_text
from app.pms.rbac import ActorContext

logger = logging.getLogger(__name__)


def normalize_email(email: Any) -> str:
    if not isinstance(email, str):
        raise InvalidArgument("email is required.")
    email = email.strip().lower()
    local, _, domain = email.partition("@")
    if not local or "." not in domain or len(email) > 320:
        raise InvalidArgument("email is not a valid address.")
    return email


def context_for(actor: Actor) -> ActorContext:
    return ActorContext(
        id=actor.id,
        role=actor.role,
        verification_status=actor.verification_status,
        is_active=bool(actor.is_active),
    )


class ActorAdministration:
    def __init__(
        self,
        sessions: sessionmaker,
        bus: EventBus,
        *,
        store_retry_attempts: int = 3,
        store_retry_backoff_seconds: float = 0.2,
    ) -> None:
        self.sessions = sessions
        self.bus = bus
        self.store_retry_attempts = store_retry_attempts
        self.store_retry_backoff_seconds = store_retry_backoff_seconds

    @classmethod
    def from_config(cls, sessions: sessionmaker, bus: EventBus, config: dict) -> "ActorAdministration":
        return cls(
            sessions,
            bus,
            store_retry_attempts=int(config.get("STORE_RETRY_ATTEMPTS", 3)),
            store_retry_backoff_seconds=float(config.get("STORE_RETRY_BACKOFF_SECONDS", 0.2)),
        )

    def _store(self, fn):
        return with_store_retry(
            fn,
            attempts=self.store_retry_attempts,
            backoff_seconds=self.store_retry_backoff_seconds,
        )

    def register_actor(self, email: str, display_name: str | None, role: str) -> Actor:
        """New accounts start pending, administrators included."""
        email = normalize_email(email)
        if role not in ROLES:
            raise InvalidArgument(f"role must be one of {', '.join(sorted(ROLES))}.")
        display_name = (display_name or "").strip()[:255] or email

        actor, event = self._store(partial(self._register, email, display_name, role))
        logger.info("ACTORS: registered actor_id=%s role=%s", actor.id, actor.role)
        self.bus.publish(event)
        return actor

    def _register(self, email: str, display_name: str, role: str) -> tuple[Actor, TransitionEvent]:
        s: Session = self.sessions()
        try:
            if s.execute(select(Actor.id).where(Actor.email == email)).scalar_one_or_none() is not None:
                raise InvalidArgument("An account with this email already exists.")
            actor = Actor(
                email=email,
                display_name=display_name,
                role=role,
                verification_status=ACTOR_PENDING,
                is_active=True,
            )
            s.add(actor)
            s.flush()
            event = TransitionEvent.new(
                EventKind.ACTOR_REGISTERED,
                extra={"actor_id": actor.id, "email": email, "role": role},
            )
            stage_event(s, event)
            record_event(
                s,
                actor=None,
                action="actor.register",
                entity_type="Actor",
                entity_id=str(actor.id),
                metadata={"role": role, "event_id": event.event_id},
            )
            s.commit()
            return actor, event
        except IntegrityError:
            s.rollback()
            raise InvalidArgument("An account with this email already exists.") from None
        except Exception:
            s.rollback()
            raise
        finally:
            s.close()

    def verify_actor(self, ctx: ActorContext, actor_id: int) -> Actor:
        rbac.require(ctx, rbac.MANAGE_ACTORS)

        def change(actor: Actor) -> tuple[EventKind, dict[str, Any], str | None]:
            if actor.verification_status == ACTOR_VERIFIED:
                raise Conflict("Account is already verified.")
            actor.verification_status = ACTOR_VERIFIED
            actor.verified_by_actor_id = ctx.id
            actor.rejection_reason = None
            return EventKind.ACTOR_VERIFIED, {}, None

        return self._decide(ctx, actor_id, "actor.verify", change)

    def bulk_verify_actors(self, ctx: ActorContext, actor_ids: list[int]) -> dict[str, Any]:
        """
        Verify each account in its own transaction. One missing or already
        verified account does not stop the rest; it is reported under `skipped`
        with its error code.
        """
        rbac.require(ctx, rbac.MANAGE_ACTORS)
        if not isinstance(actor_ids, list) or not actor_ids:
            raise InvalidArgument("actor_ids must be a non-empty list.")
        if len(actor_ids) > BULK_VERIFY_LIMIT:
            raise InvalidArgument(f"At most {BULK_VERIFY_LIMIT} accounts per request.")
        if any(isinstance(i, bool) or not isinstance(i, int) for i in actor_ids):
            raise InvalidArgument("actor_ids must be integers.")

        verified: list[int] = []
        skipped: list[dict[str, Any]] = []
        for actor_id in dict.fromkeys(actor_ids):
            try:
                self.verify_actor(ctx, actor_id)
            except (NotFound, Conflict) as e:
                skipped.append({"actor_id": actor_id, "code": e.code})
                continue
            verified.append(actor_id)
        logger.info("ACTORS: bulk verify by=%s verified=%s skipped=%s", ctx.id, len(verified), len(skipped))
        return {"verified": verified, "skipped": skipped}

    def reject_actor(self, ctx: ActorContext, actor_id: int, reason: str) -> Actor:
        rbac.require(ctx, rbac.MANAGE_ACTORS)
        reason = require_text(reason, name="reason")
        if actor_id == ctx.id:
            raise InvalidArgument("Administrators cannot reject their own account.")

        def change(actor: Actor) -> tuple[EventKind, dict[str, Any], str | None]:
            if actor.verification_status == ACTOR_REJECTED:
                raise Conflict("Account is already rejected.")
            actor.verification_status = ACTOR_REJECTED
            actor.verified_by_actor_id = ctx.id
            actor.rejection_reason = reason
            return EventKind.ACTOR_REJECTED, {"reason": reason}, reason

        return self._decide(ctx, actor_id, "actor.reject", change)

    def _decide(self, ctx: ActorContext, actor_id: int, action: str, change) -> Actor:
        def _run() -> tuple[Actor, TransitionEvent]:
            s: Session = self.sessions()
            try:
                actor = s.get(Actor, actor_id)
                if actor is None:
                    raise NotFound("Actor not found.")
                before = actor.verification_status
                kind, extra, reason = change(actor)
                actor.updated_at = datetime.utcnow()
                event = TransitionEvent.new(kind, actor=ctx, extra={"actor_id": actor.id, **extra})
                stage_event(s, event)
                record_event(
                    s,
                    actor=ctx,
                    action=action,
                    entity_type="Actor",
                    entity_id=str(actor.id),
                    reason=reason,
                    metadata={"from": before, "to": actor.verification_status, "event_id": event.event_id},
                )
                s.commit()
                return actor, event
            except Exception:
                s.rollback()
                raise
            finally:
                s.close()

        actor, event = self._store(_run)
        logger.info("ACTORS: %s actor_id=%s by=%s", action, actor.id, ctx.id)
        self.bus.publish(event)
        return actor

    def set_active(self, ctx: ActorContext, actor_id: int, active: bool) -> Actor:
        rbac.require(ctx, rbac.MANAGE_ACTORS)
        if not isinstance(active, bool):
            raise InvalidArgument("active must be true or false.")
        if actor_id == ctx.id and not active:
            raise InvalidArgument("Administrators cannot disable their own account.")

        def _run() -> Actor:
            s: Session = self.sessions()
            try:
                actor = s.get(Actor, actor_id)
                if actor is None:
                    raise NotFound("Actor not found.")
                if actor.is_active != active:
                    actor.is_active = active
                    actor.updated_at = datetime.utcnow()
                    record_event(
                        s,
                        actor=ctx,
                        action="actor.enable" if active else "actor.disable",
                        entity_type="Actor",
                        entity_id=str(actor.id),
                    )
                    s.commit()
                return actor
            except Exception:
                s.rollback()
                raise
            finally:
                s.close()

        return self._store(_run)

    def list_actors(self, ctx: ActorContext, *, role: str | None = None, status: str | None = None) -> list[Actor]:
        rbac.require(ctx, rbac.MANAGE_ACTORS)
        if role is not None and role not in ROLES:
            raise InvalidArgument(f"Unknown role {role!r}.")
        if status is not None and status not in ACTOR_STATUSES:
            raise InvalidArgument(f"Unknown verification status {status!r}.")

        def _list() -> list[Actor]:
            s: Session = self.sessions()
            try:
                stmt = select(Actor)
                if role is not None:
                    stmt = stmt.where(Actor.role == role)
                if status is not None:
                    stmt = stmt.where(Actor.verification_status == status)
                return list(s.execute(stmt.order_by(Actor.created_at.desc(), Actor.id.desc())).scalars().all())
            finally:
                s.close()

        return self._store(_list)

    def actor_statistics(self, ctx: ActorContext) -> dict[str, Any]:
        rbac.require(ctx, rbac.MANAGE_ACTORS)

        def _stats() -> dict[str, Any]:
            s: Session = self.sessions()
            try:
                by_role = {r: {st: 0 for st in sorted(ACTOR_STATUSES)} for r in sorted(ROLES)}
                rows = s.execute(
                    select(Actor.role, Actor.verification_status, func.count(Actor.id)).group_by(
                        Actor.role, Actor.verification_status
                    )
                ).all()
                for r, st, n in rows:
                    by_role.setdefault(r, {})[st] = int(n)
                inactive = int(
                    s.execute(select(func.count(Actor.id)).where(Actor.is_active.is_(False))).scalar_one()
                )
                total = sum(sum(v.values()) for v in by_role.values())
                pending = sum(v.get(ACTOR_PENDING, 0) for v in by_role.values())
                return {"total": total, "pending": pending, "inactive": inactive, "by_role": by_role}
            finally:
                s.close()

        return self._store(_stats)
