"""
Notification dispatch.

`NotificationDispatcher.handle` is subscribed to the event bus. For each
committed TransitionEvent it resolves the counter-party (or, for registrations,
every verified administrator at dispatch time) and inserts one Notification per
recipient. Redelivery of the same event is a no-op per recipient: rows are keyed
by (event_id, recipient_id).

Dispatch runs after the transition committed, on a small worker pool owned by
the dispatcher, so the caller of the transition never waits for it. A failure
is logged and recorded on the outbox row. `retry_pending` re-dispatches outbox
rows left pending.
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_for
from dataclasses import dataclass
from datetime import datetime
from functools import partial

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from app.pms.constants import (
    ACTOR_VERIFIED,
    OUTBOX_DISPATCHED,
    OUTBOX_FAILED,
    OUTBOX_PENDING,
    PRIORITY_HIGH,
    PRIORITY_MEDIUM,
    ROLE_ADMINISTRATOR,
)
from app.pms.db import with_store_retry
from app.pms.errors import NotFound
from app.pms.events import EventKind, TransitionEvent
from app.pms.models import Actor, OutboxEvent
from app.pms.rbac import ActorContext

from .models import Notification

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Template:
    type: str
    priority: str
    action_required: bool
    title: str
    message: str


TEMPLATES: dict[EventKind, Template] = {
    EventKind.RECORD_CREATED: Template(
        "new_record", PRIORITY_HIGH, True,
        "New record to verify",
        "Record #{record_id} was submitted and is waiting for your verification.",
    ),
    EventKind.RECORD_VERIFIED: Template(
        "record_verified", PRIORITY_MEDIUM, False,
        "Record verified",
        "Record #{record_id} has been verified and is now available to you.",
    ),
    EventKind.RECORD_REJECTED: Template(
        "record_rejected", PRIORITY_HIGH, True,
        "Record rejected",
        "Record #{record_id} was rejected: {reason}",
    ),
    EventKind.CORRECTION_REQUESTED: Template(
        "correction_request", PRIORITY_HIGH, True,
        "Correction requested",
        "A correction was requested for record #{record_id}: {reason}",
    ),
    EventKind.CORRECTION_APPROVED: Template(
        "correction_approved", PRIORITY_MEDIUM, False,
        "Correction approved",
        "Your correction request for record #{record_id} was approved: {response}",
    ),
    EventKind.CORRECTION_REJECTED: Template(
        "correction_rejected", PRIORITY_MEDIUM, False,
        "Correction rejected",
        "Your correction request for record #{record_id} was rejected: {response}",
    ),
    EventKind.ACTOR_REGISTERED: Template(
        "verification_pending", PRIORITY_MEDIUM, True,
        "Account awaiting verification",
        "{email} registered as {role} and is waiting for verification.",
    ),
    EventKind.ACTOR_VERIFIED: Template(
        "account_verified", PRIORITY_MEDIUM, False,
        "Account verified",
        "Your account has been verified.",
    ),
    EventKind.ACTOR_REJECTED: Template(
        "account_rejected", PRIORITY_HIGH, False,
        "Account rejected",
        "Your account was not verified: {reason}",
    ),
}


class _SafeDict(dict):
    def __missing__(self, key: str) -> str:
        return ""


def render(template: Template, event: TransitionEvent) -> tuple[str, str]:
    values = _SafeDict(event.extra or {})
    if event.record:
        values["record_id"] = event.record.get("id")
    message = template.message.format_map(values).strip()
    return template.title, message[:1000]


class NotificationDispatcher:
    def __init__(
        self,
        sessions: sessionmaker,
        *,
        max_attempts: int = 5,
        list_limit: int = 50,
        workers: int = 2,
        store_retry_attempts: int = 3,
        store_retry_backoff_seconds: float = 0.2,
    ) -> None:
        self.sessions = sessions
        self.max_attempts = max(1, max_attempts)
        self.list_limit = list_limit
        self.workers = max(0, workers)
        self.store_retry_attempts = store_retry_attempts
        self.store_retry_backoff_seconds = store_retry_backoff_seconds
        self._executor: ThreadPoolExecutor | None = None
        self._inflight: set[Future] = set()
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, sessions: sessionmaker, config: dict) -> "NotificationDispatcher":
        return cls(
            sessions,
            max_attempts=int(config.get("NOTIFICATION_MAX_ATTEMPTS", 5)),
            list_limit=int(config.get("NOTIFICATION_LIST_LIMIT", 50)),
            workers=int(config.get("NOTIFICATION_WORKERS", 2)),
            store_retry_attempts=int(config.get("STORE_RETRY_ATTEMPTS", 3)),
            store_retry_backoff_seconds=float(config.get("STORE_RETRY_BACKOFF_SECONDS", 0.2)),
        )

    def _store(self, fn):
        return with_store_retry(
            fn,
            attempts=self.store_retry_attempts,
            backoff_seconds=self.store_retry_backoff_seconds,
        )

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def recipients(self, s: Session, event: TransitionEvent) -> list[tuple[int, str | None]]:
        """(recipient_id, recipient_role) pairs; recipient_role is set for role broadcasts."""
        kind = event.kind
        record = event.record or {}
        extra = event.extra or {}

        if kind == EventKind.RECORD_CREATED:
            ids = [record.get("clinician_id")]
        elif kind in (EventKind.RECORD_VERIFIED, EventKind.CORRECTION_APPROVED, EventKind.CORRECTION_REJECTED):
            ids = [record.get("subject_id")]
        elif kind == EventKind.RECORD_REJECTED:
            ids = [record.get("entered_by")]
        elif kind == EventKind.CORRECTION_REQUESTED:
            ids = [record.get("clinician_id")]
        elif kind in (EventKind.ACTOR_VERIFIED, EventKind.ACTOR_REJECTED):
            ids = [extra.get("actor_id")]
        elif kind == EventKind.ACTOR_REGISTERED:
            admin_ids = s.execute(
                select(Actor.id)
                .where(
                    Actor.role == ROLE_ADMINISTRATOR,
                    Actor.verification_status == ACTOR_VERIFIED,
                    Actor.is_active.is_(True),
                )
                .order_by(Actor.id)
            ).scalars().all()
            return [(int(i), ROLE_ADMINISTRATOR) for i in admin_ids]
        else:
            ids = []

        out = [(int(i), None) for i in ids if i is not None]
        if not out:
            logger.warning("DISPATCH: no recipient for kind=%s event_id=%s", kind.value, event.event_id)
        return out

    def dispatch(self, event: TransitionEvent) -> list[int]:
        """Insert the event's notifications. Returns ids of rows created by this call."""
        return self._store(partial(self._dispatch, event))

    def _dispatch(self, event: TransitionEvent) -> list[int]:
        template = TEMPLATES[event.kind]
        title, message = render(template, event)
        created: list[int] = []

        s: Session = self.sessions()
        try:
            for recipient_id, recipient_role in self.recipients(s, event):
                existing = s.execute(
                    select(Notification.id).where(
                        Notification.event_id == event.event_id,
                        Notification.recipient_id == recipient_id,
                    )
                ).scalar_one_or_none()
                if existing is not None:
                    continue
                try:
                    with s.begin_nested():
                        n = Notification(
                            event_id=event.event_id,
                            recipient_id=recipient_id,
                            recipient_role=recipient_role,
                            type=template.type,
                            priority=template.priority,
                            action_required=template.action_required,
                            title=title,
                            message=message,
                            data=event.to_payload(),
                            read=False,
                        )
                        s.add(n)
                        s.flush()
                    created.append(n.id)
                except IntegrityError:
                    # A concurrent delivery of the same event got there first.
                    logger.info(
                        "DISPATCH: duplicate skipped event_id=%s recipient_id=%s", event.event_id, recipient_id
                    )
            s.commit()
        except Exception:
            s.rollback()
            raise
        finally:
            s.close()

        logger.info(
            "DISPATCH: kind=%s event_id=%s created=%s", event.kind.value, event.event_id, len(created)
        )
        return created

    # ------------------------------------------------------------------
    # Worker pool
    # ------------------------------------------------------------------

    def handle(self, event: TransitionEvent) -> None:
        """Bus subscriber. Queues delivery on the worker pool (inline when workers=0)."""
        if self.workers == 0:
            self.deliver(event)
            return
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="pms-dispatch")
            future = self._executor.submit(self.deliver, event)
            self._inflight.add(future)
        future.add_done_callback(self._forget)

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._inflight.discard(future)

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until queued deliveries finish. False if `timeout` expired first."""
        with self._lock:
            pending = set(self._inflight)
        _, not_done = wait_for(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)

    def reset_after_fork(self) -> None:
        # Worker threads do not survive fork; the child starts a fresh pool on demand.
        self._executor = None
        self._inflight = set()
        self._lock = threading.Lock()

    def deliver(self, event: TransitionEvent) -> bool:
        """Dispatch now and record the outcome on the outbox row."""
        try:
            self.dispatch(event)
        except Exception as e:
            logger.exception("DISPATCH: failed kind=%s event_id=%s", event.kind.value, event.event_id)
            self._mark_outbox(event.event_id, error=f"{type(e).__name__}: {e}")
            return False
        self._mark_outbox(event.event_id)
        return True

    def _mark_outbox(self, event_id: str, error: str | None = None) -> None:
        s: Session = self.sessions()
        try:
            row = s.execute(select(OutboxEvent).where(OutboxEvent.event_id == event_id)).scalar_one_or_none()
            if row is None:
                return
            row.attempts = (row.attempts or 0) + 1
            if error is None:
                row.status = OUTBOX_DISPATCHED
                row.dispatched_at = datetime.utcnow()
                row.last_error = None
            else:
                row.last_error = error[:1000]
                row.status = OUTBOX_FAILED if row.attempts >= self.max_attempts else OUTBOX_PENDING
            s.commit()
        except Exception:
            s.rollback()
            logger.exception("DISPATCH: could not update outbox event_id=%s", event_id)
        finally:
            s.close()

    def retry_pending(self, limit: int = 100) -> dict[str, int]:
        """Re-dispatch outbox rows still pending. Safe to run concurrently with live dispatch."""
        s: Session = self.sessions()
        try:
            rows = s.execute(
                select(OutboxEvent.payload)
                .where(OutboxEvent.status == OUTBOX_PENDING)
                .order_by(OutboxEvent.id)
                .limit(limit)
            ).scalars().all()
        finally:
            s.close()

        stats = {"attempted": 0, "dispatched": 0, "failed": 0}
        for payload in rows:
            stats["attempted"] += 1
            if self.deliver(TransitionEvent.from_payload(payload)):
                stats["dispatched"] += 1
            else:
                stats["failed"] += 1
        logger.info("DISPATCH: retry pass %s", stats)
        return stats

    # ------------------------------------------------------------------
    # Recipient operations
    # ------------------------------------------------------------------

    def list_for_recipient(
        self,
        ctx: ActorContext,
        *,
        unread_only: bool = False,
        notification_type: str | None = None,
        priority: str | None = None,
        limit: int | None = None,
    ) -> list[Notification]:
        limit = max(1, min(int(limit or self.list_limit), 500))

        def _list() -> list[Notification]:
            s: Session = self.sessions()
            try:
                stmt = select(Notification).where(Notification.recipient_id == ctx.id)
                if unread_only:
                    stmt = stmt.where(Notification.read.is_(False))
                if notification_type:
                    stmt = stmt.where(Notification.type == notification_type)
                if priority:
                    stmt = stmt.where(Notification.priority == priority)
                stmt = stmt.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit)
                return list(s.execute(stmt).scalars().all())
            finally:
                s.close()

        return self._store(_list)

    def unread_count(self, ctx: ActorContext) -> int:
        def _count() -> int:
            s: Session = self.sessions()
            try:
                return int(
                    s.execute(
                        select(func.count(Notification.id)).where(
                            Notification.recipient_id == ctx.id, Notification.read.is_(False)
                        )
                    ).scalar_one()
                )
            finally:
                s.close()

        return self._store(_count)

    def mark_read(self, ctx: ActorContext, notification_id: int) -> Notification:
        def _mark() -> Notification:
            s: Session = self.sessions()
            try:
                n = s.get(Notification, notification_id)
                # Someone else's notification looks the same as a missing one.
                if n is None or n.recipient_id != ctx.id:
                    raise NotFound("Notification not found.")
                if not n.read:
                    n.read = True
                    n.read_at = datetime.utcnow()
                    s.commit()
                return n
            except Exception:
                s.rollback()
                raise
            finally:
                s.close()

        return self._store(_mark)

    def mark_all_read(self, ctx: ActorContext) -> int:
        def _mark_all() -> int:
            s: Session = self.sessions()
            try:
                result = s.execute(
                    update(Notification)
                    .where(Notification.recipient_id == ctx.id, Notification.read.is_(False))
                    .values(read=True, read_at=datetime.utcnow())
                    .execution_options(synchronize_session=False)
                )
                s.commit()
                return int(result.rowcount or 0)
            except Exception:
                s.rollback()
                raise
            finally:
                s.close()

        return self._store(_mark_all)

