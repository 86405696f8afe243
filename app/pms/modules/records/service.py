"""
Record lifecycle service.

State machine over Record.status:

    (submit) -> pending
    pending -> verified                    verify / edit_and_verify
    pending -> rejected                    reject_record
    verified -> correction_requested       request_correction
    correction_requested -> verified       resolve_correction (approve or reject)

Concurrency: there is no lock. Each transition reads (status, version), checks
its guards, then commits with a conditional UPDATE on both values
(`compare_and_set`). If another writer committed first the UPDATE matches no row;
the transition re-reads and, when the record has moved to another state, fails
with Conflict. The caller must re-fetch and decide again. After
`max_attempts` lost races the operation also fails with Conflict.

Everything one transition writes (record row, correction request, audit row,
outbox event) commits in one transaction. The event is published to the bus
only after that commit.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from typing import Any, Callable

from sqlalchemy import false, func, select, update
from sqlalchemy.orm import Session, sessionmaker

from app.pms import rbac
from app.pms.audit import record_event
from app.pms.constants import (
    ACTOR_VERIFIED,
    CORRECTION_PENDING,
    CORRECTION_STATUSES,
    RECORD_CORRECTION_REQUESTED,
    RECORD_PENDING,
    RECORD_REJECTED,
    RECORD_STATUSES,
    RECORD_VERIFIED,
    ROLE_ADMINISTRATOR,
    ROLE_CLINICIAN,
    ROLE_DATA_ENTRY,
    ROLE_SUBJECT,
)
from app.pms.db import with_store_retry
from app.pms.errors import AlreadyPending, Conflict, Forbidden, InvalidArgument, NotFound
from app.pms.events import EventBus, EventKind, TransitionEvent, stage_event
from app.pms.models import Actor
from app.pms.rbac import ActorContext, ownership_of

from . import corrections
from .models import CorrectionRequest, Record

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Decision:
    approved: bool
    response: str
    patch: dict[str, Any] | None = None


@dataclass
class _Plan:
    """What one transition attempt will write if its compare-and-set wins."""

    values: dict[str, Any]
    event_kind: EventKind
    audit_action: str
    reason: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)
    # Runs after the compare-and-set succeeded, inside the same transaction.
    after_cas: Callable[[Session, Record], dict[str, Any]] | None = None


@dataclass
class _Committed:
    record: Record
    event: TransitionEvent


def record_ref(record: Record) -> dict[str, Any]:
    """Event-safe view of a record: ids and state only, never clinical fields."""
    return {
        "id": record.id,
        "subject_id": record.subject_id,
        "clinician_id": record.clinician_id,
        "entered_by": record.entered_by,
        "status": record.status,
        "has_active_correction": record.has_active_correction,
        "version": record.version,
    }


def compare_and_set(
    s: Session,
    record_id: int,
    *,
    expected_status: str,
    expected_version: int,
    values: dict[str, Any],
) -> bool:
    """
    Conditionally write `values` to the record. Succeeds only if the stored
    status and version still equal what the caller read; bumps the version.
    """
    stmt = (
        update(Record)
        .where(
            Record.id == record_id,
            Record.status == expected_status,
            Record.version == expected_version,
        )
        .values(version=expected_version + 1, updated_at=datetime.utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    result = s.execute(stmt)
    return result.rowcount == 1


def count_pending_requests(s: Session, record_id: int, *, exclude_request_id: int | None = None) -> int:
    stmt = select(func.count(CorrectionRequest.id)).where(
        CorrectionRequest.record_id == record_id,
        CorrectionRequest.status == CORRECTION_PENDING,
    )
    if exclude_request_id is not None:
        stmt = stmt.where(CorrectionRequest.id != exclude_request_id)
    return int(s.execute(stmt).scalar_one())


def _require_enabled(ctx: ActorContext | None) -> ActorContext:
    if ctx is None or not ctx.is_active or ctx.verification_status != ACTOR_VERIFIED:
        raise Forbidden()
    return ctx


def _load_fully(record: Record) -> Record:
    # Touch everything the caller may read after the session closes.
    list(record.correction_requests or [])
    return record


class RecordLifecycle:
    def __init__(
        self,
        sessions: sessionmaker,
        bus: EventBus,
        *,
        max_attempts: int = 3,
        store_retry_attempts: int = 3,
        store_retry_backoff_seconds: float = 0.2,
    ) -> None:
        self.sessions = sessions
        self.bus = bus
        self.max_attempts = max(1, max_attempts)
        self.store_retry_attempts = store_retry_attempts
        self.store_retry_backoff_seconds = store_retry_backoff_seconds

    @classmethod
    def from_config(cls, sessions: sessionmaker, bus: EventBus, config: dict) -> "RecordLifecycle":
        return cls(
            sessions,
            bus,
            max_attempts=int(config.get("LIFECYCLE_MAX_ATTEMPTS", 3)),
            store_retry_attempts=int(config.get("STORE_RETRY_ATTEMPTS", 3)),
            store_retry_backoff_seconds=float(config.get("STORE_RETRY_BACKOFF_SECONDS", 0.2)),
        )

    def _store(self, fn: Callable[[], Any]) -> Any:
        return with_store_retry(
            fn,
            attempts=self.store_retry_attempts,
            backoff_seconds=self.store_retry_backoff_seconds,
        )

    # ------------------------------------------------------------------
    # Transition machinery
    # ------------------------------------------------------------------

    def _transition(
        self,
        ctx: ActorContext,
        record_id: int,
        *,
        op: str,
        from_status: str,
        plan_fn: Callable[[Session, Record], _Plan],
    ) -> Record:
        for attempt in range(self.max_attempts):
            outcome = self._store(partial(self._attempt, ctx, record_id, from_status, plan_fn, attempt > 0))
            if outcome is not None:
                logger.info(
                    "LIFECYCLE: %s committed record_id=%s status=%s version=%s actor_id=%s event_id=%s",
                    op,
                    record_id,
                    outcome.record.status,
                    outcome.record.version,
                    ctx.id,
                    outcome.event.event_id,
                )
                self.bus.publish(outcome.event)
                return outcome.record
            logger.info(
                "LIFECYCLE: %s lost compare-and-set record_id=%s attempt=%s/%s",
                op,
                record_id,
                attempt + 1,
                self.max_attempts,
            )
        raise Conflict()

    def _attempt(
        self,
        ctx: ActorContext,
        record_id: int,
        from_status: str,
        plan_fn: Callable[[Session, Record], _Plan],
        retrying: bool,
    ) -> _Committed | None:
        s: Session = self.sessions()
        try:
            record = s.get(Record, record_id)
            if record is None:
                raise NotFound("Record not found.")
            if retrying and record.status != from_status:
                # The caller was already authorized on the first read; the record
                # has since been moved by a concurrent writer.
                raise Conflict()

            plan = plan_fn(s, record)
            if record.status != from_status:
                raise Conflict(f"Record is {record.status}; this action requires {from_status}.")

            expected_version = record.version
            if not compare_and_set(
                s,
                record.id,
                expected_status=from_status,
                expected_version=expected_version,
                values=plan.values,
            ):
                s.rollback()
                return None

            extra = dict(plan.extra)
            if plan.after_cas is not None:
                extra.update(plan.after_cas(s, record) or {})
            s.flush()

            s.expire(record)
            event = TransitionEvent.new(plan.event_kind, actor=ctx, record=record_ref(record), extra=extra)
            stage_event(s, event)
            record_event(
                s,
                actor=ctx,
                action=plan.audit_action,
                entity_type="Record",
                entity_id=str(record.id),
                reason=plan.reason,
                metadata={
                    "from": from_status,
                    "to": record.status,
                    "version": record.version,
                    "event_id": event.event_id,
                    **{k: v for k, v in extra.items() if k != "response"},
                },
            )
            _load_fully(record)
            s.commit()
            return _Committed(record=record, event=event)
        except Exception:
            s.rollback()
            raise
        finally:
            s.close()

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def submit(self, ctx: ActorContext, *, subject_id: int, clinician_id: int, fields: dict[str, Any]) -> Record:
        rbac.require(ctx, rbac.CREATE)
        clean = corrections.validate_patch(fields, name="fields")
        committed = self._store(partial(self._insert, ctx, subject_id, clinician_id, clean))
        logger.info(
            "LIFECYCLE: submit committed record_id=%s clinician_id=%s actor_id=%s event_id=%s",
            committed.record.id,
            clinician_id,
            ctx.id,
            committed.event.event_id,
        )
        self.bus.publish(committed.event)
        return committed.record

    def _insert(self, ctx: ActorContext, subject_id: int, clinician_id: int, fields: dict[str, Any]) -> _Committed:
        s: Session = self.sessions()
        try:
            subject = s.get(Actor, subject_id)
            if subject is None or subject.role != ROLE_SUBJECT:
                raise InvalidArgument("subject_id does not refer to a record subject.")
            clinician = s.get(Actor, clinician_id)
            if (
                clinician is None
                or clinician.role != ROLE_CLINICIAN
                or clinician.verification_status != ACTOR_VERIFIED
                or not clinician.is_active
            ):
                raise InvalidArgument("clinician_id does not refer to an active, verified clinician.")

            record = Record(
                subject_id=subject.id,
                clinician_id=clinician.id,
                entered_by=ctx.id,
                status=RECORD_PENDING,
                has_active_correction=False,
                fields=fields,
                version=1,
            )
            s.add(record)
            s.flush()

            event = TransitionEvent.new(EventKind.RECORD_CREATED, actor=ctx, record=record_ref(record))
            stage_event(s, event)
            record_event(
                s,
                actor=ctx,
                action="record.create",
                entity_type="Record",
                entity_id=str(record.id),
                metadata={"subject_id": subject.id, "clinician_id": clinician.id, "event_id": event.event_id},
            )
            _load_fully(record)
            s.commit()
            return _Committed(record=record, event=event)
        except Exception:
            s.rollback()
            raise
        finally:
            s.close()

    def verify(self, ctx: ActorContext, record_id: int) -> Record:
        def plan(s: Session, record: Record) -> _Plan:
            rbac.require(ctx, rbac.VERIFY, ownership_of(record))
            return _Plan(
                values={"status": RECORD_VERIFIED, "verified_by": ctx.id, "verified_at": datetime.utcnow()},
                event_kind=EventKind.RECORD_VERIFIED,
                audit_action="record.verify",
                extra={"edited_fields": []},
            )

        return self._transition(ctx, record_id, op="verify", from_status=RECORD_PENDING, plan_fn=plan)

    def edit_and_verify(self, ctx: ActorContext, record_id: int, patch: dict[str, Any]) -> Record:
        clean = corrections.validate_patch(patch, name="patch")

        def plan(s: Session, record: Record) -> _Plan:
            rbac.require(ctx, rbac.EDIT_AND_VERIFY, ownership_of(record))
            return _Plan(
                values={
                    "status": RECORD_VERIFIED,
                    "fields": corrections.apply_patch(record.fields, clean),
                    "verified_by": ctx.id,
                    "verified_at": datetime.utcnow(),
                },
                event_kind=EventKind.RECORD_VERIFIED,
                audit_action="record.edit_and_verify",
                extra={"edited_fields": sorted(clean)},
            )

        return self._transition(ctx, record_id, op="edit_and_verify", from_status=RECORD_PENDING, plan_fn=plan)

    def reject_record(self, ctx: ActorContext, record_id: int, reason: str) -> Record:
        reason = corrections.require_text(reason, name="reason")

        def plan(s: Session, record: Record) -> _Plan:
            # Same ownership rule as verification: only the assigned clinician (or an administrator).
            rbac.require(ctx, rbac.VERIFY, ownership_of(record))
            return _Plan(
                values={"status": RECORD_REJECTED, "rejection_reason": reason},
                event_kind=EventKind.RECORD_REJECTED,
                audit_action="record.reject",
                reason=reason,
                extra={"reason": reason},
            )

        return self._transition(ctx, record_id, op="reject_record", from_status=RECORD_PENDING, plan_fn=plan)

    def request_correction(
        self,
        ctx: ActorContext,
        record_id: int,
        reason: str,
        requested_changes: dict[str, Any] | None = None,
    ) -> Record:
        """Returns the record; the new request is the last entry of `record.correction_requests`."""
        reason = corrections.require_text(reason, name="reason")
        changes = None
        if requested_changes is not None:
            changes = corrections.validate_patch(requested_changes, name="requested_changes", allow_empty=True)

        def plan(s: Session, record: Record) -> _Plan:
            ownership = ownership_of(record)
            if not rbac.authorize(ctx, rbac.REQUEST_CORRECTION, ownership):
                # Only the record's own subject learns that a request is already open.
                if record.has_active_correction and rbac.authorize(
                    ctx, rbac.REQUEST_CORRECTION, rbac.ResourceOwnership(subject_id=record.subject_id, status=RECORD_VERIFIED)
                ):
                    raise AlreadyPending()
                raise Forbidden()
            if record.has_active_correction or count_pending_requests(s, record.id) > 0:
                raise AlreadyPending()

            def create_request(s: Session, record: Record) -> dict[str, Any]:
                cr = CorrectionRequest(
                    record_id=record.id,
                    requested_by=ctx.id,
                    reason=reason,
                    requested_changes=changes or None,
                    status=CORRECTION_PENDING,
                )
                s.add(cr)
                s.flush()
                return {"request_id": cr.id}

            return _Plan(
                values={"status": RECORD_CORRECTION_REQUESTED, "has_active_correction": True},
                event_kind=EventKind.CORRECTION_REQUESTED,
                audit_action="correction.request",
                reason=reason,
                extra={"reason": reason, "requested_fields": sorted(changes or {})},
                after_cas=create_request,
            )

        return self._transition(
            ctx, record_id, op="request_correction", from_status=RECORD_VERIFIED, plan_fn=plan
        )

    def resolve_correction(
        self,
        ctx: ActorContext,
        request_id: int,
        decision: Decision,
        *,
        record_id: int | None = None,
    ) -> Record:
        if not isinstance(decision.approved, bool):
            raise InvalidArgument("decision.approved must be true or false.")
        response = corrections.require_text(decision.response, name="response")
        if decision.approved:
            patch = corrections.validate_patch(decision.patch, name="patch", allow_empty=True)
        elif decision.patch:
            raise InvalidArgument("A field patch can only be applied when approving.")
        else:
            patch = {}

        owning_record_id = self._store(partial(self._record_id_for_request, request_id))
        if owning_record_id is None or (record_id is not None and record_id != owning_record_id):
            raise NotFound("Correction request not found.")

        def plan(s: Session, record: Record) -> _Plan:
            request = s.get(CorrectionRequest, request_id)
            if request is None or request.record_id != record.id:
                raise NotFound("Correction request not found.")
            action = rbac.APPROVE_CORRECTION if decision.approved else rbac.REJECT_CORRECTION
            rbac.require(ctx, action, ownership_of(record))

            if decision.approved:
                new_fields = corrections.approve(s, record, request, actor=ctx, response=response, patch=patch)
            else:
                new_fields = corrections.reject(s, record, request, actor=ctx, response=response)

            # Recompute from storage rather than trusting the flag.
            still_pending = count_pending_requests(s, record.id, exclude_request_id=request.id) > 0
            return _Plan(
                values={
                    "status": RECORD_CORRECTION_REQUESTED if still_pending else RECORD_VERIFIED,
                    "has_active_correction": still_pending,
                    "fields": new_fields,
                },
                event_kind=EventKind.CORRECTION_APPROVED if decision.approved else EventKind.CORRECTION_REJECTED,
                audit_action="correction.approve" if decision.approved else "correction.reject",
                reason=response,
                extra={
                    "request_id": request.id,
                    "response": response,
                    "applied_fields": sorted(patch) if decision.approved else [],
                },
            )

        return self._transition(
            ctx,
            owning_record_id,
            op="resolve_correction",
            from_status=RECORD_CORRECTION_REQUESTED,
            plan_fn=plan,
        )

    def _record_id_for_request(self, request_id: int) -> int | None:
        s: Session = self.sessions()
        try:
            return s.execute(
                select(CorrectionRequest.record_id).where(CorrectionRequest.id == request_id)
            ).scalar_one_or_none()
        finally:
            s.close()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_record(self, ctx: ActorContext, record_id: int) -> Record:
        return self._store(partial(self._get_record, ctx, record_id))

    def _get_record(self, ctx: ActorContext, record_id: int) -> Record:
        s: Session = self.sessions()
        try:
            record = s.get(Record, record_id)
            # Invisible and missing look the same to the caller.
            if record is None or not rbac.can_view(ctx, ownership_of(record)):
                raise NotFound("Record not found.")
            return _load_fully(record)
        finally:
            s.close()

    def list_records(self, ctx: ActorContext, *, status: str | None = None) -> list[Record]:
        _require_enabled(ctx)
        if status is not None and status not in RECORD_STATUSES:
            raise InvalidArgument(f"Unknown record status {status!r}.")
        return self._store(partial(self._list_records, ctx, status))

    def _list_records(self, ctx: ActorContext, status: str | None) -> list[Record]:
        s: Session = self.sessions()
        try:
            stmt = _visible_records(ctx).order_by(Record.created_at.desc(), Record.id.desc())
            if status is not None:
                stmt = stmt.where(Record.status == status)
            rows = s.execute(stmt).scalars().all()
            return [_load_fully(r) for r in rows if rbac.can_view(ctx, ownership_of(r))]
        finally:
            s.close()

    def get_correction_request(self, ctx: ActorContext, request_id: int) -> CorrectionRequest:
        return self._store(partial(self._get_correction_request, ctx, request_id))

    def _get_correction_request(self, ctx: ActorContext, request_id: int) -> CorrectionRequest:
        s: Session = self.sessions()
        try:
            cr = s.get(CorrectionRequest, request_id)
            if cr is None or not _can_see_request(ctx, cr):
                raise NotFound("Correction request not found.")
            return cr
        finally:
            s.close()

    def list_correction_requests(self, ctx: ActorContext, *, status: str | None = None) -> list[CorrectionRequest]:
        _require_enabled(ctx)
        if ctx.role == ROLE_DATA_ENTRY:
            raise Forbidden()
        if status is not None and status not in CORRECTION_STATUSES:
            raise InvalidArgument(f"Unknown correction status {status!r}.")
        return self._store(partial(self._list_correction_requests, ctx, status))

    def _list_correction_requests(self, ctx: ActorContext, status: str | None) -> list[CorrectionRequest]:
        s: Session = self.sessions()
        try:
            stmt = select(CorrectionRequest).join(Record, Record.id == CorrectionRequest.record_id)
            if ctx.role == ROLE_SUBJECT:
                stmt = stmt.where(CorrectionRequest.requested_by == ctx.id)
            elif ctx.role == ROLE_CLINICIAN:
                stmt = stmt.where(Record.clinician_id == ctx.id)
            elif ctx.role != ROLE_ADMINISTRATOR:
                raise Forbidden()
            if status is not None:
                stmt = stmt.where(CorrectionRequest.status == status)
            stmt = stmt.order_by(CorrectionRequest.created_at.desc(), CorrectionRequest.id.desc())
            return list(s.execute(stmt).scalars().all())
        finally:
            s.close()

    def dashboard_stats(self, ctx: ActorContext) -> dict[str, Any]:
        _require_enabled(ctx)
        return self._store(partial(self._dashboard_stats, ctx))

    def _dashboard_stats(self, ctx: ActorContext) -> dict[str, Any]:
        s: Session = self.sessions()
        try:
            visible = _visible_records(ctx).subquery()
            by_status = {st: 0 for st in sorted(RECORD_STATUSES)}
            for st, n in s.execute(select(visible.c.status, func.count()).group_by(visible.c.status)).all():
                by_status[st] = int(n)

            pending_corrections = 0
            if ctx.role in (ROLE_CLINICIAN, ROLE_ADMINISTRATOR, ROLE_SUBJECT):
                stmt = (
                    select(func.count(CorrectionRequest.id))
                    .join(Record, Record.id == CorrectionRequest.record_id)
                    .where(CorrectionRequest.status == CORRECTION_PENDING)
                )
                if ctx.role == ROLE_CLINICIAN:
                    stmt = stmt.where(Record.clinician_id == ctx.id)
                elif ctx.role == ROLE_SUBJECT:
                    stmt = stmt.where(CorrectionRequest.requested_by == ctx.id)
                pending_corrections = int(s.execute(stmt).scalar_one())

            return {
                "total_records": sum(by_status.values()),
                "records_by_status": by_status,
                "pending_corrections": pending_corrections,
            }
        finally:
            s.close()


def _visible_records(ctx: ActorContext):
    """SELECT over the records this actor may see (viewAll or viewOwn)."""
    stmt = select(Record)
    if rbac.authorize(ctx, rbac.VIEW_ALL):
        return stmt
    if ctx.role == ROLE_SUBJECT:
        return stmt.where(Record.subject_id == ctx.id, Record.status == RECORD_VERIFIED)
    if ctx.role == ROLE_CLINICIAN:
        return stmt.where(Record.clinician_id == ctx.id)
    if ctx.role == ROLE_DATA_ENTRY:
        return stmt.where(Record.entered_by == ctx.id)
    return stmt.where(false())


def _can_see_request(ctx: ActorContext, cr: CorrectionRequest) -> bool:
    if rbac.authorize(ctx, rbac.VIEW_ALL):
        return True
    if ctx.role == ROLE_SUBJECT:
        return rbac.can_view(ctx, ownership_of(cr.record)) or (
            cr.requested_by == ctx.id and ctx.is_active and ctx.verification_status == ACTOR_VERIFIED
        )
    if ctx.role == ROLE_CLINICIAN:
        return rbac.can_view(ctx, ownership_of(cr.record))
    return False
