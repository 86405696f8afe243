"""
Transition events and the in-process event bus.

Every committed lifecycle or actor-administration change produces exactly one
TransitionEvent. The event is staged in the outbox inside the change's own
transaction (`stage_event`) and published to subscribers after commit
(`EventBus.publish`). Subscribers (notification dispatch, UI refresh hooks,
metrics) register independently; a failing subscriber never affects the
committed change or the other subscribers.
"""
from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy.orm import Session

from app.pms.models import OutboxEvent

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    RECORD_CREATED = "record_created"
    RECORD_VERIFIED = "record_verified"
    RECORD_REJECTED = "record_rejected"
    CORRECTION_REQUESTED = "correction_requested"
    CORRECTION_APPROVED = "correction_approved"
    CORRECTION_REJECTED = "correction_rejected"
    ACTOR_REGISTERED = "actor_registered"
    ACTOR_VERIFIED = "actor_verified"
    ACTOR_REJECTED = "actor_rejected"


@dataclass(frozen=True)
class TransitionEvent:
    kind: EventKind
    event_id: str
    actor: dict[str, Any] | None
    record: dict[str, Any] | None = None
    extra: dict[str, Any] = field(default_factory=dict)
    occurred_at: str = ""

    @classmethod
    def new(
        cls,
        kind: EventKind,
        *,
        actor=None,
        record: dict[str, Any] | None = None,
        extra: dict[str, Any] | None = None,
    ) -> "TransitionEvent":
        return cls(
            kind=kind,
            event_id=uuid.uuid4().hex,
            actor={"id": actor.id, "role": actor.role} if actor is not None else None,
            record=record,
            extra=dict(extra or {}),
            occurred_at=datetime.utcnow().isoformat(),
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "event_id": self.event_id,
            "actor": self.actor,
            "record": self.record,
            "extra": self.extra,
            "occurred_at": self.occurred_at,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "TransitionEvent":
        return cls(
            kind=EventKind(payload["kind"]),
            event_id=payload["event_id"],
            actor=payload.get("actor"),
            record=payload.get("record"),
            extra=dict(payload.get("extra") or {}),
            occurred_at=payload.get("occurred_at") or "",
        )


def stage_event(s: Session, event: TransitionEvent) -> OutboxEvent:
    """Persist the event alongside the change that produced it (same transaction)."""
    row = OutboxEvent(event_id=event.event_id, kind=event.kind.value, payload=event.to_payload())
    s.add(row)
    return row


Subscriber = Callable[[TransitionEvent], Any]


class EventBus:
    def __init__(self) -> None:
        self._subscribers: list[tuple[frozenset[EventKind] | None, Subscriber]] = []

    def subscribe(self, handler: Subscriber, kinds: Iterable[EventKind] | None = None) -> None:
        self._subscribers.append((frozenset(kinds) if kinds is not None else None, handler))

    def unsubscribe(self, handler: Subscriber) -> None:
        self._subscribers = [(k, h) for (k, h) in self._subscribers if h is not handler]

    def publish(self, event: TransitionEvent) -> None:
        for kinds, handler in list(self._subscribers):
            if kinds is not None and event.kind not in kinds:
                continue
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "EVENTS: subscriber %s failed for kind=%s event_id=%s",
                    getattr(handler, "__qualname__", repr(handler)),
                    event.kind.value,
                    event.event_id,
                )
