from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from app.pms.constants import ACTOR_PENDING, OUTBOX_PENDING


class Base(DeclarativeBase):
    pass


class Actor(Base):
    """
    A party with one of the four roles. Rows are never deleted; administrators
    soft-disable them via is_active.
    """

    __tablename__ = "actors"
    __table_args__ = (
        Index("idx_actors_role_status", "role", "verification_status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    role: Mapped[str] = mapped_column(String(32), nullable=False)  # data-entry | clinician | subject | administrator
    verification_status: Mapped[str] = mapped_column(String(16), nullable=False, default=ACTOR_PENDING)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    rejection_reason: Mapped[str | None] = mapped_column(String(2000), nullable=True)
    verified_by_actor_id: Mapped[int | None] = mapped_column(ForeignKey("actors.id", ondelete="SET NULL"), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "display_name": self.display_name,
            "role": self.role,
            "verification_status": self.verification_status,
            "is_active": self.is_active,
            "rejection_reason": self.rejection_reason,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class AuditEvent(Base):
    """
    Append-only audit trail event.
    Written in the same transaction as the change it describes.
    """

    __tablename__ = "audit_events"
    __table_args__ = (
        UniqueConstraint("request_id", "id", name="uq_audit_request_id_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    actor_id: Mapped[int | None] = mapped_column(ForeignKey("actors.id", ondelete="SET NULL"), nullable=True)
    actor_role: Mapped[str | None] = mapped_column(String(32), nullable=True)

    action: Mapped[str] = mapped_column(String(128), nullable=False)  # e.g. "record.verify"
    entity_type: Mapped[str | None] = mapped_column(String(128), nullable=True)  # e.g. "Record"
    entity_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    reason: Mapped[str | None] = mapped_column(String(2000), nullable=True)
    metadata_json: Mapped[str | None] = mapped_column(Text, nullable=True)  # small JSON string


class OutboxEvent(Base):
    """
    Durable copy of a committed transition event, written in the transition's
    transaction. Dispatch marks it dispatched; failures leave it pending for
    out-of-band retry.
    """

    __tablename__ = "outbox_events"
    __table_args__ = (
        Index("idx_outbox_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    event_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    kind: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default=OUTBOX_PENDING)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    dispatched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)


# Ensure module models are imported so Base.metadata includes their tables.
# (Kept at bottom to avoid circular imports.)
from app.pms.modules.records.models import CorrectionRequest, Record  # noqa: E402,F401
from app.pms.modules.notifications.models import Notification  # noqa: E402,F401
