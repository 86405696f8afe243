from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.pms.constants import PRIORITY_MEDIUM
from app.pms.models import Base


class Notification(Base):
    """
    Created only by the dispatcher; the recipient may mark it read, nothing else
    mutates it. One row per (event, recipient) so redelivery is a no-op.
    """

    __tablename__ = "notifications"
    __table_args__ = (
        UniqueConstraint("event_id", "recipient_id", name="uq_notification_event_recipient"),
        Index("idx_notifications_recipient_read", "recipient_id", "read"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    event_id: Mapped[str] = mapped_column(String(64), nullable=False)

    recipient_id: Mapped[int] = mapped_column(ForeignKey("actors.id", ondelete="CASCADE"), nullable=False)
    recipient_role: Mapped[str | None] = mapped_column(String(32), nullable=True)  # set for role broadcasts

    type: Mapped[str] = mapped_column(String(64), nullable=False)
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default=PRIORITY_MEDIUM)
    action_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    message: Mapped[str] = mapped_column(String(1000), nullable=False, default="")
    data: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_id": self.event_id,
            "recipient_id": self.recipient_id,
            "recipient_role": self.recipient_role,
            "type": self.type,
            "priority": self.priority,
            "action_required": self.action_required,
            "title": self.title,
            "message": self.message,
            "data": dict(self.data or {}),
            "read": self.read,
            "read_at": self.read_at.isoformat() if self.read_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
