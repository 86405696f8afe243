from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.pms.constants import CORRECTION_PENDING, RECORD_PENDING
from app.pms.models import Base


class Record(Base):
    __tablename__ = "records"
    __table_args__ = (
        Index("idx_records_subject", "subject_id"),
        Index("idx_records_clinician_status", "clinician_id", "status"),
        Index("idx_records_entered_by", "entered_by"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    subject_id: Mapped[int] = mapped_column(ForeignKey("actors.id", ondelete="RESTRICT"), nullable=False)
    clinician_id: Mapped[int] = mapped_column(ForeignKey("actors.id", ondelete="RESTRICT"), nullable=False)
    entered_by: Mapped[int] = mapped_column(ForeignKey("actors.id", ondelete="RESTRICT"), nullable=False)

    # pending -> verified <-> correction_requested; pending -> rejected
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=RECORD_PENDING)
    has_active_correction: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Domain fields are opaque to the lifecycle.
    fields: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    # Bumped by every committed transition; compare-and-set token together with status.
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    verified_by: Mapped[int | None] = mapped_column(ForeignKey("actors.id", ondelete="SET NULL"), nullable=True)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(String(2000), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    correction_requests: Mapped[list["CorrectionRequest"]] = relationship(
        "CorrectionRequest",
        back_populates="record",
        lazy="selectin",
        order_by="CorrectionRequest.id",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "subject_id": self.subject_id,
            "clinician_id": self.clinician_id,
            "entered_by": self.entered_by,
            "status": self.status,
            "has_active_correction": self.has_active_correction,
            "fields": dict(self.fields or {}),
            "version": self.version,
            "verified_by": self.verified_by,
            "verified_at": self.verified_at.isoformat() if self.verified_at else None,
            "rejection_reason": self.rejection_reason,
            "correction_requests": [cr.id for cr in self.correction_requests or []],
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class CorrectionRequest(Base):
    """
    Subject-initiated request to amend a verified record.
    approved/rejected are terminal; at most one pending request per record.
    """

    __tablename__ = "correction_requests"
    __table_args__ = (
        Index("idx_correction_requests_record_status", "record_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    record_id: Mapped[int] = mapped_column(ForeignKey("records.id", ondelete="CASCADE"), nullable=False)
    requested_by: Mapped[int] = mapped_column(ForeignKey("actors.id", ondelete="RESTRICT"), nullable=False)

    reason: Mapped[str] = mapped_column(String(2000), nullable=False)
    requested_changes: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default=CORRECTION_PENDING)
    processed_by: Mapped[int | None] = mapped_column(ForeignKey("actors.id", ondelete="SET NULL"), nullable=True)
    response: Mapped[str | None] = mapped_column(String(2000), nullable=True)
    applied_changes: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    record: Mapped[Record] = relationship("Record", back_populates="correction_requests", lazy="selectin")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "record_id": self.record_id,
            "requested_by": self.requested_by,
            "reason": self.reason,
            "requested_changes": self.requested_changes,
            "status": self.status,
            "processed_by": self.processed_by,
            "response": self.response,
            "applied_changes": self.applied_changes,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
        }
