"""
Correction workflow: the sub-state-machine of one CorrectionRequest.

pending -> approved | rejected (both terminal). These functions run inside the
transaction opened by RecordLifecycle.resolve_correction; they never commit and
never write the Record row themselves. They return the record's new domain
fields so the lifecycle can write them with the same compare-and-set that moves
the record's status.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from app.pms.constants import (
    CORRECTION_APPROVED,
    CORRECTION_PENDING,
    CORRECTION_REJECTED,
    MAX_REASON_LENGTH,
    RESERVED_FIELD_KEYS,
)
from app.pms.errors import Conflict, InvalidArgument

from .models import CorrectionRequest, Record


def require_text(value: str | None, *, name: str) -> str:
    if value is not None and not isinstance(value, str):
        raise InvalidArgument(f"{name} must be a string.")
    text = (value or "").strip()
    if not text:
        raise InvalidArgument(f"{name} is required.")
    if len(text) > MAX_REASON_LENGTH:
        raise InvalidArgument(f"{name} must be at most {MAX_REASON_LENGTH} characters.")
    return text


def validate_patch(patch: Any, *, name: str = "Field patch", allow_empty: bool = False) -> dict[str, Any]:
    """
    A patch is a flat mapping of domain field name -> new value. Values are
    opaque; keys must be non-empty strings that do not name lifecycle fields.
    """
    if patch is None:
        patch = {}
    if not isinstance(patch, dict):
        raise InvalidArgument(f"{name} must be a JSON object.")
    if not patch and not allow_empty:
        raise InvalidArgument(f"{name} must not be empty.")
    clean: dict[str, Any] = {}
    for key, value in patch.items():
        if not isinstance(key, str) or not key.strip():
            raise InvalidArgument(f"{name} keys must be non-empty strings.")
        if key in RESERVED_FIELD_KEYS:
            raise InvalidArgument(f"Field {key!r} cannot be patched.")
        clean[key] = value
    return clean


def apply_patch(fields: dict[str, Any] | None, patch: dict[str, Any]) -> dict[str, Any]:
    merged = dict(fields or {})
    merged.update(patch)
    return merged


def _require_pending(request: CorrectionRequest) -> None:
    if request.status != CORRECTION_PENDING:
        # Terminal states are immutable.
        raise Conflict(f"Correction request {request.id} is already {request.status}.")


def approve(
    s: Session,
    record: Record,
    request: CorrectionRequest,
    *,
    actor,
    response: str,
    patch: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """
    Approve the request. With a patch the record's fields are replaced by the
    merged result; without one it is "approved in principle" and the fields are
    unchanged. Returns the record's new fields.
    """
    _require_pending(request)
    response = require_text(response, name="response")
    clean = validate_patch(patch, allow_empty=True)

    request.status = CORRECTION_APPROVED
    request.processed_by = actor.id
    request.processed_at = datetime.utcnow()
    request.response = response
    request.applied_changes = clean or None
    s.add(request)

    return apply_patch(record.fields, clean) if clean else dict(record.fields or {})


def reject(
    s: Session,
    record: Record,
    request: CorrectionRequest,
    *,
    actor,
    response: str,
) -> dict[str, Any]:
    """Reject the request; a response message is mandatory. Fields are unchanged."""
    _require_pending(request)
    response = require_text(response, name="response")

    request.status = CORRECTION_REJECTED
    request.processed_by = actor.id
    request.processed_at = datetime.utcnow()
    request.response = response
    s.add(request)

    return dict(record.fields or {})
