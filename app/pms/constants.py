"""
Central constants for the PMS application.
"""
from __future__ import annotations

# Actor roles
ROLE_DATA_ENTRY = "data-entry"
ROLE_CLINICIAN = "clinician"
ROLE_SUBJECT = "subject"
ROLE_ADMINISTRATOR = "administrator"
ROLES = frozenset({ROLE_DATA_ENTRY, ROLE_CLINICIAN, ROLE_SUBJECT, ROLE_ADMINISTRATOR})

# Actor verification status (set by administrators)
ACTOR_PENDING = "pending"
ACTOR_VERIFIED = "verified"
ACTOR_REJECTED = "rejected"
ACTOR_STATUSES = frozenset({ACTOR_PENDING, ACTOR_VERIFIED, ACTOR_REJECTED})

# Record status
RECORD_PENDING = "pending"
RECORD_VERIFIED = "verified"
RECORD_CORRECTION_REQUESTED = "correction_requested"
RECORD_REJECTED = "rejected"
RECORD_STATUSES = frozenset({RECORD_PENDING, RECORD_VERIFIED, RECORD_CORRECTION_REQUESTED, RECORD_REJECTED})

# Correction request status; approved/rejected are terminal
CORRECTION_PENDING = "pending"
CORRECTION_APPROVED = "approved"
CORRECTION_REJECTED = "rejected"
CORRECTION_STATUSES = frozenset({CORRECTION_PENDING, CORRECTION_APPROVED, CORRECTION_REJECTED})

# Notification priority
PRIORITY_LOW = "low"
PRIORITY_MEDIUM = "medium"
PRIORITY_HIGH = "high"
PRIORITY_URGENT = "urgent"
PRIORITIES = frozenset({PRIORITY_LOW, PRIORITY_MEDIUM, PRIORITY_HIGH, PRIORITY_URGENT})

# Outbox status
OUTBOX_PENDING = "pending"
OUTBOX_DISPATCHED = "dispatched"
OUTBOX_FAILED = "failed"

# Record fields managed by the lifecycle; domain patches may not touch them
RESERVED_FIELD_KEYS = frozenset(
    {
        "id",
        "subject_id",
        "clinician_id",
        "entered_by",
        "status",
        "has_active_correction",
        "version",
        "correction_requests",
    }
)

MAX_REASON_LENGTH = 2000
BULK_VERIFY_LIMIT = 200
