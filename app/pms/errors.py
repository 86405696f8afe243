"""
Error taxonomy for lifecycle operations.

Every failure surfaced to a caller is one of these. `retry` tells the client what
to do next:
- "do_not_retry": the request itself is wrong or not allowed
- "retry_with_fresh_read": another writer won the race; re-fetch and try again
- "retry_later": the store is temporarily unavailable
"""
from __future__ import annotations


class LifecycleError(RuntimeError):
    code = "error"
    retry = "do_not_retry"
    http_status = 400
    default_message = "Request failed."

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "retry": self.retry}


class Forbidden(LifecycleError):
    code = "forbidden"
    http_status = 403
    # Never say which rule failed.
    default_message = "Not authorized for this action."


class AlreadyPending(Forbidden):
    code = "already_pending"
    default_message = "A correction request for this record is already pending."


class NotFound(LifecycleError):
    code = "not_found"
    http_status = 404
    default_message = "Not found."


class InvalidArgument(LifecycleError):
    code = "invalid_argument"
    http_status = 400
    default_message = "Invalid argument."


class Conflict(LifecycleError):
    code = "conflict"
    retry = "retry_with_fresh_read"
    http_status = 409
    default_message = "The record changed concurrently; re-fetch and retry."


class Unavailable(LifecycleError):
    code = "unavailable"
    retry = "retry_later"
    http_status = 503
    default_message = "The record store is temporarily unavailable."
