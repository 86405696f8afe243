from __future__ import annotations

from typing import Any

from flask import request

from app.pms.errors import InvalidArgument


def json_body() -> dict[str, Any]:
    """Request JSON body; empty dict when absent."""
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise InvalidArgument("Request body must be a JSON object.")
    return payload


def int_field(payload: dict[str, Any], name: str) -> int:
    value = payload.get(name)
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidArgument(f"{name} must be an integer.")
    return value
