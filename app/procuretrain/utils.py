from __future__ import annotations

from typing import Any

from flask import request


def json_body() -> dict[str, Any]:
    """Request JSON as a dict; arrays, scalars and malformed bodies read as empty."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def text_field(payload: dict[str, Any], key: str) -> str:
    """Stripped string value; non-string JSON values are coerced."""
    value = payload.get(key)
    if value is None:
        return ""
    return str(value).strip()
