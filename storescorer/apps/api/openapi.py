from __future__ import annotations

from typing import Any

from storescorer.apps.api.response import API_VERSION, ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": API_VERSION},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {
                "example": _error_example(code=code, message=message, details=details),
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _response("Bad request", "INVALID_INPUT", "Please enter a valid domain"),
    422: _response("Validation error", "REQUEST_VALIDATION_ERROR", "Validation error"),
    500: _response("Internal server error", "INTERNAL_ERROR", "Internal server error"),
    503: _response("Service unavailable", "STORE_UNAVAILABLE", "Service unavailable"),
}

AUTH_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    401: _response("Unauthorized", "AUTH_UNAUTHORIZED", "Missing or invalid bearer token"),
}

RATE_LIMIT_RESPONSES: dict[int | str, dict[str, Any]] = {
    429: _response(
        "Rate limited",
        "RATE_LIMITED",
        "This domain has been audited recently. Try again in 24 hours.",
        details={"type": "domain", "limit": 3, "remaining": 0, "window_minutes": 1440},
    ),
}
