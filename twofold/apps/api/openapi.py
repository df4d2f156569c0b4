from __future__ import annotations

from typing import Any

from twofold.apps.api.response import API_VERSION, ErrorEnvelope


def _error_response_doc(description: str, code: str, message: str) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {
                "example": {
                    "error": {"code": code, "message": message},
                    "meta": {"request_id": "req_example", "api_version": API_VERSION},
                }
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    401: _error_response_doc("Unauthorized", "AUTH_UNAUTHORIZED", "Missing principal header"),
    403: _error_response_doc("Forbidden", "AUTH_FORBIDDEN", "Manage capability required"),
    404: _error_response_doc("Not found", "NOT_FOUND", "Collection not found"),
    422: _error_response_doc("Validation error", "VALIDATION_ERROR", "No recognized fields to update"),
    500: _error_response_doc("Internal error", "INTERNAL_ERROR", "Internal server error"),
    503: _error_response_doc("Store unavailable", "STORE_UNAVAILABLE", "Store unavailable, retry later"),
}

INVITE_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    **DEFAULT_ERROR_RESPONSES,
    409: _error_response_doc("Invite already used", "INVITE_ALREADY_CONSUMED", "Invite has already been used"),
    410: _error_response_doc("Invite expired", "INVITE_EXPIRED", "Invite has expired"),
}
