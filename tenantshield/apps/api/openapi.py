from __future__ import annotations

from typing import Any

from tenantshield.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {
                "example": _error_example(code=code, message=message, details=details),
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _response("Bad request", code="TENANT_ID_INVALID", message="Malformed tenant identifier"),
    401: _response("Unauthorized", code="AUTH_UNAUTHORIZED", message="No authenticated identity"),
    403: _response(
        "Forbidden",
        code="INSUFFICIENT_SCOPES",
        message="One of scopes dsr:create, dsr:write is required",
        details={"required": ["dsr:create", "dsr:write"], "missing": ["dsr:create", "dsr:write"]},
    ),
    404: _response("Not found", code="DELETION_REPORT_NOT_FOUND", message="No deletion report for request"),
    409: _response("Conflict", code="ERASURE_JOB_NOT_CANCELLABLE", message="Erasure job is in_progress"),
    422: _response(
        "Validation error",
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": [{"loc": ["body", "tenant_id"], "msg": "Field required", "type": "missing"}]},
    ),
    500: _response("Internal error", code="INTERNAL_ERROR", message="Internal server error"),
    502: _response("Signing failed", code="REPORT_SIGNING_FAILED", message="Signing deletion report failed"),
    503: _response("Unavailable", code="ERASURE_QUEUE_UNAVAILABLE", message="Erasure queue unavailable"),
}
