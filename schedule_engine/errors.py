from __future__ import annotations

from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse


class ConfigurationError(Exception):
    """Missing or ambiguous schedule configuration for an employee/day."""

    def __init__(self, code: str, message: str, **details: Any):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details


class DataIntegrityWarning(UserWarning):
    """Detected invariant violation that was settled by a deterministic tie-break.

    Never raised; the resolver logs it and carries on.
    """

    def __init__(self, code: str, message: str, **details: Any):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details

    def to_log_extra(self) -> dict[str, Any]:
        return {"warning_code": self.code, **self.details}


class TransientStorageError(Exception):
    """Read/write failure against the persistence layer; safe to retry."""


class FatalJobError(Exception):
    def __init__(self, code: str, message: str, *, org_id: int | None = None, employee_id: int | None = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.org_id = org_id
        self.employee_id = employee_id


class ApiError(Exception):
    def __init__(self, status_code: int, code: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return "unknown"


def error_response(request: Request, *, status_code: int, code: str, message: str) -> JSONResponse:
    payload = {
        "error": {
            "code": code,
            "message": message,
            "request_id": get_request_id(request),
        }
    }
    return JSONResponse(status_code=status_code, content=payload)
