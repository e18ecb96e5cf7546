"""Utilities for creating error responses."""

from __future__ import annotations

from http import HTTPStatus

from fastapi.responses import JSONResponse

from ..models.errors import LLMBootError


def create_error_response(
    message: str,
    err_type: str = "internal_error",
    status_code: int | HTTPStatus = HTTPStatus.INTERNAL_SERVER_ERROR,
    param: str | None = None,
    code: str | None = None,
) -> dict[str, object]:
    """Create a standardized error response dictionary."""
    return {
        "error": {
            "message": message,
            "type": err_type,
            "param": param,
            "code": str(
                code or (status_code.value if isinstance(status_code, HTTPStatus) else status_code)
            ),
        }
    }


def error_json_response(exc: LLMBootError) -> JSONResponse:
    """Map a domain exception onto an OpenAI-style error payload."""
    return JSONResponse(
        content=create_error_response(str(exc), exc.err_type, exc.status_code),
        status_code=int(exc.status_code),
    )
