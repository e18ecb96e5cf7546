"""Reject request bodies larger than the configured limit."""

from collections.abc import Awaitable, Callable
from http import HTTPStatus

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from ..const import DEFAULT_BODY_LIMIT
from ..utils.errors import create_error_response

_BODY_METHODS = frozenset(["POST", "PUT", "PATCH"])


class BodyLimitMiddleware(BaseHTTPMiddleware):
    """Answer 413 when a request body exceeds ``limit`` bytes.

    The declared ``Content-Length`` is checked first; bodies without one
    are read and measured.
    """

    def __init__(self, app: ASGIApp, limit: int = DEFAULT_BODY_LIMIT) -> None:
        super().__init__(app)
        self.limit = limit

    def _too_large(self, size: int) -> JSONResponse:
        return JSONResponse(
            content=create_error_response(
                f"Request body of {size} bytes exceeds the limit of {self.limit} bytes",
                "invalid_request_error",
                HTTPStatus.REQUEST_ENTITY_TOO_LARGE,
            ),
            status_code=HTTPStatus.REQUEST_ENTITY_TOO_LARGE,
        )

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        if request.method in _BODY_METHODS:
            declared = request.headers.get("content-length")
            if declared is not None and declared.isdigit():
                size = int(declared)
            else:
                size = len(await request.body())
            if size > self.limit:
                logger.warning(f"Rejected {request.method} {request.url.path}: body of {size} bytes")
                return self._too_large(size)
        return await call_next(request)
