"""Correlation IDs and access logging for every HTTP request."""

import asyncio
from collections.abc import Awaitable, Callable
from http import HTTPStatus
import time
import uuid

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.middleware.base import BaseHTTPMiddleware

from ..utils.errors import create_error_response

# Nginx convention for "client closed request"
CLIENT_CLOSED_REQUEST = 499


class RequestTrackingMiddleware(BaseHTTPMiddleware):
    """
    Tag each request with an ``X-Request-ID`` and log its outcome.

    A client supplied ``X-Request-ID`` is kept, otherwise a UUID4 is
    generated. The id is stored on ``request.state``, echoed on the
    response and bound to the loguru context for the duration of the
    request, so records emitted by sessions and stream drivers spawned
    from the request carry ``extra["request_id"]``.
    """

    # Successful requests on these paths are logged at DEBUG
    QUIET_PATHS = frozenset(["/", "/health", "/favicon.ico"])

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        label = f"{request.method} {request.url.path}"
        quiet = request.url.path in self.QUIET_PATHS

        with logger.contextualize(request_id=request_id):
            (logger.debug if quiet else logger.info)(
                f"Request started: {label} [request_id={request_id}]"
            )
            start = time.perf_counter()
            try:
                response = await call_next(request)
            except asyncio.CancelledError:
                logger.warning(
                    f"Request cancelled by client: {label} "
                    f"duration={time.perf_counter() - start:.3f}s [request_id={request_id}]"
                )
                return self._error(
                    request_id,
                    "Request cancelled by client",
                    "request_cancelled",
                    CLIENT_CLOSED_REQUEST,
                )
            except RuntimeError as e:
                # Starlette's "No response returned." when the receive stream
                # ends before the app answers
                logger.exception(
                    f"No response returned for request: {label} "
                    f"duration={time.perf_counter() - start:.3f}s "
                    f"[request_id={request_id}] cause={e.__cause__!r}"
                )
                return self._error(
                    request_id,
                    f"No response returned: {e}",
                    "internal_error",
                    HTTPStatus.INTERNAL_SERVER_ERROR,
                )

            duration = time.perf_counter() - start
            response.headers["X-Request-ID"] = request_id
            level = logger.debug if quiet and response.status_code == HTTPStatus.OK else logger.info
            level(
                f"Request completed: {label} status={response.status_code} "
                f"duration={duration:.3f}s [request_id={request_id}]"
            )
            return response

    @staticmethod
    def _error(request_id: str, message: str, err_type: str, status_code: int) -> JSONResponse:
        return JSONResponse(
            content=create_error_response(message, err_type, status_code),
            status_code=int(status_code),
            headers={"X-Request-ID": request_id},
        )
