"""Custom exceptions for model lifecycle and request handling."""

from __future__ import annotations

from http import HTTPStatus


class LLMBootError(Exception):
    """Base exception for llm-boot errors.

    ``status_code`` and ``err_type`` describe how the error surfaces on the
    HTTP API when it reaches an endpoint.
    """

    status_code: int = HTTPStatus.INTERNAL_SERVER_ERROR
    err_type: str = "server_error"


class ModelNotFoundError(LLMBootError):
    """Raised when no tracked model matches the requested id."""

    status_code = HTTPStatus.NOT_FOUND
    err_type = "model_not_found"

    def __init__(self, model_id: str) -> None:
        self.model_id = model_id
        super().__init__(f"model {model_id} not found")


class ModelLoadError(LLMBootError):
    """Raised when model loading fails."""

    def __init__(self, message_or_path: str, original_exception: Exception | None = None) -> None:
        if original_exception is not None:
            self.model_path = message_or_path
            self.original_exception = original_exception
            super().__init__(f"Failed to load model from {message_or_path}: {original_exception}")
        else:
            super().__init__(message_or_path)


class ModelNotLoadedError(LLMBootError):
    """Raised when an operation needs metadata that could not be read."""

    def __init__(self, model_path: str) -> None:
        self.model_path = model_path
        super().__init__(f"model {model_path} not loaded")


class InsufficientMemoryError(LLMBootError):
    """Raised when the accelerator can never hold the requested model."""

    status_code = HTTPStatus.INSUFFICIENT_STORAGE
    err_type = "insufficient_memory"

    def __init__(self, model_id: str, required: int, total: int) -> None:
        self.model_id = model_id
        self.required = required
        self.total = total
        super().__init__(
            f"not enough memory to load model {model_id} "
            f"(requires {required} bytes, device total {total} bytes)"
        )


class UnsupportedInputError(LLMBootError):
    """Raised when a request combines inputs the server cannot serve."""

    status_code = HTTPStatus.BAD_REQUEST
    err_type = "invalid_request_error"


class RequestCancelledError(LLMBootError):
    """Raised inside a session when its cancellation token fired."""

    status_code = 499
    err_type = "request_cancelled"


class StreamClosedError(RuntimeError):
    """Raised when writing to a stream that already reached a terminal state."""
