"""API endpoints for the llm-boot OpenAI-compatible gateway."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator
from http import HTTPStatus
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, StreamingResponse
from loguru import logger
from pydantic import BaseModel
import pynvml

from ..const import MODEL_OWNER
from ..core.memory import list_gpu_devices
from ..core.model_registry import ModelRegistry
from ..core.mutex import MutexLease
from ..core.sse import StreamEncoder
from ..handler.base import RequestSession
from ..handler.chat import ChatCompletionSession
from ..handler.completion import CompletionSession
from ..handler.embeddings import EmbeddingsSession
from ..models.errors import LLMBootError, RequestCancelledError
from ..models.llama_cpp import engine_capabilities
from ..schemas.openai import (
    ChatCompletionRequest,
    ChatCompletionResponse,
    CompletionRequest,
    CompletionResponse,
    EmbeddingRequest,
    EmbeddingResponse,
    HealthCheckResponse,
    HealthCheckStatus,
    Model,
    ModelsResponse,
)
from ..utils.errors import create_error_response, error_json_response

router = APIRouter()

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

# Streaming drivers outlive the handler that starts them
_stream_tasks: set[asyncio.Task[None]] = set()


def get_model_registry(raw_request: Request) -> ModelRegistry | None:
    return getattr(raw_request.app.state, "model_registry", None)


def _registry_unavailable() -> JSONResponse:
    return JSONResponse(
        content=create_error_response(
            "Model registry not initialized",
            "service_unavailable",
            HTTPStatus.SERVICE_UNAVAILABLE,
        ),
        status_code=HTTPStatus.SERVICE_UNAVAILABLE,
    )


@router.get("/", response_model=None)
async def root() -> dict[str, Any]:
    return {"ok": True}


@router.get("/health", response_model=None)
async def health(raw_request: Request) -> HealthCheckResponse | JSONResponse:
    """Health check endpoint.

    Returns
    -------
    HealthCheckResponse or JSONResponse
        ``ok`` with the number of tracked models, or 503 before startup.
    """
    registry = get_model_registry(raw_request)
    if registry is None:
        return JSONResponse(
            status_code=HTTPStatus.SERVICE_UNAVAILABLE,
            content={"status": "unhealthy", "model_count": 0},
        )
    return HealthCheckResponse(status=HealthCheckStatus.OK, model_count=len(registry))


@router.get("/v1/models", response_model=None)
async def models(raw_request: Request) -> ModelsResponse | JSONResponse:
    """List every tracked model file."""
    registry = get_model_registry(raw_request)
    if registry is None:
        return _registry_unavailable()
    return ModelsResponse(
        data=[
            Model(id=handle.model_id, created=handle.created, owned_by=MODEL_OWNER, name=handle.name)
            for handle in registry.list_models()
        ]
    )


@router.get("/system", response_model=None)
async def system() -> dict[str, Any]:
    """Report engine build capabilities and visible GPUs."""
    engine = await asyncio.to_thread(engine_capabilities)
    try:
        devices = await asyncio.to_thread(list_gpu_devices)
    except pynvml.NVMLError as e:
        logger.warning(f"Unable to list GPU devices. {type(e).__name__}: {e}")
        devices = []
    engine["gpuDevices"] = [device.to_dict() for device in devices]
    return {"ok": True, "message": None, "engine": engine}


@router.post("/v1/chat/completions", response_model=None)
async def chat_completions(
    request: ChatCompletionRequest,
    raw_request: Request,
) -> ChatCompletionResponse | StreamingResponse | JSONResponse:
    """Handle chat completion requests.

    Parameters
    ----------
    request : ChatCompletionRequest
        The chat completion request payload.
    raw_request : Request
        The incoming FastAPI request.

    Returns
    -------
    ChatCompletionResponse or StreamingResponse or JSONResponse
        Chat completion response, stream, or error response.
    """
    return await run_session(
        ChatCompletionSession, raw_request, request, stream=bool(request.stream)
    )


@router.post("/v1/completions", response_model=None)
async def completions(
    request: CompletionRequest,
    raw_request: Request,
) -> CompletionResponse | StreamingResponse | JSONResponse:
    """Handle raw text completion requests."""
    return await run_session(CompletionSession, raw_request, request, stream=bool(request.stream))


@router.post("/v1/embeddings", response_model=None)
async def embeddings(
    request: EmbeddingRequest,
    raw_request: Request,
) -> EmbeddingResponse | JSONResponse:
    """Handle embedding requests."""
    return await run_session(EmbeddingsSession, raw_request, request, stream=False)


async def _close(session: RequestSession[Any, Any] | None, gate: MutexLease) -> None:
    try:
        if session is not None:
            await session.aclose()
    finally:
        gate.release()


async def run_session(
    session_cls: type[RequestSession[Any, Any]],
    raw_request: Request,
    request: BaseModel,
    *,
    stream: bool,
) -> Any:
    """Admit, build and run one session, returning JSON or an SSE stream.

    The class admission gate is held for the whole request, including the
    streamed body. Failures up to the end of the context build (unknown
    model, invalid input, memory, load errors) are answered with a JSON
    error; failures during a stream become an SSE error frame.
    """
    registry = get_model_registry(raw_request)
    if registry is None:
        return _registry_unavailable()

    gate = await session_cls.admission.acquire()
    session: RequestSession[Any, Any] | None = None
    try:
        session = session_cls(registry, request)
        await session.context()
    except LLMBootError as e:
        await _close(session, gate)
        logger.warning(f"{session_cls.__name__} rejected. {type(e).__name__}: {e}")
        return error_json_response(e)
    except BaseException:
        await _close(session, gate)
        raise

    if not stream:
        try:
            return await session.request()
        except LLMBootError as e:
            logger.warning(f"{session!r} failed. {type(e).__name__}: {e}")
            return error_json_response(e)
        finally:
            await _close(session, gate)

    encoder = StreamEncoder()
    driver = asyncio.create_task(_drive_stream(session, gate, encoder), name=f"stream:{session.id}")
    _stream_tasks.add(driver)
    driver.add_done_callback(_stream_tasks.discard)
    return StreamingResponse(
        _relay(session, encoder),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


async def _drive_stream(
    session: RequestSession[Any, Any],
    gate: MutexLease,
    encoder: StreamEncoder,
) -> None:
    """Run ``session`` writing each chunk to ``encoder``, then close both.

    The session and admission gate are released before ``[DONE]`` is
    queued.
    """

    def _write(chunk: Any) -> None:
        if encoder.closed:
            session.cancel("client disconnected")
            return
        encoder.write(chunk)

    try:
        await session.request(on_chunk=_write)
    except RequestCancelledError:
        logger.debug(f"{session!r} cancelled")
    except LLMBootError as e:
        logger.warning(f"{session!r} failed while streaming. {type(e).__name__}: {e}")
        if not encoder.closed:
            encoder.write(create_error_response(str(e), e.err_type, e.status_code))
    except Exception as e:
        logger.exception(f"Error in stream driver. {type(e).__name__}: {e}")
        if not encoder.closed:
            encoder.write(
                create_error_response(str(e), "server_error", HTTPStatus.INTERNAL_SERVER_ERROR)
            )
    finally:
        # Locks are free by the time the client reads the final frame
        try:
            await _close(session, gate)
        finally:
            if not encoder.closed:
                encoder.done()


async def _relay(
    session: RequestSession[Any, Any],
    encoder: StreamEncoder,
) -> AsyncGenerator[str, None]:
    try:
        async for frame in encoder:
            yield frame
    except (asyncio.CancelledError, GeneratorExit):
        session.cancel("client disconnected")
        if not encoder.closed:
            encoder.abort()
        raise
