"""Tests for chat, completion and embedding request sessions."""

from __future__ import annotations

import asyncio
import base64
from typing import Any

from conftest import FakeBackend, MemoryProbe
import numpy as np
import pytest

from llm_boot.core.memory import MemoryUsage
from llm_boot.handler.chat import ChatCompletionSession, message_to_text, response_format_schema
from llm_boot.handler.completion import CompletionSession
from llm_boot.handler.embeddings import EmbeddingsSession
from llm_boot.models.errors import (
    ModelNotFoundError,
    ModelNotLoadedError,
    RequestCancelledError,
    UnsupportedInputError,
)
from llm_boot.schemas.openai import (
    ChatCompletionChunk,
    ChatCompletionRequest,
    CompletionRequest,
    EmbeddingRequest,
    Message,
)


def _chat(**overrides: Any) -> ChatCompletionRequest:
    payload: dict[str, Any] = {
        "model": "alpha.gguf",
        "messages": [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "Hi"},
        ],
    }
    payload.update(overrides)
    return ChatCompletionRequest(**payload)


def test_message_to_text_replaces_media_parts() -> None:
    message = Message(
        role="user",
        content=[
            {"type": "text", "text": "Look:"},
            {"type": "image_url", "image_url": {"url": "data:image/png;base64,AAA"}},
            {"type": "input_audio", "input_audio": {"data": "AAA", "format": "wav"}},
        ],
    )
    assert message_to_text(message) == (
        "Look:\n<image>a photo.</image>"
        '\n<audio format="wav">An audio without speech recognition</audio>'
    )
    assert message_to_text(Message(role="assistant", content=None)) == ""


def test_response_format_schema_variants() -> None:
    assert response_format_schema(None) is None
    assert response_format_schema({"type": "text"}) is None
    assert response_format_schema({"type": "json_object"}) == {
        "type": "object",
        "additionalProperties": True,
    }
    schema = {"type": "object", "properties": {"a": {"type": "string"}}}
    assert response_format_schema({"type": "json_schema", "json_schema": {"schema": schema}}) == schema


def test_chat_session_returns_full_response(make_registry, backend: FakeBackend) -> None:
    async def _test() -> None:
        registry = await make_registry()
        chunks: list[ChatCompletionChunk] = []
        async with ChatCompletionSession(registry, _chat(max_completion_tokens=7)) as session:
            response = await session.request(on_chunk=chunks.append)

        assert response.choices[0].message.content == "Hello!"
        assert response.choices[0].message.role == "assistant"
        assert response.choices[0].finish_reason == "stop"
        assert response.id.startswith("chatcmpl_")
        assert response.model == "alpha.gguf"

        assert backend.prompts == ["<system>Be brief.\n<user>Hi\n<assistant>"]
        # Prompt usage covers the rendered history before the last message
        history = "<system>Be brief.\n<assistant>"
        assert response.usage.prompt_tokens == len(history)
        assert response.usage.completion_tokens == len("Hello!")
        assert response.usage.total_tokens == len(history) + len("Hello!")
        assert backend.options[0].max_tokens == 7

        assert [c.choices[0].delta.content for c in chunks] == ["Hel", "lo", "!", ""]
        assert all(c.choices[0].delta.role == "assistant" for c in chunks)
        assert [c.choices[0].finish_reason for c in chunks] == [None, None, None, "stop"]
        # Usage only when requested
        assert all(c.usage is None for c in chunks)

        # Lock released after close
        assert not registry.get("alpha.gguf").sequence_lock.locked()

    asyncio.run(_test())


def test_chat_stream_usage_when_requested(make_registry, backend: FakeBackend) -> None:
    backend.stop_reason = "length"

    async def _test() -> list[ChatCompletionChunk]:
        registry = await make_registry()
        chunks: list[ChatCompletionChunk] = []
        request = _chat(stream=True, stream_options={"include_usage": True})
        async with ChatCompletionSession(registry, request) as session:
            await session.request(on_chunk=chunks.append)
        return chunks

    chunks = asyncio.run(_test())
    assert chunks[-1].choices[0].finish_reason == "length"
    assert chunks[-1].usage is not None
    assert chunks[-1].usage.completion_tokens == len("Hello!")


@pytest.mark.parametrize(
    ("messages", "message"),
    [
        ([], "The conversation must have at least one message."),
        ([{"role": "assistant", "content": "Hi"}], "The last message must be a user message."),
    ],
)
def test_chat_validation_fails_before_locking(
    make_registry, messages: list[dict[str, str]], message: str
) -> None:
    async def _test() -> None:
        registry = await make_registry()
        with pytest.raises(UnsupportedInputError, match=message):
            ChatCompletionSession(registry, _chat(messages=messages))
        assert not registry.get("alpha.gguf").sequence_lock.locked()

    asyncio.run(_test())


def test_chat_json_response_format_sets_grammar(make_registry, backend: FakeBackend) -> None:
    async def _test() -> None:
        registry = await make_registry()
        request = _chat(response_format={"type": "json_object"})
        async with ChatCompletionSession(registry, request) as session:
            await session.request()
        assert backend.options[0].grammar == (
            "grammar",
            {"type": "object", "additionalProperties": True},
        )

    asyncio.run(_test())


def test_chat_invalid_schema_is_rejected(make_registry) -> None:
    async def _test() -> None:
        registry = await make_registry()
        request = _chat(
            response_format={"type": "json_schema", "json_schema": {"schema": {"type": "not-a-type"}}}
        )
        async with ChatCompletionSession(registry, request) as session:
            with pytest.raises(UnsupportedInputError, match="Invalid response_format schema"):
                await session.request()
        assert not registry.get("alpha.gguf").sequence_lock.locked()

    asyncio.run(_test())


def test_unknown_model_fails_context(make_registry) -> None:
    async def _test() -> None:
        registry = await make_registry()
        async with ChatCompletionSession(registry, _chat(model="nope.gguf")) as session:
            with pytest.raises(ModelNotFoundError):
                await session.context()

    asyncio.run(_test())


def test_sessions_on_one_model_run_back_to_back(make_registry, backend: FakeBackend) -> None:
    """A second request waits for the first to release the sequence."""
    backend.generation_gate = asyncio.Event()

    async def _test() -> None:
        registry = await make_registry()
        handle = registry.get("alpha.gguf")
        order: list[str] = []

        async def _run(name: str) -> None:
            async with ChatCompletionSession(registry, _chat()) as session:
                await session.context()
                order.append(f"{name}:start")
                await session.request()
                order.append(f"{name}:end")

        first = asyncio.create_task(_run("first"))
        await asyncio.sleep(0.01)
        second = asyncio.create_task(_run("second"))
        await asyncio.sleep(0.01)
        assert order == ["first:start"]
        assert handle.sequence_lock.waiting == 1

        backend.generation_gate.set()
        await asyncio.gather(first, second)
        assert order == ["first:start", "first:end", "second:start", "second:end"]

    asyncio.run(_test())


def test_cancel_ends_generation_and_releases_lock(make_registry, backend: FakeBackend) -> None:
    backend.generation_gate = asyncio.Event()

    async def _test() -> None:
        registry = await make_registry()
        handle = registry.get("alpha.gguf")
        session = ChatCompletionSession(registry, _chat())
        running = asyncio.create_task(session.request())
        await asyncio.sleep(0.01)
        assert handle.sequence_lock.locked()

        session.cancel("client disconnected")
        backend.generation_gate.set()
        response = await running
        assert response.choices[0].finish_reason == "stop"

        await session.aclose()
        await session.aclose()
        assert not handle.sequence_lock.locked()

    asyncio.run(_test())


def test_close_before_build_finishes_releases_everything(make_registry) -> None:
    async def _test() -> None:
        registry = await make_registry()
        handle = registry.get("alpha.gguf")
        holder = await handle.sequence_lock.acquire()

        session = ChatCompletionSession(registry, _chat())
        await asyncio.sleep(0)
        await session.aclose()
        with pytest.raises(RequestCancelledError, match="session closed"):
            await session.request()

        holder.release()
        assert not handle.sequence_lock.locked()

    asyncio.run(_test())


def test_completion_single_prompt_streams(make_registry, backend: FakeBackend) -> None:
    async def _test() -> None:
        registry = await make_registry()
        chunks: list[Any] = []
        request = CompletionRequest(model="alpha.gguf", prompt="Once", stream=True)
        async with CompletionSession(registry, request) as session:
            response = await session.request(on_chunk=chunks.append)

        assert [c.choices[0].text for c in chunks] == ["Hel", "lo", "!", ""]
        assert chunks[-1].choices[0].finish_reason == "stop"
        assert response.choices[0].text == "Hello!"
        assert response.usage.prompt_tokens == len("Once")
        assert backend.options[0].max_tokens == 16
        assert backend.options[0].temperature == 1.0

    asyncio.run(_test())


def test_completion_batch_runs_sequentially(make_registry, backend: FakeBackend) -> None:
    async def _test() -> None:
        registry = await make_registry()
        request = CompletionRequest(model="alpha.gguf", prompt=["one", "two"], stop="\n")
        async with CompletionSession(registry, request) as session:
            response = await session.request()

        assert backend.prompts == ["one", "two"]
        assert [choice.index for choice in response.choices] == [0, 1]
        assert [choice.text for choice in response.choices] == ["Hello!", "Hello!"]
        assert response.usage.prompt_tokens == len("one\ntwo")
        assert response.usage.completion_tokens == 2 * len("Hello!")
        assert backend.options[0].stop == ["\n"]

    asyncio.run(_test())


def test_completion_multi_prompt_stream_is_rejected(make_registry) -> None:
    async def _test() -> None:
        registry = await make_registry()
        request = CompletionRequest(model="alpha.gguf", prompt=["a", "b"], stream=True)
        with pytest.raises(UnsupportedInputError, match="Streaming mode with multiple prompts"):
            CompletionSession(registry, request)

    asyncio.run(_test())


def test_embeddings_float_and_usage(make_registry, backend: FakeBackend) -> None:
    async def _test() -> None:
        registry = await make_registry()
        request = EmbeddingRequest(
            model="nested/beta.gguf", input=["abc", {"type": "text", "content": "hello"}]
        )
        async with EmbeddingsSession(registry, request) as session:
            response = await session.request()

        assert [d.embedding for d in response.data] == [[3.0, 0.5], [5.0, 0.5]]
        assert [d.index for d in response.data] == [0, 1]
        assert response.usage.prompt_tokens == 8
        assert response.usage.total_tokens == 8
        assert ("embedding_context", registry.get("nested/beta.gguf").path) in backend.closed

    asyncio.run(_test())


def test_embeddings_base64_encoding(make_registry) -> None:
    async def _test() -> str:
        registry = await make_registry()
        request = EmbeddingRequest(model="alpha.gguf", input="abcd", encoding_format="base64")
        async with EmbeddingsSession(registry, request) as session:
            response = await session.request()
        return response.data[0].embedding

    encoded = asyncio.run(_test())
    decoded = np.frombuffer(base64.b64decode(encoded), dtype=np.float32)
    assert decoded.tolist() == [4.0, 0.5]


def test_embeddings_reject_images(make_registry) -> None:
    async def _test() -> None:
        registry = await make_registry()
        request = EmbeddingRequest(
            model="alpha.gguf",
            input=["text", {"type": "image-url", "content": "http://example.com/cat.png"}],
        )
        with pytest.raises(UnsupportedInputError, match="Embedding type image-url is not supported."):
            EmbeddingsSession(registry, request)

    asyncio.run(_test())


def test_session_body_is_kept_apart_from_request(make_registry) -> None:
    async def _test() -> None:
        registry = await make_registry()
        body = _chat()
        async with CompletionSession(
            registry, CompletionRequest(model="alpha.gguf", prompt="Once")
        ) as completion:
            assert callable(completion.request)
            await completion.request()
        async with ChatCompletionSession(registry, body) as session:
            assert session.body is body
            assert session.model_name == "alpha.gguf"
            response = await session.request()
        assert response.object == "chat.completion"

    asyncio.run(_test())


def test_embeddings_make_room_for_their_own_copy(
    make_registry, backend: FakeBackend, memory_probe: MemoryProbe
) -> None:
    async def _test() -> None:
        registry = await make_registry()
        alpha = registry.get("alpha.gguf")
        beta = registry.get("nested/beta.gguf")
        for model in ("alpha.gguf", "nested/beta.gguf"):
            async with ChatCompletionSession(registry, _chat(model=model)) as session:
                await session.request()
        assert alpha.is_loaded and beta.is_loaded

        memory_probe.usage = MemoryUsage(total=10_000, free=0)
        calls = memory_probe.calls
        request = EmbeddingRequest(model="alpha.gguf", input="hello")
        async with EmbeddingsSession(registry, request) as session:
            await session.request()

        assert memory_probe.calls == calls + 1
        assert not alpha.is_loaded
        assert not beta.is_loaded
        assert ("weights", alpha.path) in backend.closed
        assert ("weights", beta.path) in backend.closed
        assert backend.closed[-1] == ("embedding_context", alpha.path)

    asyncio.run(_test())


def test_generation_before_build_reports_unloaded_model(make_registry) -> None:
    async def _test() -> None:
        registry = await make_registry()
        async with CompletionSession(
            registry, CompletionRequest(model="alpha.gguf", prompt="Once")
        ) as completion:
            with pytest.raises(ModelNotLoadedError, match="alpha.gguf"):
                completion.count_completion("text")
        request = EmbeddingRequest(model="alpha.gguf", input="hello")
        async with EmbeddingsSession(registry, request) as embeddings:
            with pytest.raises(ModelNotLoadedError, match="alpha.gguf"):
                await embeddings.generate(None)

    asyncio.run(_test())
