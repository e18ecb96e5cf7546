"""Shared test fixtures and helpers for the test suite.

The fakes below stand in for llama.cpp so tests run without GGUF weights or
a GPU. ``FakeBackend`` exposes the same factory methods as
:class:`llm_boot.models.llama_cpp.LlamaBackend` and records what it creates.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
import inspect
from pathlib import Path
from typing import Any

import pytest

from llm_boot.core.cancellation import CancellationToken
from llm_boot.core.memory import MemoryUsage
from llm_boot.core.model_registry import ModelRegistry
from llm_boot.models.llama_cpp import GenerationOptions, GenerationResult, ModelMetadata


class FakeTokenizer:
    """One token per character."""

    def __init__(self) -> None:
        self.closed = False

    def encode(self, text: str, *, special: bool = False) -> list[int]:
        return [ord(ch) for ch in text]

    def decode(self, tokens: Sequence[int], *, special: bool = False) -> str:
        return "".join(chr(t) for t in tokens)

    def close(self) -> None:
        self.closed = True


class FakeFormatter:
    def render(self, messages: list[dict[str, str]]) -> str:
        return "".join(f"<{m['role']}>{m['content']}\n" for m in messages) + "<assistant>"


class FakeResource:
    def __init__(self, backend: FakeBackend, kind: str, model_path: str) -> None:
        self.backend = backend
        self.kind = kind
        self.model_path = model_path
        self.closed = False

    def close(self) -> None:
        self.closed = True
        self.backend.closed.append((self.kind, self.model_path))


class FakeSequence(FakeResource):
    async def generate(
        self,
        prompt: str | list[int],
        options: GenerationOptions,
        token: CancellationToken,
        on_text: Callable[[str], Any] | None = None,
    ) -> GenerationResult:
        self.backend.generations.append(self.model_path)
        parts: list[str] = []
        for fragment in self.backend.fragments:
            if token.cancelled:
                return GenerationResult(text="".join(parts), stop_reason="abort")
            if self.backend.generation_gate is not None:
                await self.backend.generation_gate.wait()
            parts.append(fragment)
            if on_text is not None:
                result = on_text(fragment)
                if inspect.isawaitable(result):
                    await result
            await asyncio.sleep(0)
        if token.cancelled:
            return GenerationResult(text="".join(parts), stop_reason="abort")
        return GenerationResult(text="".join(parts), stop_reason=self.backend.stop_reason)


class FakeChatSession(FakeResource):
    def __init__(self, backend: FakeBackend, sequence: FakeSequence, metadata: ModelMetadata) -> None:
        super().__init__(backend, "chat_session", sequence.model_path)
        self.sequence = sequence
        self.metadata = metadata
        self.history: list[dict[str, str]] = []

    def set_history(self, history: list[dict[str, str]]) -> None:
        self.history = list(history)

    async def prompt(
        self,
        text: str,
        options: GenerationOptions,
        token: CancellationToken,
        on_text: Callable[[str], Any] | None = None,
    ) -> GenerationResult:
        messages = [*self.history, {"role": "user", "content": text}]
        self.backend.prompts.append(self.metadata.chat_formatter.render(messages))
        self.backend.options.append(options)
        return await self.sequence.generate(text, options, token, on_text)


class FakeCompletion(FakeResource):
    def __init__(self, backend: FakeBackend, sequence: FakeSequence) -> None:
        super().__init__(backend, "completion", sequence.model_path)
        self.sequence = sequence

    async def generate(
        self,
        prompt: str,
        options: GenerationOptions,
        token: CancellationToken,
        on_text: Callable[[str], Any] | None = None,
    ) -> GenerationResult:
        self.backend.prompts.append(prompt)
        self.backend.options.append(options)
        return await self.sequence.generate(prompt, options, token, on_text)


class FakeEmbeddingContext(FakeResource):
    async def embed(self, text: str, token: CancellationToken) -> list[float]:
        token.raise_if_cancelled()
        return [float(len(text)), 0.5]


class FakeBackend:
    """Records every resource it creates and closes."""

    def __init__(self) -> None:
        self.fragments = ["Hel", "lo", "!"]
        self.stop_reason = "stop"
        self.generation_gate: asyncio.Event | None = None
        self.broken_metadata: set[str] = set()
        self.broken_weights: set[str] = set()
        self.weight_loads: list[str] = []
        self.generations: list[str] = []
        self.prompts: list[str] = []
        self.options: list[GenerationOptions] = []
        self.closed: list[tuple[str, str]] = []

    def load_metadata(self, model_path: str) -> ModelMetadata:
        if model_path in self.broken_metadata:
            raise RuntimeError("bad gguf header")
        return ModelMetadata(
            tokenizer=FakeTokenizer(),
            chat_formatter=FakeFormatter(),
            bos_token="",
            eos_token="",
            embedding_size=2,
            train_context_size=128,
            flash_attention_supported=True,
            architecture="llama",
            name=Path(model_path).stem.title(),
        )

    def load_weights(
        self, model_path: str, *, context_length: int | None, flash_attention: bool
    ) -> FakeResource:
        if model_path in self.broken_weights:
            raise RuntimeError("out of device memory")
        self.weight_loads.append(model_path)
        return FakeResource(self, "weights", model_path)

    def create_context(self, weights: FakeResource, token: CancellationToken) -> FakeResource:
        token.raise_if_cancelled()
        return FakeResource(self, "context", weights.model_path)

    def create_sequence(self, context: FakeResource) -> FakeSequence:
        return FakeSequence(self, "sequence", context.model_path)

    def create_chat_session(self, sequence: FakeSequence, metadata: ModelMetadata) -> FakeChatSession:
        return FakeChatSession(self, sequence, metadata)

    def create_completion(self, sequence: FakeSequence) -> FakeCompletion:
        return FakeCompletion(self, sequence)

    def create_embedding_context(
        self, model_path: str, *, context_length: int | None
    ) -> FakeEmbeddingContext:
        return FakeEmbeddingContext(self, "embedding_context", model_path)

    def create_grammar(self, schema: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        if schema.get("type") == "not-a-type":
            raise ValueError("unknown schema type")
        return ("grammar", schema)


class MemoryProbe:
    """Mutable stand-in for the NVML memory query."""

    def __init__(self, total: int = 10_000, free: int = 10_000) -> None:
        self.usage: MemoryUsage | None = MemoryUsage(total=total, free=free)
        self.calls = 0

    def __call__(self) -> MemoryUsage | None:
        self.calls += 1
        return self.usage


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def memory_probe() -> MemoryProbe:
    return MemoryProbe()


@pytest.fixture
def model_dir(tmp_path: Path) -> Path:
    """A model root holding two model files and one unrelated file."""
    root = (tmp_path / "models").resolve()
    (root / "nested").mkdir(parents=True)
    (root / "alpha.gguf").write_bytes(b"\0" * 100)
    (root / "nested" / "beta.gguf").write_bytes(b"\0" * 200)
    (root / "notes.txt").write_text("not a model")
    return root


def model_paths(root: Path) -> list[str]:
    return sorted(str(p) for p in root.rglob("*.gguf"))


@pytest.fixture
def make_registry(
    backend: FakeBackend, memory_probe: MemoryProbe, model_dir: Path
) -> Callable[..., Awaitable[ModelRegistry]]:
    """Factory for a registry seeded from ``model_dir`` without watchers.

    Must be called from inside a running event loop.
    """

    async def _factory(**overrides: Any) -> ModelRegistry:
        registry = ModelRegistry(
            [model_dir],
            backend=overrides.pop("backend", backend),
            memory_probe=overrides.pop("memory_probe", memory_probe),
            **overrides,
        )
        await registry.sync(model_dir, model_paths(model_dir))
        return registry

    return _factory
