"""
llama.cpp engine adapter.

This module wraps ``llama_cpp.Llama`` into the resources a model handle
creates lazily: a vocab-only tokenizer model for metadata, the full weights,
an execution context, the single generation sequence, and the two sequence
consumers (chat session and raw completion engine). Blocking llama.cpp calls
run on worker threads; streamed generation is bridged back to the event loop
through an ``asyncio.Queue``.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Callable, Iterator, Sequence
from contextlib import aclosing
from dataclasses import dataclass, field
import json
import threading
from typing import Any, Literal, Protocol

from llama_cpp import Llama, LlamaGrammar
import llama_cpp
from llama_cpp.llama_chat_format import CHATML_CHAT_TEMPLATE, Jinja2ChatFormatter
from loguru import logger

from ..const import FLASH_ATTENTION_UNSUPPORTED_ARCHS
from ..core.cancellation import CancellationToken

StopReason = Literal["stop", "length", "abort"]

_SENTINEL = object()


class Tokenizer(Protocol):
    """Text/token conversion backed by a model vocabulary."""

    def encode(self, text: str, *, special: bool = False) -> list[int]: ...

    def decode(self, tokens: Sequence[int], *, special: bool = False) -> str: ...

    def close(self) -> None: ...


class ChatFormatter(Protocol):
    """Renders role-tagged messages into a model's native prompt text."""

    def render(self, messages: list[dict[str, str]]) -> str: ...


@dataclass(slots=True)
class ModelMetadata:
    """Facts read from a GGUF file without loading its weight tensors."""

    tokenizer: Tokenizer
    chat_formatter: ChatFormatter
    bos_token: str
    eos_token: str
    embedding_size: int
    train_context_size: int
    flash_attention_supported: bool
    vocabulary_type: str | None = None
    architecture: str | None = None
    name: str | None = None
    gguf: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class GenerationOptions:
    """Sampling options handed to the engine for one generation."""

    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int | None = None
    stop: list[str] = field(default_factory=list)
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    grammar: Any | None = None


@dataclass(slots=True)
class GenerationResult:
    """Full text produced by one generation and why it ended."""

    text: str
    stop_reason: StopReason


TextCallback = Callable[[str], Any]


# ----------------------------------------------------------------------
# Metadata stage
# ----------------------------------------------------------------------


class LlamaTokenizer:
    """Tokenizer over a vocab-only ``Llama`` instance."""

    def __init__(self, llama: Llama) -> None:
        self._llama = llama

    def encode(self, text: str, *, special: bool = False) -> list[int]:
        if not text:
            return []
        return list(self._llama.tokenize(text.encode("utf-8"), add_bos=False, special=special))

    def decode(self, tokens: Sequence[int], *, special: bool = False) -> str:
        raw = self._llama.detokenize(list(tokens), special=special)
        return raw.decode("utf-8", errors="replace")

    def close(self) -> None:
        self._llama.close()


class JinjaChatFormatter:
    """Chat template renderer using the template embedded in the GGUF file."""

    def __init__(self, template: str, *, bos_token: str, eos_token: str) -> None:
        self.template = template
        self._formatter = Jinja2ChatFormatter(
            template=template,
            eos_token=eos_token,
            bos_token=bos_token,
            add_generation_prompt=True,
        )

    def render(self, messages: list[dict[str, str]]) -> str:
        return self._formatter(messages=messages).prompt


def _token_text(llama: Llama, token_id: int) -> str:
    if token_id < 0:
        return ""
    return llama.detokenize([token_id], special=True).decode("utf-8", errors="replace")


def load_metadata(model_path: str) -> ModelMetadata:
    """Read tokenizer, chat template and model facts from a GGUF file.

    Only the vocabulary is loaded (no weight tensors, no GPU layers). The
    returned tokenizer keeps that vocab-only model open until closed.

    Raises
    ------
    ValueError
        If llama.cpp cannot parse the file.
    """
    llama = Llama(model_path=model_path, vocab_only=True, n_gpu_layers=0, verbose=False)
    try:
        gguf = dict(llama.metadata or {})
        bos_token = _token_text(llama, llama.token_bos())
        eos_token = _token_text(llama, llama.token_eos())
        architecture = gguf.get("general.architecture")
        template = gguf.get("tokenizer.chat_template")
        if not template:
            logger.debug(f"No chat template in {model_path}; using generic ChatML")
            template = CHATML_CHAT_TEMPLATE
        formatter = JinjaChatFormatter(template, bos_token=bos_token, eos_token=eos_token)
        return ModelMetadata(
            tokenizer=LlamaTokenizer(llama),
            chat_formatter=formatter,
            bos_token=bos_token,
            eos_token=eos_token,
            embedding_size=int(llama.n_embd()),
            train_context_size=int(llama.n_ctx_train()),
            flash_attention_supported=architecture not in FLASH_ATTENTION_UNSUPPORTED_ARCHS,
            vocabulary_type=gguf.get("tokenizer.ggml.model"),
            architecture=architecture,
            name=gguf.get("general.name"),
            gguf=gguf,
        )
    except Exception:
        llama.close()
        raise


# ----------------------------------------------------------------------
# Weights / context / sequence stages
# ----------------------------------------------------------------------


class LlamaWeights:
    """Fully materialized model, layers offloaded to the GPU where possible."""

    def __init__(self, llama: Llama, model_path: str) -> None:
        self.llama = llama
        self.model_path = model_path

    def close(self) -> None:
        self.llama.close()


def load_weights(
    model_path: str,
    *,
    context_length: int | None = None,
    flash_attention: bool = False,
) -> LlamaWeights:
    """Load a model with every layer offloaded that fits (``n_gpu_layers=-1``)."""
    llama = Llama(
        model_path=model_path,
        n_gpu_layers=-1,
        n_ctx=context_length or 0,
        flash_attn=flash_attention,
        verbose=False,
    )
    return LlamaWeights(llama, model_path)


class LlamaContext:
    """Execution context over loaded weights.

    llama-cpp-python keeps weights and KV cache in one ``Llama`` object; the
    context stage owns the KV state, clearing it on creation and on close.
    """

    def __init__(self, weights: LlamaWeights, token: CancellationToken) -> None:
        token.raise_if_cancelled()
        self.weights = weights
        self.context_size = int(weights.llama.n_ctx())
        weights.llama.reset()

    def close(self) -> None:
        self.weights.llama.reset()


class LlamaSequence:
    """The single generation lane of a model. Callers must hold its lock."""

    def __init__(self, context: LlamaContext) -> None:
        self.context = context
        self._llama = context.weights.llama

    def tokenize_prompt(self, prompt: str, *, bos_token: str = "") -> list[int]:
        add_bos = not (bos_token and prompt.startswith(bos_token))
        return list(self._llama.tokenize(prompt.encode("utf-8"), add_bos=add_bos, special=True))

    async def generate(
        self,
        prompt: str | list[int],
        options: GenerationOptions,
        token: CancellationToken,
        on_text: TextCallback | None = None,
    ) -> GenerationResult:
        """Run one streamed generation, forwarding each text fragment.

        The worker thread checks ``token`` between fragments; a cancelled
        generation ends with stop reason ``"abort"``.
        """
        token.raise_if_cancelled()
        kwargs: dict[str, Any] = {
            "max_tokens": options.max_tokens if options.max_tokens is not None else -1,
            "stop": options.stop or None,
            "grammar": options.grammar,
            "stream": True,
        }
        if options.temperature is not None:
            kwargs["temperature"] = options.temperature
        if options.top_p is not None:
            kwargs["top_p"] = options.top_p
        if options.frequency_penalty is not None:
            kwargs["frequency_penalty"] = options.frequency_penalty
        if options.presence_penalty is not None:
            kwargs["presence_penalty"] = options.presence_penalty

        def _iterate() -> Iterator[tuple[str, str | None]]:
            for chunk in self._llama.create_completion(prompt, **kwargs):
                if token.cancelled:
                    break
                choice = chunk["choices"][0]
                yield choice.get("text") or "", choice.get("finish_reason")

        parts: list[str] = []
        finish_reason: str | None = None
        async with aclosing(iterate_in_thread(_iterate)) as fragments:
            async for text, reason in fragments:
                if text:
                    parts.append(text)
                    if on_text is not None:
                        result = on_text(text)
                        if asyncio.iscoroutine(result):
                            await result
                if reason:
                    finish_reason = reason

        if token.cancelled:
            stop_reason: StopReason = "abort"
        elif finish_reason == "length":
            stop_reason = "length"
        else:
            stop_reason = "stop"
        return GenerationResult(text="".join(parts), stop_reason=stop_reason)

    def close(self) -> None:
        self._llama.reset()


class LlamaChatSession:
    """Chat-style consumer of a sequence: replays history, then prompts."""

    def __init__(self, sequence: LlamaSequence, metadata: ModelMetadata) -> None:
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
        on_text: TextCallback | None = None,
    ) -> GenerationResult:
        messages = [*self.history, {"role": "user", "content": text}]
        rendered = self.metadata.chat_formatter.render(messages)
        tokens = self.sequence.tokenize_prompt(rendered, bos_token=self.metadata.bos_token)
        result = await self.sequence.generate(tokens, options, token, on_text)
        self.history = [*messages, {"role": "assistant", "content": result.text}]
        return result

    def close(self) -> None:
        self.history = []


class LlamaCompletionEngine:
    """Raw-prompt consumer of a sequence."""

    def __init__(self, sequence: LlamaSequence) -> None:
        self.sequence = sequence

    async def generate(
        self,
        prompt: str,
        options: GenerationOptions,
        token: CancellationToken,
        on_text: TextCallback | None = None,
    ) -> GenerationResult:
        return await self.sequence.generate(prompt, options, token, on_text)

    def close(self) -> None:
        pass


class LlamaEmbeddingContext:
    """Embedding-mode context, created per request and closed afterwards.

    llama.cpp needs embeddings enabled when a context is created, so this is
    a second ``Llama`` over the same file rather than a view of the weights.
    """

    def __init__(self, model_path: str, *, context_length: int | None = None) -> None:
        self._llama = Llama(
            model_path=model_path,
            n_gpu_layers=-1,
            n_ctx=context_length or 0,
            embedding=True,
            verbose=False,
        )

    async def embed(self, text: str, token: CancellationToken) -> list[float]:
        token.raise_if_cancelled()
        vector = await asyncio.to_thread(self._llama.embed, text)
        if vector and isinstance(vector[0], list):
            # Models without pooling return one vector per token
            vector = vector[-1]
        return [float(v) for v in vector]

    def close(self) -> None:
        self._llama.close()


class LlamaBackend:
    """Factory for every llama.cpp resource a model handle creates.

    Tests substitute an object with the same methods to run without GGUF
    files or a GPU.
    """

    def load_metadata(self, model_path: str) -> ModelMetadata:
        return load_metadata(model_path)

    def load_weights(
        self,
        model_path: str,
        *,
        context_length: int | None,
        flash_attention: bool,
    ) -> LlamaWeights:
        return load_weights(
            model_path,
            context_length=context_length,
            flash_attention=flash_attention,
        )

    def create_context(self, weights: LlamaWeights, token: CancellationToken) -> LlamaContext:
        return LlamaContext(weights, token)

    def create_sequence(self, context: LlamaContext) -> LlamaSequence:
        return LlamaSequence(context)

    def create_chat_session(
        self, sequence: LlamaSequence, metadata: ModelMetadata
    ) -> LlamaChatSession:
        return LlamaChatSession(sequence, metadata)

    def create_completion(self, sequence: LlamaSequence) -> LlamaCompletionEngine:
        return LlamaCompletionEngine(sequence)

    def create_embedding_context(
        self, model_path: str, *, context_length: int | None
    ) -> LlamaEmbeddingContext:
        return LlamaEmbeddingContext(model_path, context_length=context_length)

    def create_grammar(self, schema: dict[str, Any]) -> LlamaGrammar:
        return build_grammar(schema)


def build_grammar(schema: dict[str, Any]) -> LlamaGrammar:
    """Compile a JSON schema into a GBNF grammar constraining the output."""
    return LlamaGrammar.from_json_schema(json.dumps(schema), verbose=False)


def engine_capabilities() -> dict[str, Any]:
    """Report llama.cpp build capabilities for the ``/system`` endpoint."""
    system_info = llama_cpp.llama_print_system_info()
    if isinstance(system_info, bytes):
        system_info = system_info.decode("utf-8", errors="replace")
    return {
        "llamaCppPythonVersion": llama_cpp.__version__,
        "supportsGpuOffloading": bool(llama_cpp.llama_supports_gpu_offload()),
        "supportsMmap": bool(llama_cpp.llama_supports_mmap()),
        "supportsMlock": bool(llama_cpp.llama_supports_mlock()),
        "maxDevices": int(llama_cpp.llama_max_devices()),
        "systemInfo": system_info.strip(),
    }


async def iterate_in_thread(
    factory: Callable[[], Iterator[Any]],
) -> AsyncGenerator[Any, None]:
    """Consume a blocking iterator on a worker thread, yielding on the loop.

    Items travel through an ``asyncio.Queue``; an exception raised by the
    iterator is re-raised in the consumer. If the consumer stops early the
    worker finishes its current item and exits, and closing the generator
    waits for that so the underlying model is idle once it returns.
    """
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[Any] = asyncio.Queue()
    stopped = threading.Event()

    def _work() -> None:
        try:
            for item in factory():
                if stopped.is_set():
                    break
                loop.call_soon_threadsafe(queue.put_nowait, item)
            loop.call_soon_threadsafe(queue.put_nowait, _SENTINEL)
        except BaseException as exc:
            loop.call_soon_threadsafe(queue.put_nowait, exc)

    worker = asyncio.ensure_future(asyncio.to_thread(_work))
    try:
        while True:
            item = await queue.get()
            if item is _SENTINEL:
                break
            if isinstance(item, BaseException):
                raise item
            yield item
    finally:
        stopped.set()
        await asyncio.wait([worker])
        worker.result()
