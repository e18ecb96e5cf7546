"""One GGUF file and the resources lazily created from it."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
import os
from pathlib import Path
from typing import Any

from loguru import logger

from ..const import DEFAULT_CONTEXT_LENGTH, DEFAULT_FLASH_ATTENTION
from ..models.errors import ModelLoadError, ModelNotLoadedError
from ..models.llama_cpp import LlamaBackend, ModelMetadata
from .cancellation import CancellationToken
from .mutex import AsyncMutex
from .stage import LazyStage


def _closer(name: str) -> Callable[[Any], Awaitable[None]]:
    async def _close(resource: Any) -> None:
        await asyncio.to_thread(resource.close)

    _close.__name__ = f"close_{name}"
    return _close


class ModelHandle:
    """A tracked model file, its metadata and its lazily created stages.

    Metadata is read when the handle is created and stays available while
    weights come and go. The weights, execution context, sequence, chat
    session and completion engine are each created at most once per load
    cycle; :meth:`unload` resets all of them together.

    Use :meth:`create` rather than the constructor so metadata loading runs
    off the event loop.

    Parameters
    ----------
    path : str
        Absolute path of the GGUF file.
    model_id : str
        Registry-relative id (path below its root, ``/``-separated).
    metadata : ModelMetadata or None
        Metadata read from the file, ``None`` when reading it failed.
    backend : LlamaBackend
        Factory for engine resources.
    context_length : int or None, optional
        Context size for new execution contexts; the trained length if None.
    flash_attention : bool, optional
        Request flash attention where the architecture supports it.
    """

    def __init__(
        self,
        path: str,
        model_id: str,
        metadata: ModelMetadata | None,
        *,
        backend: LlamaBackend,
        context_length: int | None = DEFAULT_CONTEXT_LENGTH,
        flash_attention: bool = DEFAULT_FLASH_ATTENTION,
    ) -> None:
        self.path = os.path.abspath(path)
        self.model_id = model_id
        self.metadata = metadata
        self.backend = backend
        self.context_length = context_length
        self.flash_attention = flash_attention

        self.stat = os.stat(self.path)
        self.size = self.stat.st_size
        self.created = int(self.stat.st_ctime)

        # The only lock guarding the model's single sequence
        self.sequence_lock = AsyncMutex(name=f"sequence:{model_id}")

        self._weights: LazyStage[Any] = LazyStage("weights", dispose=_closer("weights"))
        self._context: LazyStage[Any] = LazyStage("context", dispose=_closer("context"))
        self._sequence: LazyStage[Any] = LazyStage("sequence", dispose=_closer("sequence"))
        self._chat_session: LazyStage[Any] = LazyStage(
            "chat_session", dispose=_closer("chat_session")
        )
        self._completion: LazyStage[Any] = LazyStage("completion", dispose=_closer("completion"))
        self._log = logger.bind(model=model_id)

    @classmethod
    async def create(
        cls,
        path: str,
        model_id: str,
        *,
        backend: LlamaBackend,
        context_length: int | None = DEFAULT_CONTEXT_LENGTH,
        flash_attention: bool = DEFAULT_FLASH_ATTENTION,
    ) -> ModelHandle:
        """Build a handle, reading metadata on a worker thread.

        A metadata failure is logged and leaves ``metadata`` as ``None``; the
        handle is still returned. Failing to stat the file propagates.
        """
        try:
            metadata = await asyncio.to_thread(backend.load_metadata, path)
        except Exception as e:
            logger.bind(model=model_id).error(
                f"Failed to read metadata of {path}. {type(e).__name__}: {e}"
            )
            metadata = None
        return cls(
            path,
            model_id,
            metadata,
            backend=backend,
            context_length=context_length,
            flash_attention=flash_attention,
        )

    def __repr__(self) -> str:
        state = "loaded" if self.is_loaded else "unloaded"
        return f"<ModelHandle {self.model_id} {state}>"

    @property
    def is_loaded(self) -> bool:
        """Whether the weights are resident."""
        return self._weights.is_ready

    @property
    def name(self) -> str | None:
        return self.metadata.name if self.metadata is not None else None

    @property
    def filename(self) -> str:
        return Path(self.path).name

    def _require_metadata(self) -> ModelMetadata:
        if self.metadata is None:
            raise ModelNotLoadedError(self.path)
        return self.metadata

    # ------------------------------------------------------------------
    # Tokenizer
    # ------------------------------------------------------------------

    def encode(self, text: str) -> list[int]:
        """Tokenize ``text`` without special tokens."""
        return self._require_metadata().tokenizer.encode(text)

    def decode(self, tokens: Sequence[int]) -> str:
        return self._require_metadata().tokenizer.decode(tokens)

    def render_chat_template(self, messages: list[dict[str, str]]) -> str:
        """Render role-tagged messages with the model's chat template."""
        return self._require_metadata().chat_formatter.render(messages)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def load_weights(self) -> Any:
        """Return the resident weights, loading them on first use.

        Raises
        ------
        ModelLoadError
            If llama.cpp fails to load the file. The stage stays unloaded
            and the next call retries.
        """
        metadata = self._require_metadata()

        async def _load() -> Any:
            flash_attention = self.flash_attention and metadata.flash_attention_supported
            self._log.info(f"Loading weights from {self.path}")
            try:
                weights = await asyncio.to_thread(
                    self.backend.load_weights,
                    self.path,
                    context_length=self.context_length,
                    flash_attention=flash_attention,
                )
            except Exception as e:
                raise ModelLoadError(self.path, e) from e
            self._log.info("Weights loaded")
            return weights

        return await self._weights.get(_load)

    async def get_context(self, token: CancellationToken) -> Any:
        """Return the execution context, creating it over the weights."""

        async def _create() -> Any:
            weights = await self.load_weights()
            token.raise_if_cancelled()
            return await asyncio.to_thread(self.backend.create_context, weights, token)

        return await self._context.get(_create)

    async def get_sequence(self, token: CancellationToken) -> Any:
        """Return the model's single sequence."""

        async def _create() -> Any:
            context = await self.get_context(token)
            return self.backend.create_sequence(context)

        return await self._sequence.get(_create)

    async def get_chat_session(self, token: CancellationToken) -> Any:
        metadata = self._require_metadata()

        async def _create() -> Any:
            sequence = await self.get_sequence(token)
            return self.backend.create_chat_session(sequence, metadata)

        return await self._chat_session.get(_create)

    async def get_completion(self, token: CancellationToken) -> Any:
        async def _create() -> Any:
            sequence = await self.get_sequence(token)
            return self.backend.create_completion(sequence)

        return await self._completion.get(_create)

    async def create_embedding_context(self, token: CancellationToken) -> Any:
        """Create a fresh embedding context; the caller must close it."""
        self._require_metadata()
        token.raise_if_cancelled()
        try:
            return await asyncio.to_thread(
                self.backend.create_embedding_context,
                self.path,
                context_length=self.context_length,
            )
        except Exception as e:
            raise ModelLoadError(self.path, e) from e

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def unload(self) -> None:
        """Release every stage, consumers first and weights last.

        All stages are reset even if one of them fails to close; the first
        failure is re-raised afterwards.
        """
        was_loaded = self.is_loaded
        first_error: Exception | None = None
        for stage in (
            self._completion,
            self._chat_session,
            self._sequence,
            self._context,
            self._weights,
        ):
            try:
                await stage.reset()
            except Exception as e:
                self._log.error(f"Failed to release {stage.name}. {type(e).__name__}: {e}")
                if first_error is None:
                    first_error = e
        if was_loaded:
            self._log.info("Weights unloaded")
        if first_error is not None:
            raise first_error

    async def dispose(self) -> None:
        """Unload, then release the vocab-only tokenizer model."""
        try:
            await self.unload()
        finally:
            if self.metadata is not None:
                tokenizer = self.metadata.tokenizer
                self.metadata = None
                await asyncio.to_thread(tokenizer.close)
