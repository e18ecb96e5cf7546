"""Embedding requests."""

from __future__ import annotations

import asyncio
import base64
from typing import Any, ClassVar, Literal

from loguru import logger
import numpy as np

from ..core.model_handle import ModelHandle
from ..core.mutex import AsyncMutex
from ..models.errors import ModelNotLoadedError, UnsupportedInputError
from ..schemas.openai import (
    EmbeddingRequest,
    EmbeddingResponse,
    EmbeddingResponseData,
    EmbeddingUsage,
)
from .base import ChunkCallback, RequestSession


def create_response_embeddings(
    embeddings: list[list[float]],
    model: str,
    encoding_format: Literal["float", "base64"] = "float",
    usage: EmbeddingUsage | None = None,
) -> EmbeddingResponse:
    """Create embedding response data from embeddings list.

    Parameters
    ----------
    embeddings : list[list[float]]
        List of embedding vectors.
    model : str
        Model name used for embeddings.
    encoding_format : Literal["float", "base64"], optional
        Encoding format for embeddings, by default "float".
    usage : EmbeddingUsage or None, optional
        Token usage of the call.

    Returns
    -------
    EmbeddingResponse
        Formatted embedding response.
    """
    embeddings_response = []
    for index, embedding in enumerate(embeddings):
        if encoding_format == "base64":
            # Little-endian float32, as OpenAI clients decode it
            embedding_bytes = np.array(embedding, dtype=np.float32).tobytes()
            encoded: list[float] | str = base64.b64encode(embedding_bytes).decode("utf-8")
        else:
            encoded = embedding
        embeddings_response.append(EmbeddingResponseData(embedding=encoded, index=index))
    return EmbeddingResponse(data=embeddings_response, model=model, usage=usage)


class EmbeddingsSession(RequestSession[EmbeddingRequest, EmbeddingResponse]):
    """A ``/v1/embeddings`` request.

    Only text inputs can be embedded; any other item type fails the whole
    call. The embedding context is created for the request and closed with
    the session. The model's sequence lock is held meanwhile so embeddings
    never run while the same model is being unloaded for another request.
    """

    admission: ClassVar[AsyncMutex] = AsyncMutex(name="embeddings")
    id_prefix: ClassVar[str] = "embd"

    def validate(self) -> None:
        self.documents = self.body.input_items
        for document in self.documents:
            if document.type != "text":
                raise UnsupportedInputError(f"Embedding type {document.type} is not supported.")
        self.embedding_context: Any | None = None

    async def prepare(self, handle: ModelHandle) -> None:
        self.embedding_context = await self.registry.create_embedding_context(handle, self.token)
        self.prompt_tokens = sum(len(handle.encode(doc.content)) for doc in self.documents)

    def usage(self) -> EmbeddingUsage:
        return EmbeddingUsage(prompt_tokens=self.prompt_tokens, total_tokens=self.prompt_tokens)

    async def generate(self, on_chunk: ChunkCallback | None) -> EmbeddingResponse:
        if self.embedding_context is None:
            raise ModelNotLoadedError(self.model_name)
        vectors: list[list[float]] = []
        for document in self.documents:
            self.token.raise_if_cancelled()
            vectors.append(await self.embedding_context.embed(document.content, self.token))
        return create_response_embeddings(
            vectors,
            self.model_name,
            self.body.encoding_format,
            usage=self.usage(),
        )

    async def release_resources(self) -> None:
        context, self.embedding_context = self.embedding_context, None
        if context is None:
            return
        try:
            await asyncio.to_thread(context.close)
        except Exception as e:
            logger.error(f"Failed to close embedding context. {type(e).__name__}: {e}")
