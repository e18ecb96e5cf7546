"""Raw text completion requests."""

from __future__ import annotations

from typing import ClassVar

from ..core.model_handle import ModelHandle
from ..core.mutex import AsyncMutex
from ..models.errors import UnsupportedInputError
from ..models.llama_cpp import GenerationOptions, GenerationResult
from ..schemas.openai import (
    CompletionChoice,
    CompletionChunk,
    CompletionRequest,
    CompletionResponse,
    UsageInfo,
)
from .base import ChunkCallback, RequestSession, emit_chunk, finish_reason_for


class CompletionSession(RequestSession[CompletionRequest, CompletionResponse]):
    """A ``/v1/completions`` request with one prompt or a batch of prompts.

    A batch runs its prompts one after another through the model's single
    sequence and answers with one choice per prompt. Batches cannot stream.
    """

    admission: ClassVar[AsyncMutex] = AsyncMutex(name="completions")
    id_prefix: ClassVar[str] = "cmpl"

    def validate(self) -> None:
        self.prompts = self.body.prompts
        if not self.prompts:
            raise UnsupportedInputError("The prompt must not be empty.")
        if len(self.prompts) > 1 and self.body.stream:
            raise UnsupportedInputError("Streaming mode with multiple prompts is not supported.")

    async def prepare(self, handle: ModelHandle) -> None:
        request = self.body
        self.options = GenerationOptions(
            temperature=request.temperature,
            top_p=request.top_p,
            max_tokens=request.max_tokens,
            stop=list(request.stop or []),
            frequency_penalty=request.frequency_penalty,
            presence_penalty=request.presence_penalty,
        )
        await self.registry.load(handle)
        self.completion = await handle.get_completion(self.token)
        self.prompt_tokens = len(handle.encode("\n".join(self.prompts)))

    def usage(self) -> UsageInfo:
        return UsageInfo(
            prompt_tokens=self.prompt_tokens,
            completion_tokens=self.completion_tokens,
            total_tokens=self.total_tokens,
        )

    def build_chunk(self, text: str, finish_reason: str | None = None) -> CompletionChunk:
        include_usage = bool(
            self.body.stream_options and self.body.stream_options.include_usage
        )
        return CompletionChunk(
            id=self.id,
            created=self.created,
            model=self.model_name,
            choices=[CompletionChoice(index=0, text=text, finish_reason=finish_reason)],
            usage=self.usage() if include_usage else None,
        )

    async def _run(self, prompt: str, on_chunk: ChunkCallback | None) -> GenerationResult:
        async def _on_text(text: str) -> None:
            self.count_completion(text)
            await emit_chunk(on_chunk, self.build_chunk(text))

        return await self.completion.generate(prompt, self.options, self.token, _on_text)

    async def generate(self, on_chunk: ChunkCallback | None) -> CompletionResponse:
        if len(self.prompts) == 1:
            result = await self._run(self.prompts[0], on_chunk)
            finish_reason = finish_reason_for(result.stop_reason)
            await emit_chunk(on_chunk, self.build_chunk("", finish_reason))
            results = [result]
        else:
            results = []
            for prompt in self.prompts:
                self.token.raise_if_cancelled()
                results.append(await self._run(prompt, None))

        return CompletionResponse(
            id=self.id,
            created=self.created,
            model=self.model_name,
            choices=[
                CompletionChoice(
                    index=index,
                    text=result.text,
                    finish_reason=finish_reason_for(result.stop_reason),
                )
                for index, result in enumerate(results)
            ],
            usage=self.usage(),
        )
