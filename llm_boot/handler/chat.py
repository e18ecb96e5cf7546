"""Chat completion requests."""

from __future__ import annotations

from typing import Any, ClassVar

from ..const import AUDIO_PLACEHOLDER_TEMPLATE, IMAGE_PLACEHOLDER
from ..core.model_handle import ModelHandle
from ..core.mutex import AsyncMutex
from ..models.errors import UnsupportedInputError
from ..models.llama_cpp import GenerationOptions
from ..schemas.openai import (
    ChatCompletionChunk,
    ChatCompletionContentPartImage,
    ChatCompletionContentPartInputAudio,
    ChatCompletionRequest,
    ChatCompletionResponse,
    Choice,
    Delta,
    Message,
    StreamingChoice,
    UsageInfo,
)
from .base import ChunkCallback, RequestSession, emit_chunk, finish_reason_for

JSON_OBJECT_SCHEMA: dict[str, Any] = {"type": "object", "additionalProperties": True}


def message_to_text(message: Message) -> str:
    """Flatten a message's content parts into plain text.

    Images and audio cannot be fed to a text-only model; each is replaced by
    a fixed placeholder on its own line.
    """
    content = message.content
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    text = ""
    for part in content:
        if isinstance(part, ChatCompletionContentPartImage):
            text += "\n" + IMAGE_PLACEHOLDER
        elif isinstance(part, ChatCompletionContentPartInputAudio):
            audio_format = part.input_audio.format if part.input_audio else "unknown"
            text += "\n" + AUDIO_PLACEHOLDER_TEMPLATE.format(format=audio_format)
        else:
            text += part.text
    return text


def response_format_schema(response_format: dict[str, Any] | None) -> dict[str, Any] | None:
    """Return the JSON schema a ``response_format`` asks for, if any."""
    if not response_format:
        return None
    kind = response_format.get("type")
    if kind == "json_object":
        return JSON_OBJECT_SCHEMA
    if kind == "json_schema":
        json_schema = response_format.get("json_schema") or {}
        schema = json_schema.get("schema")
        if schema:
            return schema
    return None


class ChatCompletionSession(RequestSession[ChatCompletionRequest, ChatCompletionResponse]):
    """A ``/v1/chat/completions`` request.

    Every message but the last becomes chat history; the last one, which
    must come from the user, is the prompt.
    """

    admission: ClassVar[AsyncMutex] = AsyncMutex(name="chat-completions")
    id_prefix: ClassVar[str] = "chatcmpl"

    def validate(self) -> None:
        messages = self.body.messages
        if not messages:
            raise UnsupportedInputError("The conversation must have at least one message.")
        if messages[-1].role != "user":
            raise UnsupportedInputError("The last message must be a user message.")
        self.history = [
            {"role": message.role, "content": message_to_text(message)}
            for message in messages[:-1]
        ]
        self.prompt = message_to_text(messages[-1])

    def _generation_options(self) -> GenerationOptions:
        request = self.body
        max_tokens = request.max_tokens
        if max_tokens is None:
            max_tokens = request.max_completion_tokens
        return GenerationOptions(
            temperature=request.temperature,
            top_p=request.top_p,
            max_tokens=max_tokens,
            stop=list(request.stop or []),
            frequency_penalty=request.frequency_penalty,
            presence_penalty=request.presence_penalty,
        )

    async def prepare(self, handle: ModelHandle) -> None:
        self.options = self._generation_options()
        schema = response_format_schema(self.body.response_format)
        if schema is not None:
            try:
                self.options.grammar = handle.backend.create_grammar(schema)
            except Exception as e:
                raise UnsupportedInputError(f"Invalid response_format schema: {e}") from e

        await self.registry.load(handle)
        self.session = await handle.get_chat_session(self.token)
        self.session.set_history(self.history)

        # Usage counts the rendered history that precedes the prompt
        self.prompt_tokens = len(handle.encode(handle.render_chat_template(self.history)))

    def usage(self) -> UsageInfo:
        return UsageInfo(
            prompt_tokens=self.prompt_tokens,
            completion_tokens=self.completion_tokens,
            total_tokens=self.total_tokens,
        )

    def build_chunk(self, content: str, finish_reason: str | None = None) -> ChatCompletionChunk:
        include_usage = bool(
            self.body.stream_options and self.body.stream_options.include_usage
        )
        return ChatCompletionChunk(
            id=self.id,
            created=self.created,
            model=self.model_name,
            choices=[
                StreamingChoice(
                    index=0,
                    delta=Delta(role="assistant", content=content),
                    finish_reason=finish_reason,
                )
            ],
            usage=self.usage() if include_usage else None,
        )

    async def generate(self, on_chunk: ChunkCallback | None) -> ChatCompletionResponse:
        async def _on_text(text: str) -> None:
            self.count_completion(text)
            await emit_chunk(on_chunk, self.build_chunk(text))

        result = await self.session.prompt(self.prompt, self.options, self.token, _on_text)
        finish_reason = finish_reason_for(result.stop_reason)
        await emit_chunk(on_chunk, self.build_chunk("", finish_reason))
        return ChatCompletionResponse(
            id=self.id,
            created=self.created,
            model=self.model_name,
            choices=[
                Choice(
                    index=0,
                    message=Message(role="assistant", content=result.text, refusal=None),
                    finish_reason=finish_reason,
                )
            ],
            usage=self.usage(),
        )
