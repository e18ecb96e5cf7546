"""OpenAI-compatible API schemas and models."""

from __future__ import annotations

from enum import Enum
from typing import Any, ClassVar, Literal

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class OpenAIBaseModel(BaseModel):
    """Base model for OpenAI API schemas."""

    # OpenAI API does allow extra fields
    model_config = ConfigDict(extra="allow")

    # Cache class field names
    field_names: ClassVar[set[str] | None] = None

    @model_validator(mode="wrap")
    @classmethod
    def __log_extra_fields__(cls, data, handler):
        result = handler(data)
        if not isinstance(data, dict):
            return result
        field_names = cls.__dict__.get("field_names")
        if field_names is None:
            # Get all class field names and their potential aliases
            field_names = set()
            for field_name, field in cls.model_fields.items():
                field_names.add(field_name)
                if alias := getattr(field, "alias", None):
                    field_names.add(alias)
            cls.field_names = field_names

        # Compare against both field names and aliases
        ignored = data.keys() - field_names
        if ignored:
            logger.debug(f"The following fields were present in the request but ignored: {ignored}")
        return result


class HealthCheckStatus(str, Enum):
    """Health check status."""

    OK = "ok"


class HealthCheckResponse(OpenAIBaseModel):
    """Response model for health check endpoint."""

    status: HealthCheckStatus = Field(..., description="The status of the health check.")
    model_count: int = Field(0, description="Number of model files currently tracked.")


# Chat content parts
class ImageURL(OpenAIBaseModel):
    """Represents an image URL in a message."""

    url: str = Field(..., description="Either a URL of the image or the base64 encoded image data.")


class ChatCompletionContentPartImage(OpenAIBaseModel):
    """Represents an image content part in a chat completion message."""

    image_url: ImageURL | None = Field(
        None, description="The image URL object, if the content is an image."
    )
    type: Literal["image_url"] = Field(..., description="The type of content, e.g., 'image_url'.")


class InputAudio(OpenAIBaseModel):
    """Represents an input audio in a message."""

    data: str = Field(..., description="The base64 encoded audio data.")
    format: str = Field(..., description="The audio format.")


class ChatCompletionContentPartInputAudio(OpenAIBaseModel):
    """Represents an input audio content part in a chat completion message."""

    input_audio: InputAudio | None = Field(
        None, description="The input audio object, if the content is audio."
    )
    type: Literal["input_audio", "audio"] = Field(
        ..., description="The type of content, e.g., 'input_audio'."
    )


class ChatCompletionContentPartText(OpenAIBaseModel):
    """Represents a text content part in a chat completion message."""

    text: str = Field(..., description="The text content.")
    type: Literal["text"] = Field(..., description="The type of content, e.g., 'text'.")


ChatCompletionContentPart = (
    ChatCompletionContentPartImage
    | ChatCompletionContentPartInputAudio
    | ChatCompletionContentPartText
)


class StreamOptions(OpenAIBaseModel):
    """Stream options for a request."""

    include_usage: bool | None = False


class UsageInfo(OpenAIBaseModel):
    """Represents token usage information."""

    prompt_tokens: int = 0
    total_tokens: int = 0
    completion_tokens: int | None = 0


class Message(OpenAIBaseModel):
    """Represents a message in a chat completion."""

    content: str | list[ChatCompletionContentPart] | None = Field(
        None, description="The content of the message, either text or a list of content parts."
    )
    refusal: str | None = Field(None, description="The refusal reason, if any.")
    role: Literal["system", "user", "assistant"] = Field(
        ..., description="The role of the message sender."
    )


def _normalize_stop(value: str | list[str] | None) -> list[str] | None:
    if value is None:
        return None
    if isinstance(value, str):
        return [value]
    return list(value)


class ChatCompletionRequest(OpenAIBaseModel):
    """Model for chat completion requests."""

    model: str = Field(..., description="The model to use for completion.")
    messages: list[Message] = Field(..., description="The list of messages in the conversation.")
    max_tokens: int | None = Field(None, description="The maximum number of tokens to generate.")
    max_completion_tokens: int | None = None
    temperature: float | None = Field(1.0, ge=0, le=2, description="Sampling temperature.")
    top_p: float | None = Field(1.0, ge=0, le=1, description="Nucleus sampling probability.")
    frequency_penalty: float | None = Field(
        None, ge=-2, le=2, description="Frequency penalty for token generation."
    )
    presence_penalty: float | None = Field(
        None, ge=-2, le=2, description="Presence penalty for token generation."
    )
    stop: list[str] | None = Field(None, description="List of stop sequences.")
    n: int | None = Field(1, description="Number of completions to generate.")
    response_format: dict[str, Any] | None = Field(None, description="Format for the response.")
    seed: int | None = Field(None, description="The seed for random number generation.")
    user: str | None = Field(None, description="User identifier.")
    stream: bool | None = Field(False, description="Whether to stream the response.")
    stream_options: StreamOptions | None = None

    @field_validator("stop", mode="before")
    @classmethod
    def coerce_stop(cls, value: str | list[str] | None) -> list[str] | None:
        return _normalize_stop(value)


class Choice(OpenAIBaseModel):
    """Represents a choice in a chat completion response."""

    finish_reason: Literal["stop", "length"] = Field(
        ..., description="The reason for the choice."
    )
    index: int = Field(..., description="The index of the choice.")
    message: Message = Field(..., description="The message of the choice.")
    logprobs: None = None


class ChatCompletionResponse(OpenAIBaseModel):
    """Represents a complete chat completion response."""

    id: str = Field(..., description="The response ID.")
    object: Literal["chat.completion"] = Field(
        "chat.completion", description="The object type, always 'chat.completion'."
    )
    created: int = Field(..., description="The creation timestamp.")
    model: str = Field(..., description="The model used for completion.")
    choices: list[Choice] = Field(..., description="List of choices in the response.")
    usage: UsageInfo | None = Field(default=None, description="The usage of the completion.")


class Delta(OpenAIBaseModel):
    """Represents a delta in a streaming response."""

    content: str | None = Field(None, description="Content of the delta.")
    role: Literal["system", "user", "assistant"] | None = Field(
        None, description="Role of the message sender."
    )


class StreamingChoice(OpenAIBaseModel):
    """Represents a choice in a streaming response."""

    delta: Delta | None = Field(None, description="The delta for this streaming choice.")
    finish_reason: Literal["stop", "length"] | None = Field(
        None, description="The finish reason, if any."
    )
    index: int = Field(..., description="The index of the streaming choice.")


class ChatCompletionChunk(OpenAIBaseModel):
    """Represents a chunk in a streaming chat completion response."""

    id: str = Field(..., description="The chunk ID.")
    choices: list[StreamingChoice] = Field(..., description="List of streaming choices.")
    created: int = Field(..., description="The creation timestamp of the chunk.")
    model: str = Field(..., description="The model used for the chunk.")
    object: Literal["chat.completion.chunk"] = Field(
        "chat.completion.chunk", description="The object type, always 'chat.completion.chunk'."
    )
    usage: UsageInfo | None = Field(default=None, description="The usage of the chunk.")


# Text completions
class CompletionRequest(OpenAIBaseModel):
    """Model for raw text completion requests."""

    model: str = Field(..., description="The model to use for completion.")
    prompt: str | list[str] = Field(..., description="One prompt or a batch of prompts.")
    max_tokens: int | None = Field(16, description="The maximum number of tokens to generate.")
    temperature: float | None = Field(1.0, ge=0, le=2, description="Sampling temperature.")
    top_p: float | None = Field(1.0, ge=0, le=1, description="Nucleus sampling probability.")
    frequency_penalty: float | None = Field(0.0, ge=-2, le=2)
    presence_penalty: float | None = Field(0.0, ge=-2, le=2)
    stop: list[str] | None = Field(None, description="List of stop sequences.")
    n: int | None = Field(1, description="Number of completions to generate.")
    seed: int | None = None
    user: str | None = None
    stream: bool | None = Field(False, description="Whether to stream the response.")
    stream_options: StreamOptions | None = None

    @field_validator("stop", mode="before")
    @classmethod
    def coerce_stop(cls, value: str | list[str] | None) -> list[str] | None:
        return _normalize_stop(value)

    @property
    def prompts(self) -> list[str]:
        """The prompt as a list, one entry per choice."""
        return [self.prompt] if isinstance(self.prompt, str) else list(self.prompt)


class CompletionChoice(OpenAIBaseModel):
    """Represents a choice in a text completion response."""

    index: int = Field(..., description="The index of the choice.")
    text: str = Field(..., description="The generated text.")
    logprobs: None = None
    finish_reason: Literal["stop", "length"] | None = Field(
        None, description="The finish reason, if any."
    )


class CompletionResponse(OpenAIBaseModel):
    """Represents a complete text completion response."""

    id: str = Field(..., description="The response ID.")
    object: Literal["text.completion"] = "text.completion"
    created: int = Field(..., description="The creation timestamp.")
    model: str = Field(..., description="The model used for completion.")
    choices: list[CompletionChoice] = Field(..., description="List of choices in the response.")
    usage: UsageInfo | None = None


class CompletionChunk(OpenAIBaseModel):
    """Represents a chunk in a streaming text completion response."""

    id: str = Field(..., description="The chunk ID.")
    object: Literal["text.completion.chunk"] = "text.completion.chunk"
    created: int = Field(..., description="The creation timestamp of the chunk.")
    model: str = Field(..., description="The model used for the chunk.")
    choices: list[CompletionChoice] = Field(..., description="List of streaming choices.")
    usage: UsageInfo | None = None


# Embedding models
class EmbeddingInputItem(OpenAIBaseModel):
    """Typed embedding input; only ``text`` items can be embedded."""

    type: Literal["text", "image-base64", "image-url"] = Field(..., description="The input kind.")
    content: str = Field(..., description="Text, base64 image data, or an image URL.")


class EmbeddingRequest(OpenAIBaseModel):
    """Model for embedding requests."""

    model: str = Field(..., description="The embedding model to use.")
    input: str | list[str | EmbeddingInputItem] = Field(
        ..., description="Text or a list of texts and typed items to embed."
    )
    user: str | None = Field(default=None, description="User identifier.")
    encoding_format: Literal["float", "base64"] = Field(
        default="float", description="The encoding format for the embedding."
    )
    dimensions: int | None = Field(default=None, description="Accepted and ignored.")

    @property
    def input_items(self) -> list[EmbeddingInputItem]:
        """Every input as a typed item; plain strings become text items."""
        raw = [self.input] if isinstance(self.input, str) else self.input
        return [
            EmbeddingInputItem(type="text", content=item) if isinstance(item, str) else item
            for item in raw
        ]


class EmbeddingResponseData(OpenAIBaseModel):
    """Represents an embedding object in an embedding response."""

    embedding: list[float] | str = Field(
        ..., description="The embedding vector or the base64 encoded embedding."
    )
    index: int = Field(..., description="The index of the embedding in the list.")
    object: str = Field(default="embedding", description="The object type, always 'embedding'.")


class EmbeddingUsage(OpenAIBaseModel):
    """Token usage of an embeddings call."""

    prompt_tokens: int = 0
    total_tokens: int = 0


class EmbeddingResponse(OpenAIBaseModel):
    """Represents an embedding response."""

    object: str = Field("list", description="The object type, always 'list'.")
    data: list[EmbeddingResponseData] = Field(..., description="List of embedding objects.")
    model: str = Field(..., description="The model used for embedding.")
    usage: EmbeddingUsage | None = Field(default=None, description="The usage of the embedding.")


class Model(OpenAIBaseModel):
    """Represents a model in the models list response."""

    id: str = Field(..., description="The model ID.")
    object: str = Field("model", description="The object type, always 'model'.")
    created: int = Field(..., description="The file creation timestamp.")
    owned_by: str = Field("llm-boot", description="The owner of the model.")
    name: str | None = Field(None, description="The model's general.name, if known.")


class ModelsResponse(OpenAIBaseModel):
    """Represents the response for the models list endpoint."""

    object: str = Field("list", description="The object type, always 'list'.")
    data: list[Model] = Field(..., description="List of models.")
