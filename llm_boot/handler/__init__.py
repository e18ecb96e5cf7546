"""Request sessions for chat completions, text completions and embeddings."""

from .chat import ChatCompletionSession
from .completion import CompletionSession
from .embeddings import EmbeddingsSession

__all__ = ["ChatCompletionSession", "CompletionSession", "EmbeddingsSession"]
