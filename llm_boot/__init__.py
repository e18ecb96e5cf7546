"""llm-boot: OpenAI-compatible gateway for local GGUF models."""

from .version import __version__

__all__ = ["__version__"]
