"""Default values shared by the CLI, configuration and server modules."""

from __future__ import annotations

# Server
DEFAULT_BIND_HOST = "0.0.0.0"
DEFAULT_PORT = 4567
DEFAULT_NO_DOCS = False
DEFAULT_CONFIG_PATH = "boot.config.yaml"

# Request bodies carry base64 images, so the limit never drops below 10 MiB
MIN_BODY_LIMIT = 10 * 1024 * 1024
DEFAULT_BODY_LIMIT = 50 * 1024 * 1024

# Models
DEFAULT_MODEL_EXTENSION = ".gguf"
DEFAULT_CONTEXT_LENGTH: int | None = None
DEFAULT_FLASH_ATTENTION = True
MODEL_OWNER = "llm-boot"

# Architectures that llama.cpp cannot run with flash attention enabled
FLASH_ATTENTION_UNSUPPORTED_ARCHS = frozenset({"grok", "gemma2"})

# Logging
DEFAULT_LOG_FILE: str | None = None
DEFAULT_NO_LOG_FILE = False
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_LOG_PATH = "logs/app.log"

# Placeholders substituted for non-text chat content parts
IMAGE_PLACEHOLDER = "<image>a photo.</image>"
AUDIO_PLACEHOLDER_TEMPLATE = '<audio format="{format}">An audio without speech recognition</audio>'
