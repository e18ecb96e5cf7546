"""Server configuration dataclass and YAML loading.

This module exposes ``LLMBootConfig``, a dataclass holding every setting the
gateway needs, and ``load_config`` which builds one from a YAML file. JSON
is valid YAML, so JSON config files load unchanged.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from loguru import logger
import yaml

from .const import (
    DEFAULT_BIND_HOST,
    DEFAULT_BODY_LIMIT,
    DEFAULT_CONTEXT_LENGTH,
    DEFAULT_FLASH_ATTENTION,
    DEFAULT_LOG_FILE,
    DEFAULT_LOG_LEVEL,
    DEFAULT_MODEL_EXTENSION,
    DEFAULT_NO_DOCS,
    DEFAULT_NO_LOG_FILE,
    DEFAULT_PORT,
    MIN_BODY_LIMIT,
)

_TRUE_BOOL_LITERALS = {"1", "true", "yes", "on"}
_FALSE_BOOL_LITERALS = {"0", "false", "no", "off"}

# Keys accepted in the file under another name
_KEY_ALIASES = {"bodyLimit": "body_limit", "modelDirs": "model_dirs", "noDocs": "no_docs"}


class ConfigError(RuntimeError):
    """Raised when the configuration file is missing or invalid."""


@dataclass
class LLMBootConfig:
    """Container for server configuration values.

    ``__post_init__`` normalizes values that may arrive as strings from YAML
    or the CLI and enforces the minimum body limit.
    """

    model_dirs: list[str] = field(default_factory=list)
    host: str = DEFAULT_BIND_HOST
    port: int = DEFAULT_PORT
    no_docs: bool = DEFAULT_NO_DOCS
    body_limit: int = DEFAULT_BODY_LIMIT
    model_extension: str = DEFAULT_MODEL_EXTENSION
    context_length: int | None = DEFAULT_CONTEXT_LENGTH
    flash_attention: bool = DEFAULT_FLASH_ATTENTION
    log_file: str | None = DEFAULT_LOG_FILE
    no_log_file: bool = DEFAULT_NO_LOG_FILE
    log_level: str = DEFAULT_LOG_LEVEL
    source_path: Path | None = None

    def __post_init__(self) -> None:
        """Normalize and validate fields.

        Raises
        ------
        ValueError
            If ``model_dirs`` is empty or a numeric/boolean field is invalid.
        """
        if isinstance(self.model_dirs, str):
            self.model_dirs = [self.model_dirs]
        self.model_dirs = [str(d).strip() for d in self.model_dirs if str(d).strip()]
        if not self.model_dirs:
            raise ValueError("model_dirs must list at least one directory")

        self.port = _coerce_positive_int(self.port, field_name="port")
        self.no_docs = _coerce_bool(self.no_docs, field_name="no_docs")
        self.flash_attention = _coerce_bool(self.flash_attention, field_name="flash_attention")
        self.no_log_file = _coerce_bool(self.no_log_file, field_name="no_log_file")

        body_limit = _coerce_positive_int(self.body_limit, field_name="body_limit")
        if body_limit < MIN_BODY_LIMIT:
            logger.warning(
                f"body_limit {body_limit} is below the minimum, using {MIN_BODY_LIMIT} bytes"
            )
            body_limit = MIN_BODY_LIMIT
        self.body_limit = body_limit

        if self.context_length is not None:
            self.context_length = _coerce_positive_int(
                self.context_length,
                field_name="context_length",
                friendly_name="Context length",
            )

        self.model_extension = self.model_extension.strip().lower()
        if not self.model_extension.startswith("."):
            self.model_extension = f".{self.model_extension}"

        if isinstance(self.log_level, str):
            self.log_level = self.log_level.upper()

    def resolved_model_dirs(self) -> list[Path]:
        """Model roots; relative entries resolve against the config file."""
        base = self.source_path.parent if self.source_path is not None else Path.cwd()
        resolved = []
        for entry in self.model_dirs:
            path = Path(entry).expanduser()
            if not path.is_absolute():
                path = base / path
            resolved.append(path.resolve())
        return resolved


def _coerce_bool(value: Any, *, field_name: str) -> bool:
    """Normalize a boolean-like value that may come from CLI or YAML."""

    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in _TRUE_BOOL_LITERALS:
            return True
        if normalized in _FALSE_BOOL_LITERALS:
            return False
        raise ValueError(f"{field_name} must be a boolean value (got '{value}')")
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    raise ValueError(f"{field_name} must be a boolean value (got {value!r})")


def _coerce_positive_int(value: Any, *, field_name: str, friendly_name: str | None = None) -> int:
    """Normalize a positive integer value, raising when invalid."""

    if isinstance(value, bool):
        raise TypeError(f"{field_name} must be an integer value (got boolean)")
    if isinstance(value, int):
        candidate = value
    elif isinstance(value, str):
        try:
            candidate = int(value.strip())
        except ValueError as exc:
            raise ValueError(f"{field_name} must be an integer value") from exc
    else:
        raise TypeError(f"{field_name} must be an integer value (got {type(value).__name__})")

    label = friendly_name or field_name
    if candidate <= 0:
        raise ValueError(f"{label} must be a positive integer")
    return candidate


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load and parse a YAML file.

    Raises
    ------
    ConfigError
        If the file is not found, parsing fails, or the root is not a mapping.
    """
    try:
        with path.open("r", encoding="utf-8") as fh:
            loaded = yaml.safe_load(fh) or {}
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {path}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse config '{path}': {e}") from e

    if not isinstance(loaded, dict):
        raise ConfigError("Config root must be a mapping")
    return loaded


def load_config(path: str | Path, **overrides: Any) -> LLMBootConfig:
    """Build an :class:`LLMBootConfig` from a YAML (or JSON) file.

    Both ``server: {host, port}`` and flat ``host``/``port`` keys are
    accepted; flat keys win. Keyword ``overrides`` whose value is not
    ``None`` replace file values (the CLI passes its options this way).

    Raises
    ------
    ConfigError
        If the file cannot be read or holds invalid values.
    """
    config_path = Path(path).expanduser()
    raw = _load_yaml(config_path)

    values: dict[str, Any] = {}
    server = raw.pop("server", None)
    if server is not None:
        if not isinstance(server, dict):
            raise ConfigError("'server' must be a mapping")
        for key in ("host", "port"):
            if key in server:
                values[key] = server[key]

    known = {f.name for f in fields(LLMBootConfig)} - {"source_path"}
    for key, value in raw.items():
        name = _KEY_ALIASES.get(key, key)
        if name not in known:
            logger.warning(f"Ignoring unknown config key '{key}' in {config_path}")
            continue
        values[name] = value

    values.update({k: v for k, v in overrides.items() if v is not None})

    try:
        return LLMBootConfig(source_path=config_path.resolve(), **values)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid config '{config_path}': {e}") from e
