"""Application server helpers.

This module builds the FastAPI application for the llm-boot gateway:
logging setup, the lifespan that owns the :class:`ModelRegistry`, route and
middleware registration, and the Uvicorn configuration.

Notes
-----
The server uses loguru for structured logging and supports both console and
rotating file output. Records bound to a model (``logger.bind(model=...)``)
carry the model id in their prefix.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager, suppress
from http import HTTPStatus
from pathlib import Path
import sys
import time
from typing import Any

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.responses import Response
import uvicorn

from .api.endpoints import router
from .config import LLMBootConfig
from .const import DEFAULT_BODY_LIMIT, DEFAULT_LOG_PATH
from .core.model_registry import ModelRegistry
from .middleware import BodyLimitMiddleware, RequestTrackingMiddleware
from .version import __version__


def _tag_model(record: dict[str, Any]) -> None:
    model = record["extra"].get("model")
    record["extra"]["model_tag"] = f"[{model}] " if model else ""


CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "✦ {extra[model_tag]}<level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level} | {extra[model_tag]}{message}"


def configure_logging(
    log_file: str | None = None,
    *,
    no_log_file: bool = False,
    log_level: str = "INFO",
) -> None:
    """Set up loguru handlers used by the server.

    This helper replaces the default loguru handler with a console
    handler using a compact, colored format. When `no_log_file` is
    ``False`` a rotating file handler is also added using ``log_file``
    or a default path.

    Parameters
    ----------
    log_file : str, optional
        Optional filesystem path where logs should be written. When
        ``None`` and file logging is enabled ``logs/app.log`` is used.
    no_log_file : bool, default False (keyword-only)
        When True, file logging is disabled and only console logs are
        emitted.
    log_level : str, default "INFO"
        Minimum log level to emit (e.g. "DEBUG", "INFO").
    """
    logger.remove()
    logger.configure(patcher=_tag_model)

    # stderr avoids BrokenPipeError when stdout is closed
    logger.add(
        sys.stderr,
        level=log_level,
        format=CONSOLE_FORMAT,
        colorize=True,
        enqueue=True,
    )
    if not no_log_file:
        file_path = log_file if log_file else DEFAULT_LOG_PATH
        with suppress(Exception):
            Path(file_path).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            file_path,
            rotation="1 MB",
            retention="10 days",
            level=log_level,
            format=FILE_FORMAT,
            enqueue=True,
        )


def create_registry(config: LLMBootConfig) -> ModelRegistry:
    """Build the model registry described by ``config``."""
    return ModelRegistry(
        config.resolved_model_dirs(),
        extension=config.model_extension,
        context_length=config.context_length,
        flash_attention=config.flash_attention,
    )


def create_lifespan(
    config: LLMBootConfig,
) -> Callable[[FastAPI], AbstractAsyncContextManager[None]]:
    """Create an async FastAPI lifespan context manager bound to configuration.

    During startup the model registry is created and its initial directory
    scans complete before the server accepts requests. During shutdown the
    watchers stop and every model handle is disposed.

    Parameters
    ----------
    config : LLMBootConfig
        Server configuration.

    Returns
    -------
    Callable
        An async context manager usable as FastAPI ``lifespan``.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        registry = create_registry(config)
        await registry.start()
        app.state.model_registry = registry
        logger.info(f"Tracking {len(registry)} models in {', '.join(config.model_dirs)}")

        yield

        logger.info("Shutting down application")
        try:
            await registry.aclose()
            logger.info("Resources cleaned up successfully")
        except Exception as e:
            logger.error(f"Error during shutdown. {type(e).__name__}: {e}")
        app.state.model_registry = None

    return lifespan


def setup_server(config: LLMBootConfig) -> uvicorn.Config:
    """Create and configure the FastAPI app and return a Uvicorn config.

    Parameters
    ----------
    config : LLMBootConfig
        Configuration usually produced by the CLI from the config file.

    Returns
    -------
    uvicorn.Config
        A configuration object that can be passed to
        ``uvicorn.Server(config).serve()`` to start the application.
    """
    configure_logging(
        log_file=config.log_file,
        no_log_file=config.no_log_file,
        log_level=config.log_level,
    )

    docs_kwargs: dict[str, Any] = {}
    if config.no_docs:
        docs_kwargs = {"docs_url": None, "redoc_url": None, "openapi_url": None}

    app = FastAPI(
        title="OpenAI-compatible API",
        description="OpenAI-compatible chat, completion and embedding API over local GGUF models",
        version=__version__,
        lifespan=create_lifespan(config),
        **docs_kwargs,
    )
    app.state.server_config = config

    configure_fastapi_app(app, body_limit=config.body_limit)

    logger.info(f"Starting server on {config.host}:{config.port}")
    return uvicorn.Config(
        app=app,
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
        access_log=True,
    )


def configure_fastapi_app(app: FastAPI, *, body_limit: int = DEFAULT_BODY_LIMIT) -> None:
    """Register routers, middleware, and global handlers on ``app``.

    Parameters
    ----------
    app : FastAPI
        FastAPI application instance to configure.
    body_limit : int, optional
        Largest accepted request body in bytes.
    """
    app.include_router(router)
    app.add_middleware(RequestTrackingMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(BodyLimitMiddleware, limit=body_limit)

    @app.middleware("http")
    async def add_process_time_header(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        """Attach timing metadata and count served requests."""
        start_time = time.time()
        response = await call_next(request)
        process_time = time.time() - start_time
        response.headers["X-Process-Time"] = str(process_time)

        request.app.state.request_count = getattr(request.app.state, "request_count", 0) + 1
        return response

    @app.exception_handler(Exception)
    async def global_exception_handler(_request: Request, exc: Exception) -> JSONResponse:
        """Log unexpected exceptions and emit a generic payload.

        HTTP-like exceptions keep their status code and detail.
        """
        status_code = getattr(exc, "status_code", None)
        if isinstance(status_code, int):
            detail = getattr(exc, "detail", None)
            return JSONResponse(status_code=status_code, content={"detail": detail})

        logger.exception(f"Global exception handler caught. {type(exc).__name__}: {exc}")
        return JSONResponse(
            status_code=HTTPStatus.INTERNAL_SERVER_ERROR,
            content={"error": {"message": "Internal server error", "type": "internal_error"}},
        )
