"""Server entry point used by the CLI."""

from __future__ import annotations

import sys

from loguru import logger
import uvicorn

from .config import LLMBootConfig
from .server import setup_server
from .version import __version__


def print_startup_banner(config: LLMBootConfig) -> None:
    """Emit a concise startup banner.

    Parameters
    ----------
    config : LLMBootConfig
        Configuration describing host/port/logging and model directories.
    """
    logger.info("━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━")
    logger.info(f"✨ llm-boot v{__version__} Starting ✨")
    logger.info("━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━")
    logger.info(f"🌐 Host: {config.host}")
    logger.info(f"🔌 Port: {config.port}")
    logger.info(f"📝 Log Level: {config.log_level}")
    if config.no_log_file:
        logger.info("📁 Log File: disabled")
    else:
        logger.info(f"📁 Log File: {config.log_file or 'logs/app.log'}")
    for directory in config.resolved_model_dirs():
        logger.info(f"📦 Models: {directory}")
    logger.info(f"🧩 Extension: {config.model_extension}")
    logger.info("━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━")


async def start(config: LLMBootConfig) -> None:
    """Configure and launch the Uvicorn server.

    Parameters
    ----------
    config : LLMBootConfig
        Loaded server configuration.
    """
    try:
        uvconfig = setup_server(config)
        print_startup_banner(config)
        server = uvicorn.Server(uvconfig)
        await server.serve()
    except KeyboardInterrupt:
        logger.info("Server shutdown requested by user. Exiting...")
    except Exception:
        logger.exception("Server startup failed")
        sys.exit(1)
