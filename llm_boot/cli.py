"""Command-line interface for the llm-boot server.

This module defines the Click command group used by the package and the
``launch`` command which loads the configuration file and starts the ASGI
server.
"""

from __future__ import annotations

import asyncio
import sys

import click
from loguru import logger

from .config import ConfigError, load_config
from .const import DEFAULT_CONFIG_PATH
from .main import start
from .version import __version__


class UpperChoice(click.Choice[str]):
    """Case-insensitive choice type that returns canonical, uppercase values.

    User input is matched case-insensitively and the canonical option from
    ``self.choices`` is returned, so ``--log-level debug`` stores ``DEBUG``.
    """

    def normalize_choice(self, choice: str | None, ctx: click.Context | None) -> str | None:  # type: ignore[override]
        """Return the canonical, uppercase choice or raise BadParameter.

        Parameters
        ----------
        choice:
            Raw value supplied by the user (may be ``None``).
        ctx:
            Click context object (unused here but part of the API).
        """
        if choice is None:
            return None
        upperchoice = choice.upper()
        for opt in self.choices:
            if opt.upper() == upperchoice:
                return opt
        self.fail(
            f"Invalid choice: {choice}. (choose from {', '.join(self.choices)})",
            param=None,
            ctx=ctx,
        )
        return None


# Basic CLI logging; replaced by the server's handlers on launch
logger.remove()
logger.add(
    sys.stderr,
    format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "✦ <level>{message}</level>",
    colorize=True,
    level="INFO",
)


@click.group()
@click.version_option(
    version=__version__,
    message="""
✨ %(prog)s - OpenAI Compatible API Server for GGUF models ✨
━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
🚀 Version: %(version)s
""",
)
def cli() -> None:
    """Top-level Click command group for the llm-boot CLI.

    Subcommands (such as ``launch``) are registered on this group and
    invoked by the console entry point.
    """


@cli.command(help="Start the llm-boot server from a configuration file")
@click.option(
    "--config",
    "-c",
    "config_path",
    default=DEFAULT_CONFIG_PATH,
    show_default=True,
    type=click.Path(dir_okay=False),
    help="Path to the YAML (or JSON) configuration file.",
)
@click.option("--host", default=None, help="Override the host to bind.")
@click.option("--port", default=None, type=click.IntRange(1, 65535), help="Override the port.")
@click.option(
    "--model-dir",
    "model_dirs",
    multiple=True,
    help="Model directory to watch; repeat to watch several. Replaces the file's list.",
)
@click.option(
    "--log-file",
    default=None,
    type=str,
    help="Path to log file. If not specified, logs will be written to 'logs/app.log' by default.",
)
@click.option(
    "--no-log-file",
    is_flag=True,
    default=None,
    help="Disable file logging entirely. Only console output will be shown.",
)
@click.option(
    "--log-level",
    default=None,
    type=UpperChoice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]),
    help="Set the logging level. Default is INFO.",
)
def launch(
    config_path: str,
    host: str | None,
    port: int | None,
    model_dirs: tuple[str, ...],
    log_file: str | None,
    no_log_file: bool | None,
    log_level: str | None,
) -> None:
    """Load the configuration and run the server until interrupted.

    Options given on the command line override the matching keys of the
    configuration file.

    Parameters
    ----------
    config_path : str
        Configuration file to load.
    host : str or None
        Host to bind instead of the configured one.
    port : int or None
        Port to listen on instead of the configured one.
    model_dirs : tuple[str, ...]
        Directories replacing the configured ``model_dirs``.
    log_file : str or None
        Path to log file.
    no_log_file : bool or None
        Disable file logging entirely.
    log_level : str or None
        Minimum log level.

    Raises
    ------
    click.ClickException
        If the configuration cannot be loaded.
    """
    try:
        config = load_config(
            config_path,
            host=host,
            port=port,
            model_dirs=list(model_dirs) or None,
            log_file=log_file,
            no_log_file=no_log_file or None,
            log_level=log_level,
        )
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc

    asyncio.run(start(config))


if __name__ == "__main__":
    cli()
