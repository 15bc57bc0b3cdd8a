"""Shared setup logic for CLI commands."""

from __future__ import annotations

import asyncio
import os
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

import click

if TYPE_CHECKING:
    from confidant.core.config import Config
    from confidant.gateway.llm_gateway import LLMGateway

CONFIDANT_DIR = Path.home() / ".confidant"
CONFIG_PATH = CONFIDANT_DIR / "config.yaml"

LOG_LEVELS = ["TRACE", "DEBUG", "INFO", "WARNING", "ERROR"]

T = TypeVar("T")


def common_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Add ``--config`` and ``--log-level`` to a command."""
    func = click.option(
        "--log-level",
        type=click.Choice(LOG_LEVELS, case_sensitive=False),
        default=None,
        help="Override logging.level from the config.",
    )(func)
    return click.option(
        "--config",
        "config_path",
        type=click.Path(dir_okay=False),
        default=None,
        help=f"Config file (YAML or JSON). Defaults to {CONFIG_PATH}.",
    )(func)


def load_config(config_path: str | None = None) -> Config:
    """Load config from *config_path*, or ~/.confidant/config.yaml when present."""
    from confidant.core.config import Config

    if config_path is None and CONFIG_PATH.exists():
        config_path = str(CONFIG_PATH)
    elif config_path is not None and not os.path.exists(os.path.expanduser(config_path)):
        click.echo(f"Config file not found: {config_path}", err=True)
        sys.exit(1)
    return Config(config_file=config_path)


def configure_logging(config: Config, level: str | None = None) -> None:
    from confidant.core.utils.logging import setup_logging

    setup_logging(level=level or config.get("logging.level", "WARNING"), log_file=config.get("logging.file"))


def run_with_gateway(config: Config, action: Callable[[LLMGateway], Awaitable[T]]) -> T:
    """Build a gateway, run *action* against it, and close it.

    Gateway errors are reported with a friendly message and exit code 1.
    """
    from confidant.core.exceptions import ConfidantError, friendly_error_message
    from confidant.gateway.llm_gateway import create_gateway

    async def _run() -> T:
        async with create_gateway(config) as gateway:
            return await action(gateway)

    try:
        return asyncio.run(_run())
    except ConfidantError as e:
        click.echo(friendly_error_message(e), err=True)
        sys.exit(1)
