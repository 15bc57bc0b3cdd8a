"""Confidant CLI: entry point for ask, structured, models, and health commands."""

import click

from confidant import __version__


@click.group()
@click.version_option(version=__version__, package_name="confidant")
def main() -> None:
    """Confidant: talk to the local LLM server through the gateway."""


# Register subcommands (lazy imports keep startup fast)
from .ask_cmd import ask
from .health_cmd import health
from .models_cmd import models
from .structured_cmd import structured

main.add_command(ask)
main.add_command(structured)
main.add_command(models)
main.add_command(health)
