"""confidant models: list models the inference server offers."""

from __future__ import annotations

import click

from .common import common_options


@click.command()
@common_options
def models(config_path: str | None, log_level: str | None) -> None:
    """List models available on the LLM server."""
    from confidant.core.cli.common import configure_logging, load_config, run_with_gateway

    config = load_config(config_path)
    configure_logging(config, log_level)

    available = run_with_gateway(config, lambda gw: gw.get_available_models())
    if not available:
        click.echo("The server reports no models.")
        return
    for model in available:
        name = model.get("name", "")
        click.echo(model["id"] if name in ("", model["id"]) else f"{model['id']}  ({name})")
