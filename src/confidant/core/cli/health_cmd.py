"""confidant health: check that the gateway can reach its server."""

from __future__ import annotations

import sys

import click

from .common import common_options


@click.command()
@common_options
def health(config_path: str | None, log_level: str | None) -> None:
    """Check the LLM server connection and gateway status."""
    from rich.console import Console
    from rich.panel import Panel
    from rich.text import Text

    from confidant.core.cli.common import configure_logging, load_config, run_with_gateway

    config = load_config(config_path)
    configure_logging(config, log_level)

    status = run_with_gateway(config, lambda gw: gw.health_check())

    lines = [
        f"Endpoint:  {status.endpoint}",
        f"Reachable: {'yes' if status.server_reachable else 'no'}",
    ]
    if status.rate_limit:
        lines.append(
            f"Requests:  {status.rate_limit['current_requests']}/{status.rate_limit['requests_per_minute']} this minute"
        )
    lines += [f"Warning:   {warning}" for warning in status.warnings]
    lines.append("Status:    " + ("healthy" if status.healthy else "unhealthy"))

    Console().print(Panel(Text("\n".join(lines)), title="Gateway health", expand=False))
    if not status.healthy:
        sys.exit(1)
