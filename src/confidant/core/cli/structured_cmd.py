"""confidant structured: ask for a JSON answer and print the parsed value."""

from __future__ import annotations

import json
import sys

import click

from .common import common_options


@click.command()
@click.argument("prompt")
@click.option(
    "--schema",
    "schema_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="JSON schema file describing the expected object.",
)
@common_options
def structured(prompt: str, schema_path: str | None, config_path: str | None, log_level: str | None) -> None:
    """Get a structured (JSON) answer, recovering it from messy output."""
    from confidant.core.cli.common import configure_logging, load_config, run_with_gateway

    schema = None
    if schema_path:
        try:
            with open(schema_path) as f:
                schema = json.load(f)
        except json.JSONDecodeError as e:
            click.echo(f"Schema file is not valid JSON: {e}", err=True)
            sys.exit(1)

    config = load_config(config_path)
    configure_logging(config, log_level)

    value = run_with_gateway(config, lambda gw: gw.generate_structured_response(prompt, schema))
    click.echo(json.dumps(value, indent=2, ensure_ascii=False))
