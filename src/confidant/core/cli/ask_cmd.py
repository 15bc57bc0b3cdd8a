"""confidant ask: send one prompt and print the reply."""

from __future__ import annotations

import click

from .common import common_options


@click.command()
@click.argument("prompt")
@click.option("--stream", is_flag=True, help="Print the reply as it is generated.")
@click.option(
    "--role",
    type=click.Choice(["conversational", "analytical"]),
    default="conversational",
    show_default=True,
    help="Which model cascade to use.",
)
@click.option("--user-id", default=None, help="User whose model preferences apply.")
@click.option("--character-id", default=None, help="Character whose conversational override applies.")
@click.option("--system", "system_prompt", default=None, help="System prompt to send first.")
@common_options
def ask(
    prompt: str,
    stream: bool,
    role: str,
    user_id: str | None,
    character_id: str | None,
    system_prompt: str | None,
    config_path: str | None,
    log_level: str | None,
) -> None:
    """Ask the model a single question."""
    from confidant.core.cli.common import configure_logging, load_config, run_with_gateway
    from confidant.gateway.requests import RequestOptions

    config = load_config(config_path)
    configure_logging(config, log_level)

    options = RequestOptions(
        user_id=user_id,
        character_id=character_id,
        role=role,
        system_prompt=system_prompt,
    )

    if stream:

        def on_chunk(fragment: str, _accumulated: str) -> None:
            click.echo(fragment, nl=False)

        run_with_gateway(config, lambda gw: gw.generate_streaming_response(prompt, (), options, on_chunk=on_chunk))
        click.echo()
    else:
        from rich.console import Console
        from rich.markdown import Markdown

        result = run_with_gateway(config, lambda gw: gw.generate_response(prompt, (), options))
        Console().print(Markdown(result.content))
