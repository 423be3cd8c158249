"""init command: interactive setup wizard.

Writes .difflens.yml with the endpoint, model and batching settings, so
every later `difflens review` only needs an API key in the environment.
"""

from __future__ import annotations

from pathlib import Path

import click
import yaml
from rich.console import Console

console = Console()

_DEFAULT_ENDPOINT = "https://api.openai.com/v1"


@click.command("init")
@click.option(
    "--path",
    "config_path",
    default=".difflens.yml",
    show_default=True,
    help="Where to write the configuration file.",
)
def init_cmd(config_path: str):
    """Set up difflens for this repository.

    Creates (or updates) the configuration file. The API key is never
    written; it is read from DIFFLENS_API_KEY or OPENAI_API_KEY.
    """
    console.print("\n[bold cyan]difflens init[/bold cyan] — setup wizard\n")

    api_format = click.prompt(
        "API format",
        type=click.Choice(["openai", "custom"]),
        default="openai",
    )
    endpoint = click.prompt("API endpoint", default=_DEFAULT_ENDPOINT if api_format == "openai" else "")
    config: dict = {"api_format": api_format, "api_endpoint": endpoint}
    if api_format == "openai":
        config["model"] = click.prompt("Model", default="gpt-4o-mini")

    console.print("\nFailure action:")
    console.print("  [bold]block_commit[/bold] — fail the run on errors (use in commit hooks)")
    console.print("  [bold]warning[/bold]      — report failures as warnings (default)")
    console.print("  [bold]log[/bold]          — report everything as info")
    config["action"] = click.prompt(
        "Action",
        type=click.Choice(["block_commit", "warning", "log"]),
        default="warning",
    )
    config["batch_concurrency"] = click.prompt("Batches reviewed in parallel", type=click.IntRange(1, 8), default=2)

    _write_config(Path(config_path), config)
    console.print(f"[green]Created {config_path}[/green]")
    console.print(
        "\n[yellow]Remember to export [bold]DIFFLENS_API_KEY[/bold] (or OPENAI_API_KEY) "
        "before running a review.[/yellow]"
    )
    console.print("\n[bold green]Setup complete![/bold green]")
    console.print("Run a review with: [bold]difflens review <files>[/bold]")


def _write_config(path: Path, config: dict) -> None:
    """Write or update the config file, preserving any existing keys."""
    existing: dict = {}
    if path.exists():
        existing = yaml.safe_load(path.read_text()) or {}
    existing.update(config)
    path.write_text(yaml.dump(existing, default_flow_style=False, sort_keys=False))
