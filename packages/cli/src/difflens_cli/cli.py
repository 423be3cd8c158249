"""CLI entry point for difflens.

Commands:
  review   : run AI review on local files
  init     : interactive setup wizard writing .difflens.yml
"""

from __future__ import annotations

import importlib.metadata
import logging

import click

from difflens_cli.commands.init import init_cmd
from difflens_cli.commands.review import review_cmd


@click.group()
@click.version_option(
    version=importlib.metadata.version("difflens"),
    prog_name="difflens",
)
@click.option(
    "--config",
    "config_path",
    default=".difflens.yml",
    show_default=True,
    help="Path to the configuration file.",
    envvar="DIFFLENS_CONFIG",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.pass_context
def main(ctx: click.Context, config_path: str, verbose: bool):
    """Batched AI code review for local changes."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(name)s %(levelname)s %(message)s")
    else:
        logging.basicConfig(level=logging.WARNING)

    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


main.add_command(review_cmd)
main.add_command(init_cmd)
