"""review command: run AI review on local files."""

from __future__ import annotations

import json

import click
from rich.console import Console

from difflens_core.errors import ConfigurationError, ReviewAbortedError
from difflens_core.models import AstRange, Diagnostic
from difflens_core.reviewer import AIReviewer, print_issues

console = Console()


def _load_diagnostics(path: str | None) -> dict[str, list[Diagnostic]] | None:
    """Read ``{path: [{line, message, range?}]}`` from a JSON file."""
    if path is None:
        return None
    with open(path, encoding="utf-8") as f:
        try:
            raw = json.load(f)
        except json.JSONDecodeError as e:
            raise click.BadParameter(f"not valid JSON: {e}", param_hint="--diagnostics")
    if not isinstance(raw, dict):
        raise click.BadParameter("expected a JSON object keyed by file path", param_hint="--diagnostics")

    diagnostics: dict[str, list[Diagnostic]] = {}
    for file_path, entries in raw.items():
        parsed = []
        for entry in entries or []:
            if not isinstance(entry, dict) or "message" not in entry:
                raise click.BadParameter(f"invalid diagnostic for {file_path}: {entry!r}", param_hint="--diagnostics")
            rng = entry.get("range")
            try:
                parsed.append(
                    Diagnostic(
                        line=int(entry.get("line", 1)),
                        message=str(entry["message"]),
                        range=AstRange(int(rng["start_line"]), int(rng["end_line"])) if rng else None,
                    )
                )
            except (KeyError, TypeError, ValueError):
                raise click.BadParameter(f"invalid diagnostic for {file_path}: {entry!r}", param_hint="--diagnostics")
        diagnostics[file_path] = parsed
    return diagnostics


@click.command("review")
@click.argument("paths", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--config",
    "config_path",
    default=None,
    help="Path to the configuration file. Overrides the global --config.",
)
@click.option(
    "--action",
    type=click.Choice(["block_commit", "warning", "log"]),
    default=None,
    help="Failure action and severity policy. Overrides config file.",
)
@click.option(
    "--batching-mode",
    type=click.Choice(["file_count", "ast_snippet"]),
    default=None,
    help="How review units are grouped into requests. Overrides config file.",
)
@click.option("--concurrency", type=int, default=None, help="Number of batches reviewed in parallel (1-8).")
@click.option(
    "--diagnostics",
    "diagnostics_path",
    default=None,
    type=click.Path(exists=True, dir_okay=False),
    help="JSON file of diagnostics already reported by local linters.",
)
@click.option("--json", "as_json", is_flag=True, help="Print issues as JSON.")
@click.pass_context
def review_cmd(
    ctx,
    paths: tuple[str, ...],
    config_path: str | None,
    action: str | None,
    batching_mode: str | None,
    concurrency: int | None,
    diagnostics_path: str | None,
    as_json: bool,
):
    """Review local files with the configured AI endpoint.

    Exits with status 1 when action is block_commit and an error is found,
    or when the review is aborted.

    \b
    Environment variables:
      DIFFLENS_API_KEY       API key (falls back to OPENAI_API_KEY)
      DIFFLENS_API_ENDPOINT  Endpoint URL, when not set in the config file
      DIFFLENS_MODEL         Model name, when not set in the config file
    """
    from difflens_core.config import build_review_config, load_config

    path = config_path or (ctx.obj or {}).get("config_path", ".difflens.yml")
    config = load_config(
        path,
        cli_overrides={"action": action, "batching_mode": batching_mode, "batch_concurrency": concurrency},
    )
    try:
        review_config = build_review_config(config)
        if review_config.enabled:
            review_config.check()
    except ConfigurationError as e:
        raise click.UsageError(str(e))

    if not review_config.enabled:
        console.print("[yellow]AI review is disabled (enabled: false in the config file).[/yellow]")
        return

    diagnostics = _load_diagnostics(diagnostics_path)
    reviewer = AIReviewer(review_config)
    try:
        issues = reviewer.review([{"path": p} for p in paths], diagnostics_by_file=diagnostics)
    except ReviewAbortedError as e:
        console.print(f"[red]Review aborted ({e.rule}): {e}[/red]")
        ctx.exit(1)
        return

    if as_json:
        click.echo(json.dumps([issue.to_dict() for issue in issues], indent=2))
    else:
        print_issues(issues)

    if review_config.action == "block_commit" and any(issue.severity == "error" for issue in issues):
        ctx.exit(1)
