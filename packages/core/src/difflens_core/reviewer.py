"""Core AI review orchestration."""

from __future__ import annotations

import itertools
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Mapping, Sequence

import requests
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape

from difflens_core.batching import (
    build_review_units,
    count_ast_snippets,
    count_unit_snippets,
    estimate_request_chars,
    lookup_by_path,
    plan_batches,
    split_units_in_half,
)
from difflens_core.cache import ReviewCache
from difflens_core.client import ReviewClient, is_context_too_long, is_timeout
from difflens_core.config import ReviewConfig
from difflens_core.errors import (
    ConfigurationError,
    LLMRequestError,
    ReviewAbortedError,
    ReviewError,
    SchemaValidationError,
)
from difflens_core.filters import (
    attach_ast_ranges,
    build_allowed_lines,
    filter_issues_by_allowed_lines,
    filter_issues_by_diagnostics,
    normalize_diagnostics_map,
    pick_diagnostics_for_files,
)
from difflens_core.models import (
    AffectedScopeResult,
    AstSnippet,
    Diagnostic,
    FileDiff,
    Issue,
    RequestFile,
    ReviewRequest,
    ReviewUnit,
)
from difflens_core.providers import get_provider
from difflens_core.trace import LoggingTraceSink, TraceSink
from difflens_core.transform import action_to_severity, transform_to_issues
from difflens_core.utils.loader import ReadFile, build_file_header_context, load_files_with_content, read_text_file
from difflens_core.utils.snippets import (
    build_ast_snippet_for_snippets,
    build_diff_snippet_for_file,
    build_structured_review_content,
)

console = Console()
logger = logging.getLogger(__name__)

LspContextBuilder = Callable[[str, Sequence[AstSnippet]], str]


@dataclass
class ReviewContext:
    """State shared by the batches of one ``review`` call and discarded afterwards."""

    client: ReviewClient
    use_diff_content: bool
    allowed_lines: dict[str, set[int]]
    diagnostics_by_file: dict[str, list[Diagnostic]]
    ast_snippets_by_file: Mapping[str, AffectedScopeResult] | None = None
    processed_unit_ids: set[str] = field(default_factory=set)
    lock: threading.Lock = field(default_factory=threading.Lock)


class AIReviewer:
    """Reviews files with an LLM endpoint, batching them and running batches in parallel.

    Collaborators are injected: ``read_file`` loads file content, the two LSP
    builders return reference and usage context for a file's AST snippets,
    ``session`` is the ``requests.Session`` used for HTTP and ``trace``
    receives run events.
    """

    def __init__(
        self,
        config: ReviewConfig,
        read_file: ReadFile = read_text_file,
        session: requests.Session | None = None,
        trace: TraceSink | None = None,
        lsp_reference_builder: LspContextBuilder | None = None,
        lsp_usages_builder: LspContextBuilder | None = None,
    ):
        self.config = config
        self.read_file = read_file
        self.session = session or requests.Session()
        self.trace = trace or LoggingTraceSink()
        self.lsp_reference_builder = lsp_reference_builder
        self.lsp_usages_builder = lsp_usages_builder

    # ------------------------------------------------------------------ #
    # Entry point                                                        #
    # ------------------------------------------------------------------ #

    def review(
        self,
        files: Sequence[RequestFile | dict],
        diff_by_file: Mapping[str, FileDiff] | None = None,
        ast_snippets_by_file: Mapping[str, AffectedScopeResult] | None = None,
        diagnostics_by_file: Mapping[str, Sequence[Diagnostic]] | None = None,
    ) -> list[Issue]:
        """Review ``files`` and return the issues found, in batch order.

        Raises SchemaValidationError for a malformed request and
        ReviewAbortedError when a batch fails under ``action=block_commit``.
        Any other failure is reported as a single synthetic issue.
        """
        started = time.monotonic()
        request = self._validate_request(files)
        if not self._is_config_usable():
            return []

        use_diff_mode = self.config.diff_only and bool(diff_by_file)
        use_ast_snippets = bool(ast_snippets_by_file)
        use_diff_content = use_diff_mode or use_ast_snippets

        header_cache: dict[str, str] = {}
        files_to_load = [
            (
                f.path,
                self._build_review_content(
                    f.path,
                    diff_by_file if use_diff_mode else None,
                    ast_snippets_by_file if use_ast_snippets else None,
                    header_cache,
                )
                or f.content
                if use_diff_content
                else f.content,
            )
            for f in request.files
        ]
        allowed_lines = build_allowed_lines(
            diff_by_file if use_diff_mode else None,
            ast_snippets_by_file if use_ast_snippets else None,
        )

        try:
            if self.config.preview_only:
                logger.info("preview_only is set; review content is logged and no request is made")
            loaded = load_files_with_content(files_to_load, self.read_file, self.config.preview_only)
            if not loaded:
                logger.warning("No files to review")
                return []

            if self.config.preview_only:
                for path, content in loaded:
                    logger.info("---------- %s ----------\n%s\n----------", path, content)
                return []

            snippet_batching = use_ast_snippets and self.config.batching_mode == "ast_snippet"
            units = build_review_units(
                loaded,
                snippet_batching=snippet_batching,
                snippet_budget=self.config.ast_snippet_budget,
                chunk_strategy=self.config.ast_chunk_strategy,
                ast_snippets_by_file=ast_snippets_by_file if use_ast_snippets else None,
                diff_by_file=diff_by_file if use_diff_mode else None,
            )
            if not units:
                logger.warning("No review units to process")
                return []

            batches = plan_batches(
                units,
                snippet_batching=snippet_batching,
                snippet_budget=self.config.ast_snippet_budget,
                batch_size=self.config.batch_size,
            )
            logger.info(
                "AI review plan: %d file(s), %d unit(s), %d batch(es), concurrency %d",
                len(loaded),
                len(units),
                len(batches),
                min(self.config.batch_concurrency, len(batches)),
            )
            self.trace.log_event(
                "ai_plan_summary",
                files=len(request.files),
                loaded_files=len(loaded),
                units=len(units),
                batches=len(batches),
                ast_snippets=count_ast_snippets(ast_snippets_by_file),
                snippets=count_unit_snippets(units),
                batching_mode="ast_snippet" if snippet_batching else "file_count",
                concurrency=self.config.batch_concurrency,
                budget=self.config.ast_snippet_budget if snippet_batching else self.config.batch_size,
            )

            ctx = ReviewContext(
                client=ReviewClient(self.config, get_provider(self.config), ReviewCache(), self.session, self.trace),
                use_diff_content=use_diff_content,
                allowed_lines=allowed_lines,
                diagnostics_by_file=normalize_diagnostics_map(diagnostics_by_file),
                ast_snippets_by_file=ast_snippets_by_file if use_ast_snippets else None,
            )
            issues = self.process_batches(batches, ctx)
            self.trace.log_event("ai_review_done", duration_ms=int((time.monotonic() - started) * 1000))
            return issues
        except ReviewError as e:
            self.trace.log_event(
                "ai_batch_failed",
                scope="all_batches",
                duration_ms=int((time.monotonic() - started) * 1000),
                error_class=type(e).__name__,
            )
            return self.handle_review_error(e)

    def _validate_request(self, files: Sequence[RequestFile | dict]) -> ReviewRequest:
        try:
            return ReviewRequest.model_validate({"files": list(files)})
        except ValidationError as e:
            raise SchemaValidationError.from_pydantic("AI review request", e) from e

    def _is_config_usable(self) -> bool:
        if not self.config.enabled:
            logger.info("AI review is disabled")
            return False
        try:
            self.config.check()
        except ConfigurationError as e:
            logger.warning("Skipping AI review: %s", e)
            return False
        self.config.warn_about_api_key()
        return True

    # ------------------------------------------------------------------ #
    # Content assembly                                                   #
    # ------------------------------------------------------------------ #

    def _build_review_content(
        self,
        path: str,
        diff_by_file: Mapping[str, FileDiff] | None,
        ast_snippets_by_file: Mapping[str, AffectedScopeResult] | None,
        header_cache: dict[str, str],
    ) -> str | None:
        """Diff/AST rendering of ``path``, or None to fall back to the whole file."""
        content = None
        reference_context = ""

        ast_result = lookup_by_path(ast_snippets_by_file, path)
        if ast_result and ast_result.snippets:
            content = build_ast_snippet_for_snippets(path, ast_result.snippets)
            parts = []
            if self.config.include_lsp_context:
                definitions = self._call_lsp_builder(self.lsp_reference_builder, path, ast_result.snippets)
                usages = self._call_lsp_builder(self.lsp_usages_builder, path, ast_result.snippets)
                if definitions:
                    parts.append(f"## Definitions\n{definitions}")
                if usages:
                    parts.append(usages)
            key = os.path.normpath(path)
            if key not in header_cache:
                header_cache[key] = build_file_header_context(path, self.read_file)
            if header_cache[key]:
                parts.insert(0, header_cache[key])
            reference_context = "\n\n".join(parts)

        if content is None and diff_by_file is not None:
            file_diff = lookup_by_path(diff_by_file, path)
            if file_diff and file_diff.hunks:
                content = build_diff_snippet_for_file(path, file_diff)
            else:
                logger.debug("No changed fragments for %s, sending the whole file", path)

        if content is None and ast_snippets_by_file is not None:
            logger.debug("No AST snippets for %s, sending the whole file", path)

        if content and reference_context:
            content = build_structured_review_content(content, reference_context)
        return content

    @staticmethod
    def _call_lsp_builder(builder: LspContextBuilder | None, path: str, snippets: Sequence[AstSnippet]) -> str:
        if builder is None:
            return ""
        try:
            return builder(path, snippets) or ""
        except Exception as e:
            logger.warning("LSP context for %s unavailable: %s", path, e)
            return ""

    # ------------------------------------------------------------------ #
    # Execution                                                          #
    # ------------------------------------------------------------------ #

    def process_batches(self, batches: Sequence[Sequence[ReviewUnit]], ctx: ReviewContext) -> list[Issue]:
        """Run every batch on a bounded pool of worker threads.

        Workers pull the next batch index from a shared counter and write
        their batch's issues into that index's slot, so the flattened result
        follows batch order whatever order the batches finish in.
        """
        total = len(batches)
        if total == 0:
            return []
        concurrency = min(self.config.batch_concurrency, total)
        results: list[list[Issue]] = [[] for _ in range(total)]
        cursor = itertools.count()
        failures: list[Exception] = []
        stop = threading.Event()
        started = time.monotonic()

        def worker() -> None:
            while not stop.is_set():
                index = next(cursor)
                if index >= total:
                    return
                try:
                    results[index] = self.process_single_batch(batches[index], index, total, ctx)
                except Exception as e:
                    failures.append(e)
                    stop.set()
                    return

        threads = [threading.Thread(target=worker, name=f"difflens-batch-{i}") for i in range(concurrency)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.trace.log_event(
            "ai_pool_done",
            batches=total,
            concurrency=concurrency,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        if failures:
            raise failures[0]
        return [issue for batch_issues in results for issue in batch_issues]

    def process_single_batch(
        self, batch: Sequence[ReviewUnit], index: int, total: int, ctx: ReviewContext
    ) -> list[Issue]:
        units = []
        with ctx.lock:
            for unit in batch:
                if unit.unit_id in ctx.processed_unit_ids:
                    logger.warning("Review unit %s was already processed, skipping", unit.unit_id)
                    continue
                ctx.processed_unit_ids.add(unit.unit_id)
                units.append(unit)
        if not units:
            return []

        started = time.monotonic()
        self.trace.log_event("ai_batch_start", batch_index=index + 1, total_batches=total, units=len(units))
        try:
            issues = self.execute_batch_with_fallback(units, ctx, allow_split=True)
        except ReviewError as e:
            logger.error("AI review batch %d/%d failed: %s", index + 1, total, e)
            self.trace.log_event(
                "ai_batch_failed",
                batch_index=index + 1,
                total_batches=total,
                duration_ms=int((time.monotonic() - started) * 1000),
                error_class=type(e).__name__,
            )
            return self.handle_review_error(e)

        self.trace.log_event(
            "ai_batch_done",
            batch_index=index + 1,
            total_batches=total,
            issues=len(issues),
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return issues

    def execute_batch_with_fallback(
        self, units: Sequence[ReviewUnit], ctx: ReviewContext, allow_split: bool = True
    ) -> list[Issue]:
        """Review one batch, halving it when it is too large for a single request.

        The halves run with ``allow_split=False``, so a batch is split at most
        once, either before the call (estimated size over ``max_request_chars``)
        or after the endpoint rejects it as too long. A single unit is never
        split; its error propagates.
        """
        files = [(unit.path, unit.content) for unit in units]
        estimated = estimate_request_chars(files)
        if allow_split and len(units) > 1 and estimated > self.config.max_request_chars:
            logger.warning(
                "Batch of %d unit(s) is about %d chars (limit %d); splitting",
                len(units),
                estimated,
                self.config.max_request_chars,
            )
            return self._run_halves(units, ctx, reason="max_request_chars", estimated=estimated)

        try:
            return self._execute_batch(files, ctx)
        except LLMRequestError as e:
            if allow_split and len(units) > 1 and is_context_too_long(e):
                logger.warning("Request for %d unit(s) rejected as too long; splitting", len(units))
                return self._run_halves(units, ctx, reason="context_too_long", estimated=estimated)
            raise

    def _run_halves(self, units: Sequence[ReviewUnit], ctx: ReviewContext, reason: str, estimated: int) -> list[Issue]:
        left, right = split_units_in_half(units)
        self.trace.log_event(
            "batch_split_triggered",
            reason=reason,
            units=len(units),
            estimated_chars=estimated,
            left=len(left),
            right=len(right),
        )
        return self.execute_batch_with_fallback(left, ctx, allow_split=False) + self.execute_batch_with_fallback(
            right, ctx, allow_split=False
        )

    def _execute_batch(self, files: Sequence[tuple[str, str]], ctx: ReviewContext) -> list[Issue]:
        diagnostics = pick_diagnostics_for_files(ctx.diagnostics_by_file, [path for path, _ in files])
        response = ctx.client.call(files, ctx.use_diff_content, diagnostics)
        issues = transform_to_issues(
            response.issues, self.config.action, files, use_diff_line_numbers=ctx.use_diff_content
        )
        issues = filter_issues_by_allowed_lines(issues, ctx.allowed_lines, ctx.use_diff_content)
        issues = attach_ast_ranges(issues, ctx.ast_snippets_by_file)
        return filter_issues_by_diagnostics(
            issues,
            diagnostics,
            on_overdrop=lambda count: self.trace.log_event("diagnostics_filter_overdrop_fallback", issues=count),
        )

    def handle_review_error(self, error: Exception) -> list[Issue]:
        """Turn a failure into one synthetic issue, or raise under ``block_commit``."""
        if isinstance(error, ReviewAbortedError):
            raise error
        if is_timeout(error):
            rule = "ai_review_timeout"
            message = f"AI review timed out: {error}"
        else:
            rule = "ai_review_error"
            message = f"AI review failed: {error}"

        if self.config.action == "block_commit":
            raise ReviewAbortedError(message, rule=rule) from error
        logger.warning("%s", message)
        return [
            Issue(
                file="",
                line=1,
                column=1,
                message=message,
                severity=action_to_severity(self.config.action),
                rule=rule,
            )
        ]


def print_issues(issues: Sequence[Issue]) -> None:
    """Print review issues to the terminal."""
    _severity_color = {"error": "red", "warning": "yellow", "info": "blue"}
    if not issues:
        console.print("[green]No issues found.[/green]")
        return
    console.print(f"\n[bold]AI review: {len(issues)} issue(s)[/bold]\n")
    for issue in issues:
        color = _severity_color.get(issue.severity, "white")
        location = escape(f"{issue.file}:{issue.line}:{issue.column}") if issue.file else "(review)"
        console.print(
            f"[bold cyan]{location}[/bold cyan]  [{color}]{issue.severity.upper()}[/{color}]  [dim]{issue.rule}[/dim]"
        )
        console.print(f"  {escape(issue.message)}")
        console.print()
