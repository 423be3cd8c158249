"""Post-filters applied to a batch's issues before they are returned.

Two filters run after the model's answer has been turned into issues:

- the allowed-lines filter drops issues on lines the model was never shown
  (diff/AST mode only);
- the diagnostics filter drops issues that repeat a finding the local
  linters already reported. It never empties a non-empty result: when
  every issue would be dropped the input is returned unchanged.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import replace
from typing import Callable, Iterable, Mapping, Sequence

from difflens_core.batching import lookup_by_path
from difflens_core.models import AffectedScopeResult, AstRange, Diagnostic, FileDiff, Issue

logger = logging.getLogger(__name__)

DUPLICATE_SIMILARITY_THRESHOLD = 0.65

_PUNCTUATION_RE = re.compile(r"[^\w\s\u4e00-\u9fff]")
_WHITESPACE_RE = re.compile(r"\s+")

DiagnosticsMap = Mapping[str, Sequence[Diagnostic]]


def normalize_diagnostics_map(diagnostics_by_file: DiagnosticsMap | None) -> dict[str, list[Diagnostic]]:
    normalized: dict[str, list[Diagnostic]] = {}
    for path, diagnostics in (diagnostics_by_file or {}).items():
        normalized.setdefault(os.path.normpath(path), []).extend(diagnostics)
    return normalized


def pick_diagnostics_for_files(diagnostics_by_file: DiagnosticsMap | None, paths: Iterable[str]) -> dict[str, list[Diagnostic]]:
    """Subset of ``diagnostics_by_file`` for the given paths, keyed by normalised path."""
    normalized = normalize_diagnostics_map(diagnostics_by_file)
    picked = {}
    for path in paths:
        key = os.path.normpath(path)
        if normalized.get(key):
            picked[key] = normalized[key]
    return picked


def normalize_message_for_compare(message: str) -> str:
    text = _PUNCTUATION_RE.sub(" ", (message or "").lower())
    return _WHITESPACE_RE.sub(" ", text).strip()


def calculate_message_similarity(a: str, b: str) -> float:
    left = normalize_message_for_compare(a)
    right = normalize_message_for_compare(b)
    if not left or not right:
        return 0.0
    if left == right or left in right or right in left:
        return 1.0
    left_tokens = set(left.split(" "))
    right_tokens = set(right.split(" "))
    return len(left_tokens & right_tokens) / max(len(left_tokens), len(right_tokens))


def is_likely_duplicate_with_diagnostic(issue: Issue, diagnostic: Diagnostic) -> bool:
    if calculate_message_similarity(issue.message, diagnostic.message) < DUPLICATE_SIMILARITY_THRESHOLD:
        return False
    if issue.line == diagnostic.line:
        return True
    return bool(issue.ast_range and diagnostic.range and issue.ast_range.overlaps(diagnostic.range))


def build_allowed_lines(
    diff_by_file: Mapping[str, FileDiff] | None = None,
    ast_snippets_by_file: Mapping[str, AffectedScopeResult] | None = None,
) -> dict[str, set[int]]:
    """Lines shown to the model per normalised path: AST snippet ranges plus diff hunk ranges."""
    allowed: dict[str, set[int]] = {}
    for path, result in (ast_snippets_by_file or {}).items():
        lines = allowed.setdefault(os.path.normpath(path), set())
        for snippet in result.snippets:
            lines.update(range(snippet.start_line, snippet.end_line + 1))
    for path, file_diff in (diff_by_file or {}).items():
        lines = allowed.setdefault(os.path.normpath(path), set())
        for hunk in file_diff.hunks:
            lines.update(range(hunk.new_start, hunk.new_start + hunk.new_count))
    return {path: lines for path, lines in allowed.items() if lines}


def filter_issues_by_allowed_lines(
    issues: Sequence[Issue], allowed_lines: Mapping[str, set[int]] | None, use_diff_content: bool
) -> list[Issue]:
    if not use_diff_content or not allowed_lines:
        return list(issues)
    kept = []
    for issue in issues:
        lines = allowed_lines.get(os.path.normpath(issue.file))
        if lines and issue.line in lines:
            kept.append(issue)
    if len(kept) != len(issues):
        logger.debug("Dropped %d issue(s) outside the reviewed lines", len(issues) - len(kept))
    return kept


def attach_ast_ranges(
    issues: Sequence[Issue], ast_snippets_by_file: Mapping[str, AffectedScopeResult] | None
) -> list[Issue]:
    """Set each issue's ``ast_range`` to the smallest snippet enclosing its line."""
    if not ast_snippets_by_file:
        return list(issues)
    attached = []
    for issue in issues:
        result = lookup_by_path(ast_snippets_by_file, issue.file)
        enclosing = [s for s in (result.snippets if result else []) if s.start_line <= issue.line <= s.end_line]
        if enclosing:
            best = min(enclosing, key=lambda s: s.end_line - s.start_line)
            issue = replace(issue, ast_range=AstRange(best.start_line, best.end_line))
        attached.append(issue)
    return attached


def filter_issues_by_diagnostics(
    issues: Sequence[Issue],
    diagnostics_by_file: DiagnosticsMap | None,
    on_overdrop: Callable[[int], None] | None = None,
) -> list[Issue]:
    if not issues or not diagnostics_by_file:
        return list(issues)
    diagnostics = normalize_diagnostics_map(diagnostics_by_file)
    kept = [
        issue
        for issue in issues
        if not any(is_likely_duplicate_with_diagnostic(issue, d) for d in diagnostics.get(os.path.normpath(issue.file), []))
    ]
    if not kept:
        logger.warning("Diagnostics filter would drop all %d issue(s); keeping them", len(issues))
        if on_overdrop:
            on_overdrop(len(issues))
        return list(issues)
    if len(kept) != len(issues):
        logger.debug("Dropped %d issue(s) already reported by local diagnostics", len(issues) - len(kept))
    return kept
