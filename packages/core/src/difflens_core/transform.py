"""Turn validated model output into engine ``Issue`` objects."""

from __future__ import annotations

import os
from typing import Mapping, Sequence

from difflens_core.models import Issue, IssuePayload, Severity


def action_to_severity(action: str) -> Severity:
    """Severity of the synthetic issue reported when a batch fails."""
    if action == "block_commit":
        return "error"
    if action == "log":
        return "info"
    return "warning"


def map_severity(severity: Severity, action: str) -> Severity:
    if action == "block_commit":
        return "warning" if severity == "info" else severity
    if action == "warning":
        return "warning" if severity == "error" else severity
    if action == "log":
        return "info"
    return severity


def normalize_line_endings(text: str) -> str:
    return text.replace("\r\n", "\n")


def resolve_issue_position_from_snippet(content: str, snippet: str | None) -> tuple[int, int] | None:
    """Return the 1-based (line, column) of ``snippet`` in ``content``, or None."""
    if not snippet:
        return None
    content = normalize_line_endings(content)
    snippet = normalize_line_endings(snippet)

    index = content.find(snippet)
    if index < 0:
        stripped = snippet.strip()
        if not stripped:
            return None
        index = content.find(stripped)
        if index < 0:
            return None

    line = content.count("\n", 0, index) + 1
    column = index - (content.rfind("\n", 0, index) + 1) + 1
    return line, column


def transform_to_issues(
    payloads: Sequence[IssuePayload],
    action: str,
    files: Sequence[tuple[str, str]] = (),
    use_diff_line_numbers: bool = False,
) -> list[Issue]:
    """Map payloads onto ``Issue`` with the action's severity policy applied.

    In full-file mode the reported ``snippet`` is looked up in the file that
    was sent so that the line/column point at the real code. In diff/AST
    mode the model was shown new-file line numbers and those are kept.
    """
    contents: Mapping[str, str] = {os.path.normpath(path): content for path, content in files}
    issues = []
    for payload in payloads:
        path = os.path.normpath(payload.file)
        line, column = payload.line, payload.column
        if not use_diff_line_numbers:
            content = contents.get(path)
            position = resolve_issue_position_from_snippet(content, payload.snippet) if content else None
            if position:
                line, column = position
        issues.append(
            Issue(
                file=path,
                line=line,
                column=column,
                message=payload.message,
                severity=map_severity(payload.severity, action),
            )
        )
    return issues
