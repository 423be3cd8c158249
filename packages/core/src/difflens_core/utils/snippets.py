"""Render diff hunks and AST snippets into review content.

Every rendered line is preceded by a ``# line N`` marker carrying its
new-file line number, so the model can answer with real line numbers even
though it only sees fragments of the file.
"""

from __future__ import annotations

from typing import Iterable

from difflens_core.models import AstSnippet, FileDiff


def build_diff_snippet_for_file(file_path: str, file_diff: FileDiff) -> str:
    lines = [f"File: {file_path}", "Changed fragments below; line numbers refer to the new file.", ""]
    for hunk in file_diff.hunks:
        for offset, text in enumerate(hunk.lines):
            lines.append(f"# line {hunk.new_start + offset}")
            lines.append(text)
        lines.append("")
    return "\n".join(lines)


def build_ast_snippet_for_snippets(file_path: str, snippets: Iterable[AstSnippet]) -> str:
    lines = [f"File: {file_path}", "AST scopes touched by the change; line numbers refer to the new file.", ""]
    for snippet in snippets:
        lines.append(f"# line {snippet.start_line}")
        lines.append(snippet.source)
        lines.append("")
    return "\n".join(lines)


def build_structured_review_content(current_content: str, reference_context: str) -> str:
    """Separate the code under review from context the model must not review."""
    return "\n".join(
        [
            "[Code under review]",
            current_content,
            "",
            "[Reference context (read-only, do not review)]",
            reference_context,
        ]
    )
