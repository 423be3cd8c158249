"""Base provider implementing the Template Method pattern.

A provider knows the wire format of one kind of review endpoint:

    build_request()  → request body for one batch of files
    parse_response() → ParseResult from the decoded JSON body
    build_continuation_request() → follow-up body after a truncated answer

Retrying, caching and batching are format-independent and live in
``difflens_core.client`` and ``difflens_core.reviewer``; providers stay
focused on translating between files and payloads.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Mapping, Sequence

from difflens_core.config import ReviewConfig
from difflens_core.models import Diagnostic, IssuePayload
from difflens_core.parser import ParseResult

logger = logging.getLogger(__name__)

_LANGUAGE_MAP = {
    "js": "javascript",
    "jsx": "javascript",
    "ts": "typescript",
    "tsx": "typescript",
    "py": "python",
    "java": "java",
    "cpp": "cpp",
    "c": "c",
    "cs": "csharp",
    "go": "go",
    "rs": "rust",
    "php": "php",
    "rb": "ruby",
    "swift": "swift",
    "kt": "kotlin",
    "scala": "scala",
    "sh": "bash",
    "yaml": "yaml",
    "yml": "yaml",
    "json": "json",
    "xml": "xml",
    "html": "html",
    "css": "css",
    "scss": "scss",
    "vue": "vue",
    "sql": "sql",
}

# Diagnostics listed per file in the "already reported" prompt section.
_MAX_KNOWN_DIAGNOSTICS_PER_FILE = 10


def get_language_from_extension(ext: str) -> str:
    return _LANGUAGE_MAP.get(ext.lower(), ext.lower())


def build_known_diagnostics_prompt(diagnostics_by_file: Mapping[str, Sequence[Diagnostic]] | None) -> str:
    """List local linter findings so the model does not report them again."""
    if not diagnostics_by_file:
        return ""
    rows = []
    for file_path, diagnostics in diagnostics_by_file.items():
        for item in list(diagnostics)[:_MAX_KNOWN_DIAGNOSTICS_PER_FILE]:
            rows.append(f"- {file_path} line {item.line}: {item.message}")
    if not rows:
        return ""
    return "\n".join(["**Already reported by local linters (do not report these again):**", *rows, ""])


class BaseProvider(ABC):
    def __init__(self, config: ReviewConfig):
        self.config = config

    # ------------------------------------------------------------------ #
    # Abstract: implement in each provider                                #
    # ------------------------------------------------------------------ #

    @abstractmethod
    def build_request(
        self,
        files: Sequence[tuple[str, str]],
        is_diff_content: bool = False,
        diagnostics_by_file: Mapping[str, Sequence[Diagnostic]] | None = None,
    ) -> dict:
        """Build the JSON body for reviewing ``files`` in one call."""

    @abstractmethod
    def parse_response(self, data: Any) -> ParseResult:
        """Turn the decoded response body into a ParseResult."""

    # ------------------------------------------------------------------ #
    # Continuation: only chat-style providers support it                  #
    # ------------------------------------------------------------------ #

    def base_messages(self, request_body: dict) -> list[dict] | None:
        """Messages a continuation can be built on, or None if unsupported."""
        return None

    def build_continuation_request(
        self,
        base_messages: list[dict],
        partial_content: str,
        cached_issues: Sequence[IssuePayload],
    ) -> dict | None:
        return None
