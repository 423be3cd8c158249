"""Per-review caches keyed by request hash.

A ``ReviewCache`` lives exactly as long as one ``AIReviewer.review`` call.
It remembers, for each distinct request, the issues parsed so far and the
base chat messages, which is what a continuation request needs after a
truncated response.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Iterable, Sequence

from difflens_core.models import IssuePayload

logger = logging.getLogger(__name__)


def calculate_request_hash(files: Sequence[tuple[str, str]]) -> str:
    """Stable fingerprint of the ``(path, content)`` pairs sent in one call."""
    raw = "|".join(f"{path}:{content}" for path, content in files)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def dedupe_issues(issues: Iterable[IssuePayload]) -> list[IssuePayload]:
    """Drop repeated issues, keeping first occurrences, by (file, line, column, message)."""
    seen: set[tuple] = set()
    unique = []
    for issue in issues:
        key = (issue.file, issue.line, issue.column, issue.message)
        if key in seen:
            continue
        seen.add(key)
        unique.append(issue)
    return unique


@dataclass
class CachedResponse:
    issues: list[IssuePayload] = field(default_factory=list)
    is_partial: bool = False


@dataclass
class ReviewCache:
    responses: dict[str, CachedResponse] = field(default_factory=dict)
    base_messages: dict[str, list[dict]] = field(default_factory=dict)

    def merge_issues(self, request_hash: str, issues: Sequence[IssuePayload], is_partial: bool) -> list[IssuePayload]:
        """Append ``issues`` to the bucket for ``request_hash`` and return the deduplicated total."""
        existing = self.responses.get(request_hash)
        combined = [*existing.issues, *issues] if existing else list(issues)
        merged = dedupe_issues(combined)
        self.responses[request_hash] = CachedResponse(issues=merged, is_partial=is_partial)
        if existing:
            logger.debug("Merged %d new issue(s) into cached %d", len(issues), len(existing.issues))
        return list(merged)

    def clear(self) -> None:
        self.responses.clear()
        self.base_messages.clear()
