"""Review units and batch planning.

Files are first turned into ``ReviewUnit``s (one per file, or one per chunk
of a file's AST snippets) and the units are then grouped into batches, one
HTTP call each. A unit's weight is its snippet count (floor 1); in
snippet-budget mode no batch weighs more than the budget unless it holds a
single unit that is heavier on its own. Units are never dropped.
"""

from __future__ import annotations

import logging
import os
from typing import Mapping, Sequence, TypeVar

from difflens_core.config import DEFAULT_BATCH_SIZE
from difflens_core.models import AffectedScopeResult, AstSnippet, FileDiff, ReviewUnit, SourceType
from difflens_core.utils.snippets import build_ast_snippet_for_snippets

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Per-file overhead added to path + content when estimating a request's size.
_REQUEST_FILE_OVERHEAD = 32


def lookup_by_path(mapping: Mapping[str, T] | None, path: str) -> T | None:
    """Look ``path`` up under its normalised form first, then verbatim."""
    if not mapping:
        return None
    found = mapping.get(os.path.normpath(path))
    if found is None:
        found = mapping.get(path)
    return found


def split_into_batches(items: Sequence[T], batch_size: int = DEFAULT_BATCH_SIZE) -> list[list[T]]:
    batch_size = max(1, batch_size)
    return [list(items[i : i + batch_size]) for i in range(0, len(items), batch_size)]


def chunk_ast_snippets(snippets: Sequence[AstSnippet], budget: int, strategy: str = "even") -> list[list[AstSnippet]]:
    """Split one file's snippets into ceil(n / budget) chunks of at most ``budget``.

    ``contiguous`` fills each chunk up to the budget in order; ``even`` spreads
    the remainder so chunk sizes differ by at most one.
    """
    budget = max(1, budget)
    if len(snippets) <= budget:
        return [list(snippets)]
    if strategy == "contiguous":
        return [list(snippets[i : i + budget]) for i in range(0, len(snippets), budget)]

    group_count = -(-len(snippets) // budget)
    base_size, remainder = divmod(len(snippets), group_count)
    chunks = []
    cursor = 0
    for i in range(group_count):
        size = base_size + (1 if i < remainder else 0)
        chunks.append(list(snippets[cursor : cursor + size]))
        cursor += size
    return [chunk for chunk in chunks if chunk]


def split_units_by_snippet_budget(units: Sequence[ReviewUnit], snippet_budget: int) -> list[list[ReviewUnit]]:
    """Greedily pack units into batches whose total weight stays within the budget."""
    budget = max(1, snippet_budget)
    batches: list[list[ReviewUnit]] = []
    current: list[ReviewUnit] = []
    current_weight = 0
    for unit in units:
        if current and current_weight + unit.weight > budget:
            batches.append(current)
            current = []
            current_weight = 0
        current.append(unit)
        current_weight += unit.weight
    if current:
        batches.append(current)
    return batches


def split_units_in_half(units: Sequence[T]) -> tuple[list[T], list[T]]:
    mid = -(-len(units) // 2)
    return list(units[:mid]), list(units[mid:])


def count_unit_snippets(units: Sequence[ReviewUnit]) -> int:
    return sum(unit.weight for unit in units)


def count_ast_snippets(ast_snippets_by_file: Mapping[str, AffectedScopeResult] | None) -> int:
    if not ast_snippets_by_file:
        return 0
    return sum(len(result.snippets) for result in ast_snippets_by_file.values())


def estimate_request_chars(files: Sequence[tuple[str, str]]) -> int:
    return sum(len(path) + len(content) + _REQUEST_FILE_OVERHEAD for path, content in files)


def build_review_units(
    files: Sequence[tuple[str, str]],
    *,
    snippet_batching: bool = False,
    snippet_budget: int = 25,
    chunk_strategy: str = "even",
    ast_snippets_by_file: Mapping[str, AffectedScopeResult] | None = None,
    diff_by_file: Mapping[str, FileDiff] | None = None,
) -> list[ReviewUnit]:
    """Turn loaded ``(path, content)`` pairs into review units.

    With ``snippet_batching`` a file whose AST snippets exceed the budget is
    split into one unit per chunk, each re-rendered from its own snippets.
    Every other file becomes a single unit weighted by its AST snippet count,
    else its diff hunk count, else 1.
    """
    units: list[ReviewUnit] = []
    counter = 0
    for path, content in files:
        ast_result = lookup_by_path(ast_snippets_by_file, path)
        snippets = ast_result.snippets if ast_result else []

        if snippet_batching and len(snippets) > snippet_budget:
            chunks = chunk_ast_snippets(snippets, snippet_budget, chunk_strategy)
            for index, chunk in enumerate(chunks, 1):
                counter += 1
                units.append(
                    ReviewUnit(
                        unit_id=f"{path}#ast#{index}#{counter}",
                        path=path,
                        content=build_ast_snippet_for_snippets(path, chunk),
                        snippet_count=max(1, len(chunk)),
                        source_type=SourceType.AST,
                    )
                )
            logger.debug("Split %s into %d AST chunks", path, len(chunks))
            continue

        snippet_count = 1
        source_type = SourceType.FULL
        if snippets:
            snippet_count = len(snippets)
            source_type = SourceType.AST
        else:
            file_diff = lookup_by_path(diff_by_file, path)
            if file_diff and file_diff.hunks:
                snippet_count = len(file_diff.hunks)
                source_type = SourceType.DIFF

        counter += 1
        units.append(
            ReviewUnit(
                unit_id=f"{path}#unit#{counter}",
                path=path,
                content=content,
                snippet_count=max(1, snippet_count),
                source_type=source_type,
            )
        )
    return units


def plan_batches(
    units: Sequence[ReviewUnit],
    *,
    snippet_batching: bool,
    snippet_budget: int,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> list[list[ReviewUnit]]:
    if snippet_batching:
        return split_units_by_snippet_budget(units, snippet_budget)
    return split_into_batches(units, batch_size)
