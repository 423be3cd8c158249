"""File content loading and header context extraction."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Callable, Iterable

logger = logging.getLogger(__name__)

ReadFile = Callable[[str], str]

# Only the top of a file is scanned for imports and declarations.
_HEADER_SCAN_LINES = 200
_HEADER_MAX_LINES = 80
_HEADER_MAX_CHARS = 4000

_HEADER_PATTERN = re.compile(
    r"^(?:"
    r"import\s.+from\s+['\"].+['\"];?"
    r"|import\s+['\"].+['\"];?"
    r"|from\s+[\w.]+\s+import\s+.+"
    r"|import\s+[\w.]+(?:\s+as\s+\w+)?"
    r"|(?:export\s+)?(?:type|interface|enum)\s+\w+"
    r"|const\s+\w+\s*=\s*require\("
    r"|(?:export\s+)?(?:const|let|var)\s+\w+\s*="
    r"|(?:export\s+)?(?:async\s+)?(?:function|def)\s+\w+"
    r"|(?:export\s+)?class\s+\w+"
    r")"
)
_COMMENT_PREFIXES = ("//", "/*", "*", "#")


def read_text_file(path: str) -> str:
    return Path(path).read_text(encoding="utf-8", errors="replace")


def load_files_with_content(
    files: Iterable[tuple[str, str | None]],
    read_file: ReadFile = read_text_file,
    preview_only: bool = False,
) -> list[tuple[str, str]]:
    """Return ``(path, content)`` for every file whose content is available.

    Entries that already carry non-blank content are used as-is; the rest are
    read through ``read_file``. A file that cannot be read is skipped.
    """
    loaded = []
    for path, content in files:
        if content is not None and content.strip():
            loaded.append((path, content))
            continue
        try:
            content = read_file(path)
        except Exception as e:
            logger.warning("Could not read %s, skipping: %s", path, e)
            continue
        if not preview_only and not content:
            logger.warning("File is empty: %s", path)
        loaded.append((path, content))
    return loaded


def build_file_header_context(path: str, read_file: ReadFile = read_text_file) -> str:
    """Collect import and declaration lines from the top of ``path``.

    Returns an empty string when nothing useful is found or the file cannot
    be read; the header is optional context, never a reason to fail.
    """
    try:
        content = read_file(path)
    except Exception as e:
        logger.warning("No header context for %s: %s", path, e)
        return ""
    if not content.strip():
        return ""

    selected: list[str] = []
    for number, raw_line in enumerate(content.splitlines()[:_HEADER_SCAN_LINES], 1):
        stripped = raw_line.strip()
        if not stripped or stripped.startswith(_COMMENT_PREFIXES):
            continue
        if _HEADER_PATTERN.match(stripped):
            selected.append(f"# line {number}")
            selected.append(raw_line)
        if len(selected) >= _HEADER_MAX_LINES:
            break

    if not selected:
        return ""
    joined = "\n".join(selected)
    if len(joined) > _HEADER_MAX_CHARS:
        joined = joined[:_HEADER_MAX_CHARS] + "\n... [header truncated]"
    return f"## File header context\n{joined}"
