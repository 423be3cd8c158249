from __future__ import annotations

import logging
from typing import Any, Mapping, Sequence

from difflens_core.models import Diagnostic, IssuePayload
from difflens_core.parser import ParseResult, parse_openai_response
from difflens_core.providers.base import BaseProvider, build_known_diagnostics_prompt, get_language_from_extension

logger = logging.getLogger(__name__)

_DIFF_INTRO = (
    "Review only the **changed fragments (diff/AST)** below, not whole files. "
    "Each fragment is annotated with `# line N` giving its line number in the new file."
)
_FULL_INTRO = "Carefully review the following source files and report every problem you find."
_DIFF_LINE_HINT = (
    "\n**Line numbers:**\nThe **line** you return must be the new-file line number "
    "taken from the `# line N` annotations above (1-based).\n"
)

_OUTPUT_FORMAT = """**Review requirements:**
1. Analyse the code line by line and look for every potential problem
2. Check for bugs, performance problems, security problems and code quality issues
3. Suggest improvements and best practices even when the code works
4. For each problem give a clear description and a concrete fix
5. Return a snippet field: the original code (1-3 lines) the problem is on, copied verbatim
6. If a "Reference context" section is present, do not report symbols defined there as undefined
{line_hint}
**Important:**
- Always return **complete, well-formed JSON** that ends with a closing brace }}
- If there are many problems, return the most important errors and warnings first
- Keep descriptions concise so the JSON is not truncated

Respond with **only** this JSON (no text outside it):
{{
  "issues": [
    {{
      "file": "<file path, exactly as given>",
      "line": <line number, starting at 1>,
      "column": <column number, starting at 1>,
      "snippet": "<the offending code, 1-3 lines, verbatim>",
      "message": "<what is wrong, why, and how to fix it>",
      "severity": "error|warning|info"
    }}
  ]
}}

Severity guide:
- error: runtime failures, broken functionality, security vulnerabilities
- warning: likely bugs, performance problems, unsafe practices
- info: readability, style, best-practice suggestions

If there are no issues, return: {{"issues": []}}"""

_CONTINUATION_PROMPT = """The previous response was truncated. Continue with the remaining issues only.

Issues already parsed: {count}
{last_issue_hint}

**Continuation rules:**
1. Return only new issues; do not repeat issues already returned
2. Return complete JSON containing only the issues array
3. If there are no more issues, return {{"issues": []}}
"""


class OpenAIProvider(BaseProvider):
    """OpenAI-compatible ``/chat/completions`` endpoint."""

    def _build_user_prompt(
        self,
        files: Sequence[tuple[str, str]],
        is_diff_content: bool,
        diagnostics_by_file: Mapping[str, Sequence[Diagnostic]] | None,
    ) -> str:
        sections = []
        for path, content in files:
            ext = path.rsplit(".", 1)[-1] if "." in path else ""
            if not content:
                logger.warning("File content is empty: %s", path)
            sections.append(f"File: {path}\n```{get_language_from_extension(ext)}\n{content}\n```")

        intro = _DIFF_INTRO if is_diff_content else _FULL_INTRO
        known = build_known_diagnostics_prompt(diagnostics_by_file)
        output_format = _OUTPUT_FORMAT.format(line_hint=_DIFF_LINE_HINT if is_diff_content else "")
        return f"{intro}\n\n" + "\n\n".join(sections) + f"\n\n{known}\n{output_format}"

    def _body(self, messages: list[dict]) -> dict:
        return {
            "model": self.config.model,
            "messages": messages,
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
        }

    def build_request(
        self,
        files: Sequence[tuple[str, str]],
        is_diff_content: bool = False,
        diagnostics_by_file: Mapping[str, Sequence[Diagnostic]] | None = None,
    ) -> dict:
        return self._body(
            [
                {"role": "system", "content": self.config.system_prompt},
                {"role": "user", "content": self._build_user_prompt(files, is_diff_content, diagnostics_by_file)},
            ]
        )

    def parse_response(self, data: Any) -> ParseResult:
        return parse_openai_response(data, self.config.max_tokens)

    def base_messages(self, request_body: dict) -> list[dict] | None:
        return list(request_body["messages"])

    def build_continuation_request(
        self,
        base_messages: list[dict],
        partial_content: str,
        cached_issues: Sequence[IssuePayload],
    ) -> dict | None:
        if cached_issues:
            last = cached_issues[-1]
            last_issue_hint = f"Last issue: file={last.file}, line={last.line}, message={last.message}"
        else:
            last_issue_hint = "No complete issue has been parsed yet"
        prompt = _CONTINUATION_PROMPT.format(count=len(cached_issues), last_issue_hint=last_issue_hint)
        return self._body(
            [
                *base_messages,
                {"role": "assistant", "content": partial_content},
                {"role": "user", "content": prompt},
            ]
        )
