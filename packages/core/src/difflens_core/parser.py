"""Turn raw endpoint responses into validated issue lists.

Models regularly wrap their JSON in Markdown fences, stop mid-object when
they hit ``max_tokens``, or emit Windows paths with bare backslashes. The
helpers here recover what can be recovered:

- ``clean_json_content`` strips the outer code fence;
- ``extract_partial_json`` salvages every complete issue object that precedes
  a truncation point (the result is flagged partial so the caller can ask
  for the rest);
- ``extract_json_from_text`` pulls the first balanced object out of prose;
- ``fix_json_escape_chars`` doubles backslashes that do not start a valid
  JSON escape.

Object boundaries are found with ``JsonScanner``, a character-level state
machine that tracks string/escape state and brace depth.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Iterator

from pydantic import ValidationError

from difflens_core.config import DEFAULT_MAX_TOKENS
from difflens_core.errors import ResponseParseError, SchemaValidationError
from difflens_core.models import ChatCompletion, ChatUsage, ReviewResponse

logger = logging.getLogger(__name__)

_FENCED_BLOCK_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
_ISSUES_ARRAY_RE = re.compile(r'"issues"\s*:\s*\[')
_VALID_ESCAPES = frozenset('"\\/bfnrtu')
_TRUNCATION_PATTERNS = [
    re.compile(r"unterminated string", re.IGNORECASE),
    re.compile(r"unexpected end", re.IGNORECASE),
    re.compile(r"end of (?:json )?(?:input|data)", re.IGNORECASE),
]


@dataclass
class ParseResult:
    response: ReviewResponse
    is_partial: bool
    cleaned_content: str
    usage: ChatUsage | None = None


@dataclass
class JsonScanner:
    """Incremental scanner that reports where top-level objects open and close.

    ``feed`` consumes one character and returns ``"open"`` when it starts an
    object at depth 0, ``"close"`` when it brings the depth back to 0,
    ``"end"`` for a ``]`` at depth 0 (the enclosing array closed) and
    ``None`` otherwise. Braces and brackets inside strings are ignored.
    """

    in_string: bool = False
    escape_next: bool = False
    depth: int = 0

    def feed(self, char: str) -> str | None:
        if self.escape_next:
            self.escape_next = False
            return None
        if self.in_string:
            if char == "\\":
                self.escape_next = True
            elif char == '"':
                self.in_string = False
            return None
        if char == '"':
            self.in_string = True
        elif char == "{":
            self.depth += 1
            if self.depth == 1:
                return "open"
        elif char == "}":
            if self.depth > 0:
                self.depth -= 1
                if self.depth == 0:
                    return "close"
        elif char == "]" and self.depth == 0:
            return "end"
        return None


def iter_object_spans(text: str, start: int = 0) -> Iterator[tuple[int, int]]:
    """Yield ``(begin, end)`` slices of each complete top-level object in ``text[start:]``.

    Scanning stops at the first ``]`` outside any object, i.e. at the end of
    the array being scanned. An object still open when the text runs out is
    not yielded.
    """
    scanner = JsonScanner()
    begin = -1
    for index in range(start, len(text)):
        event = scanner.feed(text[index])
        if event == "open":
            begin = index
        elif event == "close" and begin != -1:
            yield begin, index + 1
            begin = -1
        elif event == "end":
            return


def clean_json_content(content: str) -> str:
    """Strip a Markdown code fence around the JSON payload, if any.

    When the payload itself starts with a fence only the outer fence is
    removed, so fenced code inside issue messages survives.
    """
    cleaned = content.strip()
    if cleaned.startswith("```"):
        cleaned = re.sub(r"^```(?:json)?\s*", "", cleaned)
        cleaned = re.sub(r"\s*```$", "", cleaned.strip())
        logger.debug("Removed code fence around JSON content")
        return cleaned.strip()
    match = _FENCED_BLOCK_RE.search(cleaned)
    if match and "{" in match.group(1):
        logger.debug("Extracted JSON content from fenced block")
        return match.group(1).strip()
    return cleaned


def is_content_truncated(content: str) -> bool:
    """Heuristic: does ``content`` look cut off before the final closing brace?"""
    trimmed = content.strip()
    if not trimmed.endswith("}"):
        return True
    if trimmed.count("{") != trimmed.count("}"):
        return True
    last_quote = trimmed.rfind('"')
    if last_quote > 0:
        after = trimmed[last_quote + 1 :]
        if not re.match(r"^\s*[,}\]:]", after) and trimmed.count('"') % 2 != 0:
            return True
    return False


def is_truncated_json_error(error: json.JSONDecodeError | str, content: str) -> bool:
    """Classify a decode failure as truncation (as opposed to malformed JSON)."""
    message = error.msg if isinstance(error, json.JSONDecodeError) else str(error)
    if any(pattern.search(message) for pattern in _TRUNCATION_PATTERNS):
        return True
    trimmed = content.strip()
    if isinstance(error, json.JSONDecodeError) and error.pos >= len(trimmed):
        return True
    return (
        trimmed.endswith(",")
        or trimmed.endswith('"')
        or trimmed.endswith("\\")
        or ('"issues"' in trimmed and not trimmed.endswith("}"))
    )


def extract_partial_json(content: str) -> dict:
    """Recover the complete issue objects that precede a truncation point.

    Objects that fail to parse on their own are dropped. Raises
    ResponseParseError when the content has no ``"issues": [`` array at all.
    """
    match = _ISSUES_ARRAY_RE.search(content)
    if not match:
        raise ResponseParseError("JSON was truncated and no issues array could be found")

    issues: list[Any] = []
    for begin, end in iter_object_spans(content, match.end()):
        fragment = content[begin:end]
        try:
            issues.append(json.loads(fragment))
        except json.JSONDecodeError:
            try:
                issues.append(json.loads(fix_json_escape_chars(fragment)))
            except json.JSONDecodeError as e:
                logger.debug("Skipping unparseable issue object: %s", e)

    logger.warning("JSON was truncated; recovered %d complete issue(s)", len(issues))
    return {"issues": issues}


def fix_json_escape_chars(json_str: str) -> str:
    """Double every backslash inside a string literal that is not a valid JSON escape.

    Valid JSON is returned unchanged, so applying the repair twice is the
    same as applying it once.
    """
    out: list[str] = []
    in_string = False
    escape_next = False
    length = len(json_str)
    for index, char in enumerate(json_str):
        if escape_next:
            out.append(char)
            escape_next = False
            continue
        if char == "\\" and in_string:
            next_char = json_str[index + 1] if index + 1 < length else ""
            if next_char in _VALID_ESCAPES and next_char:
                out.append(char)
                escape_next = True
            else:
                out.append("\\\\")
            continue
        if char == '"':
            in_string = not in_string
        out.append(char)
    return "".join(out)


def extract_json_from_text(text: str) -> Any | None:
    """Parse the first balanced ``{...}`` object found anywhere in ``text``."""
    first_brace = text.find("{")
    if first_brace == -1:
        return None
    span = next(iter_object_spans(text, first_brace), None)
    if span is None:
        return None

    fragment = text[span[0] : span[1]]
    logger.debug("Extracted JSON object of %d chars", len(fragment))
    try:
        return json.loads(fragment)
    except json.JSONDecodeError as e:
        logger.debug("Extracted object did not parse, repairing escapes: %s", e)
    try:
        return json.loads(fix_json_escape_chars(fragment))
    except json.JSONDecodeError:
        logger.debug("Extracted object still does not parse after escape repair")
        return None


def parse_json_content(content: str) -> tuple[Any, bool]:
    """Parse ``content``, falling back to partial or embedded extraction.

    Returns ``(parsed, is_partial)``.
    """
    try:
        return json.loads(content), False
    except json.JSONDecodeError as e:
        logger.debug("Direct JSON parse failed: %s", e)
        if is_truncated_json_error(e, content):
            logger.warning("Response JSON looks truncated (max_tokens reached?); extracting complete issues")
            return extract_partial_json(content), True
        extracted = extract_json_from_text(content)
        if extracted is None:
            raise ResponseParseError(f"Could not extract a valid JSON object from the response: {e}") from e
        return extracted, False


def _validate_issues(parsed: Any, context: str) -> ReviewResponse:
    try:
        return ReviewResponse.model_validate(parsed)
    except ValidationError as e:
        logger.error("%s failed schema validation: %s", context, e.errors())
        raise SchemaValidationError.from_pydantic(context, e) from e


def parse_openai_response(
    data: Any,
    max_tokens: int = DEFAULT_MAX_TOKENS,
    log: logging.Logger | None = None,
) -> ParseResult:
    """Parse an OpenAI-compatible chat completion into a ParseResult."""
    log = log or logger
    try:
        envelope = ChatCompletion.model_validate(data)
    except ValidationError as e:
        log.error("AI response envelope failed schema validation: %s", e.errors())
        raise SchemaValidationError.from_pydantic("AI response", e) from e

    content = envelope.choices[0].message.content
    log.debug("AI response content is %d chars", len(content))
    cleaned = clean_json_content(content)
    if is_content_truncated(cleaned):
        log.warning(
            "AI response content looks truncated (max_tokens=%d); consider raising max_tokens "
            "or reviewing fewer files per batch",
            max_tokens,
        )

    parsed, is_partial = parse_json_content(cleaned)
    response = _validate_issues(parsed, "AI response")
    log.debug("AI response parsed: %d issue(s), partial=%s", len(response.issues), is_partial)
    return ParseResult(response=response, is_partial=is_partial, cleaned_content=cleaned, usage=envelope.usage)


def parse_custom_response(data: Any, log: logging.Logger | None = None) -> ParseResult:
    """Validate a custom-format response, which must already be ``{"issues": [...]}``."""
    log = log or logger
    response = _validate_issues(data, "Custom API response")
    log.debug("Custom API response parsed: %d issue(s)", len(response.issues))
    return ParseResult(response=response, is_partial=False, cleaned_content="")
