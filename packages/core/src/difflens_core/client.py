"""HTTP calls to the review endpoint.

``ReviewClient.call`` performs one logical review call for a batch of files:

    build body → POST (retry with exponential backoff) → parse
               → merge into the request-hash cache
               → if truncated: continuation request, merge again

Transport failures (no response, 5xx, 429) are retried; other HTTP errors
abort at once so the caller can react (for example by splitting the batch
on 413). Schema and parse failures are never retried.
"""

from __future__ import annotations

import logging
import re
import time
from typing import Any, Mapping, Sequence

import requests

from difflens_core.cache import ReviewCache, calculate_request_hash
from difflens_core.config import ReviewConfig
from difflens_core.errors import (
    LLMConnectionError,
    LLMHTTPError,
    LLMRequestError,
    LLMRetryExhaustedError,
    LLMTimeoutError,
    ResponseParseError,
    ReviewError,
    SchemaValidationError,
)
from difflens_core.models import Diagnostic, IssuePayload, ReviewResponse
from difflens_core.providers.base import BaseProvider
from difflens_core.trace import LoggingTraceSink, TraceSink

logger = logging.getLogger(__name__)

_CONTEXT_TOO_LONG_RE = re.compile(
    r"(context|context_length_exceeded|too many tokens|max(?:imum)? context|prompt too long"
    r"|request too large|payload too large)"
)
# Response bodies kept on errors, for classification and logs.
_ERROR_BODY_LIMIT = 2000


def should_retry(error: BaseException) -> bool:
    if not isinstance(error, LLMRequestError):
        return False
    status = error.status_code
    if status is None:
        return True
    return status >= 500 or status == 429


def retry_reason(error: BaseException) -> str:
    if not isinstance(error, LLMRequestError):
        return "unknown"
    if error.status_code is None:
        return "timeout" if isinstance(error, LLMTimeoutError) else "network"
    if error.status_code == 429:
        return "rate_limit"
    if error.status_code >= 500:
        return "server_error"
    return f"http_{error.status_code}"


def is_context_too_long(error: BaseException) -> bool:
    """413, or a 400 whose message or body talks about context/payload size."""
    if not isinstance(error, LLMRequestError):
        return False
    if error.status_code == 413:
        return True
    if error.status_code != 400:
        return False
    return bool(_CONTEXT_TOO_LONG_RE.search(f"{error} {error.body}".lower()))


def is_timeout(error: BaseException) -> bool:
    if isinstance(error, LLMTimeoutError) or isinstance(error.__cause__, LLMTimeoutError):
        return True
    return isinstance(error, LLMRequestError) and "timeout" in str(error).lower()


class ReviewClient:
    def __init__(
        self,
        config: ReviewConfig,
        provider: BaseProvider,
        cache: ReviewCache,
        session: requests.Session | None = None,
        trace: TraceSink | None = None,
    ):
        self.config = config
        self.provider = provider
        self.cache = cache
        self.session = session or requests.Session()
        self.trace = trace or LoggingTraceSink()

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    def _post(self, body: dict) -> Any:
        """Make a single HTTP call and return the decoded JSON body."""
        url = self.config.api_endpoint
        try:
            response = self.session.post(
                url, json=body, headers=self._headers(), timeout=self.config.timeout_seconds
            )
        except requests.Timeout as e:
            raise LLMTimeoutError(f"AI API request timed out after {self.config.timeout}ms") from e
        except (requests.RequestException, OSError) as e:
            raise LLMConnectionError(f"AI API connection failed: {e}") from e

        if response.status_code >= 400:
            body_text = (response.text or "")[:_ERROR_BODY_LIMIT]
            if response.status_code == 404:
                logger.warning("AI API returned 404: check the model name and endpoint URL. %s", body_text)
            raise LLMHTTPError(
                f"AI API returned HTTP {response.status_code}",
                status_code=response.status_code,
                body=body_text,
            )
        try:
            return response.json()
        except ValueError as e:
            raise ResponseParseError(f"AI API returned a body that is not JSON: {e}") from e

    def call(
        self,
        files: Sequence[tuple[str, str]],
        is_diff_content: bool = False,
        diagnostics_by_file: Mapping[str, Sequence[Diagnostic]] | None = None,
    ) -> ReviewResponse:
        """Review ``files`` in one logical call and return the merged issues."""
        request_hash = calculate_request_hash(files)
        body = self.provider.build_request(files, is_diff_content, diagnostics_by_file)
        base_messages = self.provider.base_messages(body)
        if base_messages is not None:
            self.cache.base_messages[request_hash] = base_messages

        mode = "diff_or_ast" if is_diff_content else "full"
        started = time.monotonic()
        self.trace.log_event("llm_call_start", mode=mode, files=len(files))

        max_retries = self.config.retry_count
        base_delay = self.config.retry_delay
        current_body = body
        last_error: LLMRequestError | None = None
        partial: list[IssuePayload] = []

        for attempt in range(max_retries + 1):
            try:
                data = self._post(current_body)
            except LLMRequestError as e:
                last_error = e
                if not should_retry(e):
                    if partial:
                        return self._partial_response(partial, e, mode, attempt + 1, started)
                    self.trace.log_event(
                        "llm_call_abort",
                        mode=mode,
                        attempts=attempt + 1,
                        status_code=e.status_code,
                        error_class=type(e).__name__,
                    )
                    raise
                if attempt == max_retries:
                    if partial:
                        return self._partial_response(partial, e, mode, attempt + 1, started)
                    break
                delay = base_delay * 2**attempt
                logger.warning(
                    "AI API call failed (%s), retrying in %dms (%d/%d)", e, delay, attempt + 1, max_retries
                )
                self.trace.log_event(
                    "llm_retry_scheduled",
                    mode=mode,
                    attempt=attempt + 1,
                    delay_ms=delay,
                    status_code=e.status_code or 0,
                    reason=retry_reason(e),
                )
                time.sleep(delay / 1000)
                continue
            except ResponseParseError as e:
                if partial:
                    return self._partial_response(partial, e, mode, attempt + 1, started)
                raise

            try:
                result = self.provider.parse_response(data)
            except (ResponseParseError, SchemaValidationError) as e:
                if partial:
                    return self._partial_response(partial, e, mode, attempt + 1, started)
                raise
            merged = self.cache.merge_issues(request_hash, result.response.issues, result.is_partial)
            elapsed_ms = int((time.monotonic() - started) * 1000)

            if not result.is_partial:
                self.trace.log_event("llm_call_done", mode=mode, attempts=attempt + 1, partial=False, duration_ms=elapsed_ms)
                return ReviewResponse(issues=merged)

            partial = merged
            logger.warning("AI response looks truncated; requesting the remaining issues")
            if attempt == max_retries:
                logger.warning("Continuation attempts exhausted; returning the %d issue(s) parsed so far", len(merged))
                self.trace.log_event("llm_call_done", mode=mode, attempts=attempt + 1, partial=True, duration_ms=elapsed_ms)
                return ReviewResponse(issues=merged)

            cached_messages = self.cache.base_messages.get(request_hash)
            continuation = (
                self.provider.build_continuation_request(cached_messages, result.cleaned_content, merged)
                if cached_messages
                else None
            )
            if continuation is None:
                logger.warning("No base prompt cached for continuation; returning the %d issue(s) parsed so far", len(merged))
                self.trace.log_event("llm_call_done", mode=mode, attempts=attempt + 1, partial=True, duration_ms=elapsed_ms)
                return ReviewResponse(issues=merged)
            current_body = continuation

        self.trace.log_event(
            "llm_call_failed",
            mode=mode,
            attempts=max_retries + 1,
            duration_ms=int((time.monotonic() - started) * 1000),
            error_class=type(last_error).__name__,
        )
        raise LLMRetryExhaustedError(
            f"AI API call failed after {max_retries} retries: {last_error}",
            status_code=last_error.status_code if last_error else None,
            body=last_error.body if last_error else "",
        ) from last_error

    def _partial_response(
        self, issues: list[IssuePayload], error: ReviewError, mode: str, attempts: int, started: float
    ) -> ReviewResponse:
        """Keep the issues recovered from a truncated answer when its continuation fails."""
        logger.warning("Continuation request failed (%s); returning the %d issue(s) parsed so far", error, len(issues))
        self.trace.log_event(
            "llm_call_done",
            mode=mode,
            attempts=attempts,
            partial=True,
            duration_ms=int((time.monotonic() - started) * 1000),
            error_class=type(error).__name__,
        )
        return ReviewResponse(issues=issues)
