"""Exception hierarchy for the review engine.

Callers can catch ``ReviewError`` for anything raised by difflens. The
subclasses map onto the failure classes the engine treats differently:
configuration problems are surfaced before any call is made, transport
failures may be retried, schema problems never are.
"""

from __future__ import annotations

from pydantic import ValidationError


class ReviewError(Exception):
    """Base class for every error raised by difflens_core."""


class ConfigurationError(ReviewError):
    """Endpoint, model or credentials are missing or unresolved."""


class SchemaValidationError(ReviewError):
    """A request or response did not match its schema."""

    def __init__(self, context: str, details: str):
        super().__init__(f"{context} validation failed: {details}")
        self.context = context
        self.details = details

    @classmethod
    def from_pydantic(cls, context: str, error: ValidationError) -> "SchemaValidationError":
        return cls(context, format_validation_error(error))


class ResponseParseError(ReviewError):
    """The model's content could not be turned into a JSON object."""


class LLMRequestError(ReviewError):
    """An HTTP call to the review endpoint failed.

    ``status_code`` is ``None`` when no response was received at all.
    """

    def __init__(self, message: str, status_code: int | None = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class LLMConnectionError(LLMRequestError):
    """The endpoint could not be reached."""


class LLMTimeoutError(LLMConnectionError):
    """The endpoint did not answer within the configured timeout."""


class LLMHTTPError(LLMRequestError):
    """The endpoint answered with a non-2xx status."""


class LLMRetryExhaustedError(LLMRequestError):
    """The retry budget was spent without a usable response."""


class ReviewAbortedError(ReviewError):
    """Raised instead of a synthetic issue when ``action`` is ``block_commit``."""

    def __init__(self, message: str, rule: str = "ai_review_error"):
        super().__init__(message)
        self.rule = rule


def format_validation_error(error: ValidationError) -> str:
    """Render pydantic errors as ``path.to.field: message`` pairs."""
    parts = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ()))
        parts.append(f"{location}: {item.get('msg', 'invalid value')}")
    return ", ".join(parts)
