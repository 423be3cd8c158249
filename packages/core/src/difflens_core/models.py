"""Shared types for the review engine.

Two families live here:

- pydantic models for everything that crosses the wire (the review request
  and the JSON the model must answer with), so malformed data fails with a
  field path instead of being coerced;
- plain dataclasses for the engine's own values (units, issues, collaborator
  inputs), which are built by trusted code and never need validation.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

Severity = Literal["error", "warning", "info"]
Action = Literal["block_commit", "warning", "log"]


class ProviderFormat(str, Enum):
    """Wire format spoken by the review endpoint."""

    OPENAI = "openai"
    CUSTOM = "custom"


class SourceType(str, Enum):
    """Where a unit's content came from."""

    AST = "ast"
    DIFF = "diff"
    FULL = "full"


# --------------------------------------------------------------------------- #
# Wire schemas                                                                #
# --------------------------------------------------------------------------- #


class RequestFile(BaseModel):
    path: str = Field(min_length=1)
    content: Optional[str] = None


class ReviewRequest(BaseModel):
    """Files submitted to ``AIReviewer.review``; content is loaded lazily when absent."""

    files: list[RequestFile] = Field(min_length=1)


class IssuePayload(BaseModel):
    """One issue exactly as the model reports it."""

    model_config = ConfigDict(strict=True)

    file: str = Field(min_length=1)
    line: int = Field(default=1, gt=0)
    column: int = Field(default=1, ge=0)
    snippet: Optional[str] = None
    message: str = Field(min_length=1)
    severity: Severity


class ReviewResponse(BaseModel):
    issues: list[IssuePayload]


class ChatMessage(BaseModel):
    content: str = Field(min_length=1)


class ChatChoice(BaseModel):
    message: ChatMessage


class ChatUsage(BaseModel):
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None


class ChatCompletion(BaseModel):
    """The subset of an OpenAI-compatible chat completion we rely on."""

    choices: list[ChatChoice] = Field(min_length=1)
    usage: Optional[ChatUsage] = None


# --------------------------------------------------------------------------- #
# Collaborator inputs                                                         #
# --------------------------------------------------------------------------- #


@dataclass
class DiffHunk:
    new_start: int
    new_count: int
    lines: list[str] = field(default_factory=list)


@dataclass
class FileDiff:
    """Parsed diff for one file. Line numbers refer to the new file."""

    path: str
    hunks: list[DiffHunk] = field(default_factory=list)
    format_only: bool = False
    comment_only: bool = False
    added_lines: int | None = None
    deleted_lines: int | None = None
    added_content_lines: list[str] | None = None


@dataclass
class AstSnippet:
    start_line: int
    end_line: int
    source: str


@dataclass
class AffectedScopeResult:
    snippets: list[AstSnippet] = field(default_factory=list)


@dataclass(frozen=True)
class AstRange:
    start_line: int
    end_line: int

    def overlaps(self, other: "AstRange") -> bool:
        return self.end_line >= other.start_line and self.start_line <= other.end_line


@dataclass
class Diagnostic:
    """A finding already reported by a local linter or type checker."""

    line: int
    message: str
    range: AstRange | None = None


# --------------------------------------------------------------------------- #
# Engine values                                                               #
# --------------------------------------------------------------------------- #


@dataclass(frozen=True)
class ReviewUnit:
    """One schedulable piece of review work: a file, or a chunk of its AST snippets."""

    unit_id: str
    path: str
    content: str
    snippet_count: int
    source_type: SourceType

    @property
    def weight(self) -> int:
        return max(1, self.snippet_count)


@dataclass
class Issue:
    file: str
    line: int
    column: int
    message: str
    severity: Severity
    rule: str = "ai_review"
    ast_range: AstRange | None = None

    def to_dict(self) -> dict:
        data = asdict(self)
        if self.ast_range is None:
            data.pop("ast_range")
        return data
