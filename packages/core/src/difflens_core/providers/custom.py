from __future__ import annotations

from typing import Any, Mapping, Sequence

from difflens_core.models import Diagnostic
from difflens_core.parser import ParseResult, parse_custom_response
from difflens_core.providers.base import BaseProvider


class CustomProvider(BaseProvider):
    """Endpoint that takes ``{"files": [...]}`` and answers ``{"issues": [...]}`` directly.

    The files are passed through untouched; prompt construction, diagnostics
    and continuation are the endpoint's own business.
    """

    def build_request(
        self,
        files: Sequence[tuple[str, str]],
        is_diff_content: bool = False,
        diagnostics_by_file: Mapping[str, Sequence[Diagnostic]] | None = None,
    ) -> dict:
        return {"files": [{"path": path, "content": content} for path, content in files]}

    def parse_response(self, data: Any) -> ParseResult:
        return parse_custom_response(data)
