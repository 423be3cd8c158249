"""Run telemetry sink.

The engine reports plan, batch and call events through a ``TraceSink`` so
that callers can persist structured run traces. Without one, events go to
the debug log.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class TraceSink(Protocol):
    def log_event(self, event: str, **data: Any) -> None: ...


class LoggingTraceSink:
    def log_event(self, event: str, **data: Any) -> None:
        logger.debug("%s %s", event, data)
