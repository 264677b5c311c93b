from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional, Protocol, runtime_checkable

import structlog

from studygraph.infrastructure.observability.generation_logging import compact_error

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ProgressEvent:
    step: str
    current: int
    total: int
    detail: Optional[str] = None


@runtime_checkable
class IProgressSink(Protocol):
    def emit(self, event: ProgressEvent) -> None: ...


class NullProgressSink:
    def emit(self, event: ProgressEvent) -> None:
        del event


class CallbackProgressSink:
    """Adapts a plain callable to the sink protocol."""

    def __init__(self, callback: Callable[[ProgressEvent], None]):
        self._callback = callback

    def emit(self, event: ProgressEvent) -> None:
        self._callback(event)


class ProgressTracker:
    """
    Wraps a caller-supplied sink for one generation request.

    Keeps `current` monotonic across strategy changes (a fallback to single
    pass continues counting from where multi-pass stopped) and isolates the
    pipeline from sink failures: emission is observational only.
    """

    def __init__(self, sink: Optional[IProgressSink] = None):
        self._sink = sink or NullProgressSink()
        self.current = 0
        self.total = 0
        self.events: list[ProgressEvent] = []

    def advance(self, step: str, *, total: int, detail: Optional[str] = None) -> ProgressEvent:
        self.current += 1
        self.total = max(int(total), self.current)
        event = ProgressEvent(step=step, current=self.current, total=self.total, detail=detail)
        self.events.append(event)
        try:
            self._sink.emit(event)
        except Exception as exc:
            logger.warning("progress_sink_failed", step=step, error=compact_error(exc))
        return event

    def jump_to(self, current: int, step: str, *, total: int, detail: Optional[str] = None) -> ProgressEvent:
        """Advance to an absolute position (never backwards)."""
        self.current = max(self.current, int(current) - 1)
        return self.advance(step, total=total, detail=detail)
