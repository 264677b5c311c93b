import asyncio
import time
from dataclasses import dataclass, field
from typing import Dict, Optional
from uuid import uuid4

import structlog

from studygraph.domain.cancellation import CancellationToken
from studygraph.domain.progress import ProgressEvent

logger = structlog.get_logger(__name__)


class GenerationInProgressError(RuntimeError):
    def __init__(self, subject_id: str, generation_id: str):
        super().__init__(f"generation {generation_id} already running for subject {subject_id}")
        self.subject_id = subject_id
        self.generation_id = generation_id


@dataclass
class GenerationHandle:
    """One in-flight generation: its cancel token and the latest progress event."""

    subject_id: str
    generation_id: str = field(default_factory=lambda: str(uuid4()))
    token: CancellationToken = field(default_factory=CancellationToken)
    latest: Optional[ProgressEvent] = None
    started_at: float = field(default_factory=time.time)

    def emit(self, event: ProgressEvent) -> None:
        self.latest = event

    def snapshot(self) -> Dict[str, object]:
        event = self.latest
        return {
            "generation_id": self.generation_id,
            "cancel_requested": self.token.cancelled,
            "step": event.step if event else None,
            "current": event.current if event else 0,
            "total": event.total if event else 0,
            "detail": event.detail if event else None,
        }


class GenerationRegistry:
    """Tracks at most one in-flight generation per subject."""

    def __init__(self):
        self._active: Dict[str, GenerationHandle] = {}
        self._lock = asyncio.Lock()

    async def start(self, subject_id: str) -> GenerationHandle:
        async with self._lock:
            current = self._active.get(subject_id)
            if current is not None:
                raise GenerationInProgressError(subject_id, current.generation_id)
            handle = GenerationHandle(subject_id=subject_id)
            self._active[subject_id] = handle
        logger.info("generation_registered", subject_id=subject_id, generation_id=handle.generation_id)
        return handle

    async def get(self, subject_id: str) -> Optional[GenerationHandle]:
        async with self._lock:
            return self._active.get(subject_id)

    async def cancel(self, subject_id: str, reason: str = "user_requested") -> bool:
        async with self._lock:
            handle = self._active.get(subject_id)
        if handle is None:
            return False
        handle.token.cancel(reason)
        logger.info("generation_cancel_requested", subject_id=subject_id, generation_id=handle.generation_id)
        return True

    async def finish(self, handle: GenerationHandle) -> None:
        async with self._lock:
            if self._active.get(handle.subject_id) is handle:
                self._active.pop(handle.subject_id, None)
