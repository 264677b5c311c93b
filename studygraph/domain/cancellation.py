from __future__ import annotations

import threading
from typing import Optional

from studygraph.domain.exceptions import GenerationCancelled


class CancellationToken:
    """
    Cooperative cancellation flag shared between a caller and one pipeline run.

    The pipeline only checks it at pass boundaries; a network call already in
    flight completes and its result is discarded.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "requested") -> None:
        if not self._event.is_set():
            self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, stage: str = "") -> None:
        if self._event.is_set():
            raise GenerationCancelled(stage)
