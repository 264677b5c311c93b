import asyncio
import threading
import time
from typing import Optional

import structlog

from studygraph.core.settings import settings

logger = structlog.get_logger(__name__)


class CallSpacingLimiter:
    """
    Enforces a minimum interval between consecutive LLM calls process-wide.

    Each caller reserves the next free slot under a thread lock and then
    sleeps outside of it, so concurrent generations serialise through the
    same spacing rule without holding the lock while waiting.
    """

    def __init__(self, min_interval_seconds: float):
        self.min_interval_seconds = max(0.0, float(min_interval_seconds))
        self._lock = threading.Lock()
        self._next_slot = 0.0
        self.last_call_at: Optional[float] = None

    def reserve(self) -> float:
        """Reserves the next slot and returns how long to wait for it."""
        with self._lock:
            now = time.monotonic()
            slot = max(now, self._next_slot)
            self._next_slot = slot + self.min_interval_seconds
            self.last_call_at = slot
            return slot - now

    async def wait_turn(self) -> float:
        delay = self.reserve()
        if delay > 0:
            logger.debug("llm_call_spacing_wait", delay_ms=round(delay * 1000))
            await asyncio.sleep(delay)
        return delay


_default_limiter: Optional[CallSpacingLimiter] = None
_default_limiter_lock = threading.Lock()


def get_call_spacing_limiter() -> CallSpacingLimiter:
    """Get or create the shared limiter (the only state shared across generations)."""
    global _default_limiter
    with _default_limiter_lock:
        if _default_limiter is None:
            _default_limiter = CallSpacingLimiter(
                float(getattr(settings, "LLM_MIN_CALL_INTERVAL_SECONDS", 1.5) or 0.0)
            )
        return _default_limiter
