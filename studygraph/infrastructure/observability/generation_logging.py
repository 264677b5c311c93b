from __future__ import annotations

from typing import Any


def compact_error(value: Any, *, limit: int = 320) -> str:
    text = str(value or "").replace("\n", " ").strip()
    if not text and isinstance(value, BaseException):
        text = type(value).__name__
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def preview_text(value: Any, *, limit: int = 120) -> str:
    """Single-line, bounded preview of model output for debug logs."""
    text = " ".join(str(value or "").split())
    if len(text) <= limit:
        return text
    return text[:limit] + "..."
