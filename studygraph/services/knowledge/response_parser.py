"""
Staged parser for raw model output.

Each strategy is total and side-effect free: it either returns a JSON object
or raises ValueError. Strategies are tried in order; the first object wins.
Parsing is all-or-nothing, a partial object is never returned.
"""

from __future__ import annotations

import json
import re
from typing import Any, Callable

import structlog

from studygraph.domain.exceptions import UnparsableOutputError
from studygraph.infrastructure.observability.generation_logging import preview_text

logger = structlog.get_logger(__name__)


_FENCE_RE = re.compile(r"```(?:json)?\s*", flags=re.IGNORECASE)
_OBJECT_RE = re.compile(r"\{[\s\S]*\}")
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f]")


def _require_object(value: Any) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise ValueError(f"expected JSON object, got {type(value).__name__}")
    return value


def _extract_object(raw: str) -> str:
    cleaned = _FENCE_RE.sub("", raw).strip()
    match = _OBJECT_RE.search(cleaned)
    if not match:
        raise ValueError("no JSON object found")
    return match.group(0)


def _parse_direct(raw: str) -> dict[str, Any]:
    return _require_object(json.loads(raw))


def _parse_fenced_object(raw: str) -> dict[str, Any]:
    return _require_object(json.loads(_extract_object(raw)))


def _parse_repaired_object(raw: str) -> dict[str, Any]:
    candidate = _extract_object(raw)
    candidate = _CONTROL_CHARS_RE.sub("", candidate)
    candidate = _TRAILING_COMMA_RE.sub(r"\1", candidate)
    return _require_object(json.loads(candidate))


PARSE_STRATEGIES: tuple[tuple[str, Callable[[str], dict[str, Any]]], ...] = (
    ("direct", _parse_direct),
    ("fenced_object", _parse_fenced_object),
    ("repaired_object", _parse_repaired_object),
)


def parse_model_output(raw_text: str) -> dict[str, Any]:
    """
    Parses model text into a JSON object.

    Raises:
        UnparsableOutputError: every strategy failed.
    """
    raw = str(raw_text or "")
    failures: list[str] = []
    for name, strategy in PARSE_STRATEGIES:
        try:
            parsed = strategy(raw)
        except ValueError as exc:
            failures.append(f"{name}: {exc}")
            continue
        if failures:
            logger.debug("model_output_repaired", strategy=name, failed_strategies=len(failures))
        return parsed

    logger.warning(
        "model_output_unparsable",
        chars=len(raw),
        preview=preview_text(raw),
        failures=failures,
    )
    raise UnparsableOutputError(
        "model output is not a valid JSON object: " + "; ".join(failures),
        user_message="Could not interpret the AI response. Please try again.",
    )
