"""
Graph assembler: the single validation boundary between untrusted model
output and the typed graph.

Everything here is pure (no I/O) and total: `assemble` always returns a
best-effort `GenerationResult` from whatever partial data it receives. The
only randomness is the bounded layout jitter, drawn from an injectable
`random.Random`.
"""

from __future__ import annotations

import math
import random
from collections import defaultdict
from typing import Any, Iterable, Optional, Sequence

from studygraph.domain.exceptions import MalformedOutputError
from studygraph.domain.graph_schemas import (
    CHAPTER_INDEX_KEY,
    CHAPTER_TITLE_KEY,
    MAX_LEVEL,
    MIN_LEVEL,
    X_RANGE,
    Y_RANGE,
    Chapter,
    ConceptNode,
    DependencyEdge,
    FormulaVariable,
    GenerationResult,
)

DEFAULT_EDGE_STRENGTH = 0.5
X_JITTER = 20.0
Y_JITTER = 10.0
CHAPTER_Y_OFFSET_SPAN = 30.0
_NULL_FORMULAS = {"", "null", "none"}


def _clamp(value: float, low: float, high: float) -> float:
    return min(high, max(low, value))


def _as_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def normalize_level(value: Any) -> int:
    number = _as_number(value)
    if not number:
        return MIN_LEVEL
    # Half-up rounding: 2.5 -> 3.
    return int(_clamp(math.floor(number + 0.5), MIN_LEVEL, MAX_LEVEL))


def normalize_strength(value: Any) -> float:
    number = _as_number(value)
    if number is None:
        return DEFAULT_EDGE_STRENGTH
    return _clamp(number, 0.0, 1.0)


def normalize_formula(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    if text.lower() in _NULL_FORMULAS:
        return None
    return text


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    items = []
    for entry in value:
        if not entry:
            continue
        text = str(entry).strip()
        if text:
            items.append(text)
    return items


def _variables(value: Any) -> list[FormulaVariable]:
    if not isinstance(value, list):
        return []
    variables = []
    for entry in value:
        if not isinstance(entry, dict):
            continue
        symbol = str(entry.get("symbol") or "").strip()
        meaning = str(entry.get("meaning") or "").strip()
        if not symbol and not meaning:
            continue
        unit = entry.get("unit")
        variables.append(
            FormulaVariable(symbol=symbol, meaning=meaning, unit=str(unit).strip() if unit else None)
        )
    return variables


def _chapter_index(concept: dict[str, Any]) -> int:
    number = _as_number(concept.get(CHAPTER_INDEX_KEY))
    if number is None or number < 0:
        return 0
    return int(number)


def _raw_id(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def disambiguate_concept_ids(
    concepts: Sequence[Any], internal_edges: Sequence[Any]
) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
    """
    Gives every concept a unique id.

    Missing ids become `node_<globalIndex+1>`; a colliding id is suffixed
    `_<k>`. When a concept is renamed, the internal edges of its own chapter
    that referenced the old id are rewritten to the new one. Non-dict entries
    are dropped. Already-unique input comes back unchanged.
    """
    seen: set[str] = set()
    kept: set[tuple[Any, str]] = set()
    renames: dict[tuple[Any, str], str] = {}
    resolved: list[dict[str, Any]] = []

    for global_index, concept in enumerate(concepts):
        if not isinstance(concept, dict):
            continue
        raw_id = _raw_id(concept.get("id"))
        candidate = raw_id or f"node_{global_index + 1}"
        new_id = candidate
        suffix = 2
        while new_id in seen:
            new_id = f"{candidate}_{suffix}"
            suffix += 1
        seen.add(new_id)

        scope = (concept.get(CHAPTER_INDEX_KEY), raw_id)
        if new_id == raw_id:
            kept.add(scope)
        elif raw_id and scope not in kept and scope not in renames:
            renames[scope] = new_id

        resolved.append(concept if concept.get("id") == new_id else {**concept, "id": new_id})

    if not renames:
        return resolved, [edge for edge in internal_edges if isinstance(edge, dict)]

    remapped: list[dict[str, Any]] = []
    for edge in internal_edges:
        if not isinstance(edge, dict):
            continue
        chapter = edge.get(CHAPTER_INDEX_KEY)
        updated = dict(edge)
        for key in ("from", "to"):
            replacement = renames.get((chapter, _raw_id(edge.get(key))))
            if replacement:
                updated[key] = replacement
        remapped.append(updated)
    return resolved, remapped


def layout_positions(
    concepts: Sequence[tuple[int, int]],
    chapter_count: int,
    rng: Optional[random.Random] = None,
) -> list[tuple[float, float]]:
    """
    Computes (x, y) for each `(chapter_index, level)` pair, in input order.

    Nodes sharing a (chapter, level) bucket are spread over evenly spaced
    slots across the x range; y follows the level (1 at the top), nudged by
    the chapter index. Jitter is bounded and the result always clamped.
    """
    rng = rng or random.Random()
    chapter_count = max(1, chapter_count)
    buckets: dict[tuple[int, int], list[int]] = defaultdict(list)
    for position, key in enumerate(concepts):
        buckets[key].append(position)

    x_low, x_high = X_RANGE
    y_low, y_high = Y_RANGE
    span_x = x_high - x_low
    span_y = y_high - y_low
    positions: list[tuple[float, float]] = [(x_low, y_low)] * len(concepts)

    for (chapter_index, level), members in buckets.items():
        slot_width = span_x / len(members)
        base_y = y_low + (level - MIN_LEVEL) / (MAX_LEVEL - MIN_LEVEL) * span_y
        chapter_offset = (chapter_index / chapter_count) * CHAPTER_Y_OFFSET_SPAN - CHAPTER_Y_OFFSET_SPAN / 2
        for slot, position in enumerate(members):
            x = x_low + (slot + 0.5) * slot_width + rng.uniform(-X_JITTER, X_JITTER)
            y = base_y + chapter_offset + rng.uniform(-Y_JITTER, Y_JITTER)
            positions[position] = (
                float(round(_clamp(x, x_low, x_high))),
                float(round(_clamp(y, y_low, y_high))),
            )
    return positions


def finalize_edges(raw_edges: Iterable[Any], node_ids: set[str]) -> list[DependencyEdge]:
    """Drops dangling edges and self-loops, keeps the first of each (from, to) pair."""
    edges: list[DependencyEdge] = []
    seen: set[tuple[str, str]] = set()
    for raw in raw_edges:
        if not isinstance(raw, dict):
            continue
        source = _raw_id(raw.get("from", raw.get("source")))
        target = _raw_id(raw.get("to", raw.get("target")))
        if source not in node_ids or target not in node_ids or source == target:
            continue
        if (source, target) in seen:
            continue
        seen.add((source, target))
        edges.append(
            DependencyEdge(source=source, target=target, strength=normalize_strength(raw.get("strength")))
        )
    return edges


def _build_node(concept: dict[str, Any], global_index: int, x: float, y: float) -> ConceptNode:
    key_points = concept.get("keyPoints", concept.get("key_points"))
    common_mistakes = concept.get("commonMistakes", concept.get("common_mistakes"))
    title = str(concept.get("title") or "").strip() or f"Concept {global_index + 1}"
    return ConceptNode(
        id=_raw_id(concept.get("id")) or f"node_{global_index + 1}",
        title=title,
        level=normalize_level(concept.get("level")),
        x=x,
        y=y,
        mastery=0.0,
        description=str(concept.get("description") or ""),
        intuition=str(concept.get("intuition") or ""),
        formula=normalize_formula(concept.get("formula")),
        variables=_variables(concept.get("variables")),
        key_points=_string_list(key_points),
        common_mistakes=_string_list(common_mistakes),
        exercises=[],
    )


def assemble(
    subject_name: Any,
    raw_concepts: Sequence[Any],
    internal_edges: Sequence[Any],
    cross_edges: Sequence[Any],
    chapters: Sequence[Chapter],
    *,
    rng: Optional[random.Random] = None,
) -> GenerationResult:
    """
    Merges partial pass outputs into one consistent graph.

    Provenance keys (`_chapter`, `_chapter_index`) are used for layout only
    and do not survive into the result.
    """
    concepts, internal = disambiguate_concept_ids(list(raw_concepts or []), list(internal_edges or []))

    layout_keys = [(_chapter_index(concept), normalize_level(concept.get("level"))) for concept in concepts]
    chapter_count = max([len(chapters or [])] + [index + 1 for index, _ in layout_keys])
    positions = layout_positions(layout_keys, chapter_count, rng=rng)

    nodes = [
        _build_node(concept, global_index, x, y)
        for global_index, (concept, (x, y)) in enumerate(zip(concepts, positions))
    ]
    node_ids = {node.id for node in nodes}
    edges = finalize_edges([*internal, *(cross_edges or [])], node_ids)

    return GenerationResult(
        subject_name=str(subject_name or "").strip(),
        concepts=nodes,
        edges=edges,
    )


def normalize_single_pass(
    payload: dict[str, Any],
    *,
    subject_name: Optional[str] = None,
    rng: Optional[random.Random] = None,
) -> GenerationResult:
    """
    Simplified assembly for the one-shot path: no chapter buckets, edges
    read from `dependencies` (or `edges`).

    Raises:
        MalformedOutputError: the payload holds no concept objects.
    """
    raw_concepts = payload.get("concepts")
    concepts = [
        {key: value for key, value in concept.items() if key not in (CHAPTER_INDEX_KEY, CHAPTER_TITLE_KEY)}
        for concept in (raw_concepts if isinstance(raw_concepts, list) else [])
        if isinstance(concept, dict)
    ]
    if not concepts:
        raise MalformedOutputError("single-pass payload contains no concepts")

    raw_edges = payload.get("dependencies")
    if raw_edges is None:
        raw_edges = payload.get("edges")
    edges = raw_edges if isinstance(raw_edges, list) else []

    name = payload.get("subject_name") or payload.get("subjectName") or subject_name or ""
    return assemble(name, concepts, edges, [], [], rng=rng)
