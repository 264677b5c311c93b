from typing import Any, Dict, Optional

import structlog

from studygraph.core.prompts.knowledge_graph import KnowledgeGraphPrompts
from studygraph.core.settings import settings
from studygraph.domain.documents import DocumentSource
from studygraph.domain.exceptions import MalformedOutputError
from studygraph.domain.graph_schemas import (
    CHAPTER_INDEX_KEY,
    CHAPTER_TITLE_KEY,
    Chapter,
    ChapterExtraction,
)
from studygraph.services.knowledge.json_completion import JsonCompletionEngine

logger = structlog.get_logger(__name__)


def tag_chapter_payload(payload: Dict[str, Any], chapter: Chapter, chapter_index: int) -> ChapterExtraction:
    """
    Copies concepts and internal edges out of a chapter payload and tags them
    with their chapter of origin. Input dicts are not mutated.

    Raises:
        MalformedOutputError: `concepts` is missing or not a list.
    """
    raw_concepts = payload.get("concepts")
    if not isinstance(raw_concepts, list):
        raise MalformedOutputError(
            f"chapter {chapter_index + 1} payload has no concepts list "
            f"(got {type(raw_concepts).__name__})"
        )

    raw_edges = payload.get("internal_dependencies")
    if raw_edges is None:
        raw_edges = payload.get("dependencies")
    if not isinstance(raw_edges, list):
        raw_edges = []

    concepts = [
        {**concept, CHAPTER_TITLE_KEY: chapter.title, CHAPTER_INDEX_KEY: chapter_index}
        for concept in raw_concepts
        if isinstance(concept, dict)
    ]
    edges = [
        {**edge, CHAPTER_INDEX_KEY: chapter_index}
        for edge in raw_edges
        if isinstance(edge, dict)
    ]
    return ChapterExtraction(concepts=concepts, internal_edges=edges)


class ChapterExtractor:
    """Pass 2: deep concept extraction scoped to one chapter."""

    def __init__(
        self,
        engine: JsonCompletionEngine,
        *,
        max_tokens: Optional[int] = None,
        overlap_chars: Optional[int] = None,
    ):
        self._engine = engine
        self.max_tokens = int(max_tokens or getattr(settings, "CHAPTER_MAX_TOKENS", 8192))
        self.overlap_chars = (
            int(overlap_chars)
            if overlap_chars is not None
            else int(getattr(settings, "CHAPTER_TEXT_OVERLAP_CHARS", 500))
        )

    def _user_content(
        self, chapter: Chapter, chapter_index: int, total_chapters: int, document: DocumentSource
    ):
        instruction = KnowledgeGraphPrompts.chapter_user(chapter.title, chapter.topics)
        if document.is_file:
            return document.user_content(instruction)
        excerpt = document.chapter_excerpt(chapter_index, total_chapters, overlap=self.overlap_chars)
        return document.user_content(instruction, text=excerpt)

    async def extract(
        self,
        chapter: Chapter,
        chapter_index: int,
        total_chapters: int,
        document: DocumentSource,
    ) -> ChapterExtraction:
        payload = await self._engine.complete_json(
            system_prompt=KnowledgeGraphPrompts.chapter_system(
                chapter.title, chapter.topics, chapter_index, total_chapters
            ),
            user_content=self._user_content(chapter, chapter_index, total_chapters, document),
            max_tokens=self.max_tokens,
            stage=f"chapter_{chapter_index + 1}",
        )
        extraction = tag_chapter_payload(payload, chapter, chapter_index)
        logger.info(
            "chapter_extracted",
            chapter_index=chapter_index,
            concepts=len(extraction.concepts),
            internal_edges=len(extraction.internal_edges),
        )
        return extraction
