from typing import Any, Dict, Optional

import structlog

from studygraph.core.prompts.knowledge_graph import KnowledgeGraphPrompts
from studygraph.core.settings import settings
from studygraph.domain.documents import DocumentSource
from studygraph.domain.graph_schemas import Chapter, DocumentStructure
from studygraph.services.knowledge.json_completion import JsonCompletionEngine

logger = structlog.get_logger(__name__)


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if item and str(item).strip()]


def normalize_structure(payload: Dict[str, Any], *, max_chapters: int = 12) -> DocumentStructure:
    """Maps a raw structure payload onto chapters; bad entries are skipped, never fatal."""
    raw_chapters = payload.get("chapters")
    if not isinstance(raw_chapters, list):
        raw_chapters = []

    chapters: list[Chapter] = []
    for item in raw_chapters:
        if not isinstance(item, dict):
            continue
        number = len(chapters) + 1
        chapter_id = str(item.get("id") or "").strip() or f"ch_{number}"
        title = str(item.get("title") or "").strip() or f"Section {number}"
        chapters.append(Chapter(id=chapter_id, title=title, topics=_string_list(item.get("topics"))))
        if len(chapters) >= max_chapters:
            break

    subject_name = payload.get("subject_name") or payload.get("subjectName") or ""
    return DocumentStructure(subject_name=str(subject_name).strip(), chapters=chapters)


class StructureExtractor:
    """Pass 1: detect the chapter/section outline of a document."""

    def __init__(
        self,
        engine: JsonCompletionEngine,
        *,
        max_tokens: Optional[int] = None,
        max_input_chars: Optional[int] = None,
        max_chapters: Optional[int] = None,
    ):
        self._engine = engine
        self.max_tokens = int(max_tokens or getattr(settings, "STRUCTURE_MAX_TOKENS", 4096))
        self.max_input_chars = int(
            max_input_chars or getattr(settings, "STRUCTURE_MAX_INPUT_CHARS", 30000)
        )
        self.max_chapters = max(1, int(max_chapters or getattr(settings, "MAX_CHAPTERS", 12)))

    async def extract(self, document: DocumentSource) -> DocumentStructure:
        payload = await self._engine.complete_json(
            system_prompt=KnowledgeGraphPrompts.STRUCTURE_SYSTEM,
            user_content=document.user_content(
                KnowledgeGraphPrompts.STRUCTURE_USER, max_chars=self.max_input_chars
            ),
            max_tokens=self.max_tokens,
            stage="structure",
        )
        structure = normalize_structure(payload, max_chapters=self.max_chapters)
        logger.info(
            "structure_extracted",
            chapters=len(structure.chapters),
            titles=[chapter.title for chapter in structure.chapters],
        )
        return structure
