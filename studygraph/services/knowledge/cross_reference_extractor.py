from typing import Any, Dict, List, Optional, Sequence

import structlog

from studygraph.core.prompts.knowledge_graph import KnowledgeGraphPrompts
from studygraph.core.settings import settings
from studygraph.services.knowledge.json_completion import JsonCompletionEngine

logger = structlog.get_logger(__name__)


class CrossReferenceExtractor:
    """
    Pass 3: dependency edges between concepts of different chapters.

    Receives only `{id, title, chapter}` summaries. Raises on call or parse
    failure; the orchestrator treats that as "no cross edges".
    """

    def __init__(
        self,
        engine: JsonCompletionEngine,
        *,
        max_tokens: Optional[int] = None,
        min_concepts: Optional[int] = None,
    ):
        self._engine = engine
        self.max_tokens = int(max_tokens or getattr(settings, "CROSS_REFERENCE_MAX_TOKENS", 4096))
        self.min_concepts = int(
            min_concepts
            if min_concepts is not None
            else getattr(settings, "CROSS_REFERENCE_MIN_CONCEPTS", 4)
        )

    def should_run(self, summaries: Sequence[Dict[str, str]]) -> bool:
        return len(summaries) >= self.min_concepts

    async def extract(self, summaries: Sequence[Dict[str, str]]) -> List[Dict[str, Any]]:
        if not self.should_run(summaries):
            logger.info("cross_reference_skipped", concepts=len(summaries), min_concepts=self.min_concepts)
            return []

        payload = await self._engine.complete_json(
            system_prompt=KnowledgeGraphPrompts.cross_reference_system(summaries),
            user_content=KnowledgeGraphPrompts.CROSS_REFERENCE_USER,
            max_tokens=self.max_tokens,
            stage="cross_reference",
        )
        raw_edges = payload.get("cross_dependencies")
        if raw_edges is None:
            raw_edges = payload.get("dependencies")
        edges = [edge for edge in raw_edges if isinstance(edge, dict)] if isinstance(raw_edges, list) else []
        logger.info("cross_reference_extracted", edges=len(edges))
        return edges
