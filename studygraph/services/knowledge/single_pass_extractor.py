from typing import Any, Dict, Optional

from studygraph.core.prompts.knowledge_graph import KnowledgeGraphPrompts
from studygraph.core.settings import settings
from studygraph.domain.documents import DocumentSource
from studygraph.services.knowledge.json_completion import JsonCompletionEngine


class SinglePassExtractor:
    """One comprehensive call for the whole document (12-25 concepts plus dependencies)."""

    def __init__(self, engine: JsonCompletionEngine, *, max_tokens: Optional[int] = None):
        self._engine = engine
        self.max_tokens = int(max_tokens or getattr(settings, "SINGLE_PASS_MAX_TOKENS", 8192))

    async def extract(self, document: DocumentSource) -> Dict[str, Any]:
        return await self._engine.complete_json(
            system_prompt=KnowledgeGraphPrompts.SINGLE_PASS_SYSTEM,
            user_content=document.user_content(KnowledgeGraphPrompts.SINGLE_PASS_USER),
            max_tokens=self.max_tokens,
            stage="single_pass",
        )
