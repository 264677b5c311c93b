import time
from typing import Any, Dict, List, Optional, Union

import structlog

from studygraph.domain.ports import ILLMClient
from studygraph.infrastructure.observability.generation_logging import compact_error
from studygraph.services.knowledge.response_parser import parse_model_output

logger = structlog.get_logger(__name__)

UserContent = Union[str, List[Dict[str, Any]]]


class JsonCompletionEngine:
    """
    One LLM call followed by the staged parser.

    Every extraction pass routes through here so invocation and repair
    behave identically across passes.
    """

    def __init__(
        self,
        llm: ILLMClient,
        *,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
    ):
        self._llm = llm
        self._model = model
        self._temperature = temperature

    @staticmethod
    def build_messages(system_prompt: str, user_content: UserContent) -> List[Dict[str, Any]]:
        return [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_content},
        ]

    async def complete_json(
        self,
        *,
        system_prompt: str,
        user_content: UserContent,
        max_tokens: int,
        stage: str,
    ) -> Dict[str, Any]:
        started = time.perf_counter()
        try:
            raw = await self._llm.complete(
                self.build_messages(system_prompt, user_content),
                max_tokens=max_tokens,
                model=self._model,
                temperature=self._temperature,
                json_mode=True,
            )
            payload = parse_model_output(raw)
        except Exception as exc:
            logger.info(
                "json_completion_failed",
                stage=stage,
                error_type=type(exc).__name__,
                error=compact_error(exc),
            )
            raise

        logger.debug(
            "json_completion_done",
            stage=stage,
            keys=sorted(payload.keys()),
            elapsed_ms=round((time.perf_counter() - started) * 1000),
        )
        return payload
