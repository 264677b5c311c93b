from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4

import structlog

from studygraph.application.services.knowledge_graph_pipeline import KnowledgeGraphPipeline
from studygraph.domain.cancellation import CancellationToken
from studygraph.domain.documents import DocumentSource
from studygraph.domain.exceptions import GenerationCancelled, GenerationError
from studygraph.domain.graph_schemas import GenerationResult
from studygraph.domain.ports import ISubjectRepository
from studygraph.domain.progress import IProgressSink
from studygraph.domain.subjects import SubjectStatus, new_subject_document
from studygraph.infrastructure.observability.generation_logging import compact_error
from studygraph.infrastructure.observability.logger_config import bind_context, unbind_context

logger = structlog.get_logger(__name__)

CANCELLED_MESSAGE = "Generation cancelled"
UNEXPECTED_FAILURE_MESSAGE = "Unexpected error while generating the knowledge graph."


class OutcomeState(str, Enum):
    READY = "ready"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class GenerateSubjectGraphCommand:
    subject_id: str
    document: DocumentSource
    progress: Optional[IProgressSink] = None
    cancel_token: Optional[CancellationToken] = None
    generation_id: str = field(default_factory=lambda: str(uuid4()))


@dataclass
class GenerationOutcome:
    state: OutcomeState
    subject_id: str
    generation_id: str
    message: str
    result: Optional[GenerationResult] = None
    strategy: Optional[str] = None
    failed_chapters: int = 0
    error_code: Optional[str] = None
    retryable: bool = False


class GenerateSubjectGraphUseCase:
    """
    Runs the pipeline for one subject and owns every write to its document.

    The subject is marked `processing` up front. On success the generated
    graph replaces the stored one in a single save; on failure only the
    status and `last_error` change; on cancellation the previous status is
    restored and nothing else is touched.
    """

    def __init__(self, pipeline: KnowledgeGraphPipeline, repository: ISubjectRepository):
        self.pipeline = pipeline
        self.repository = repository

    async def _load_or_create(self, subject_id: str) -> Dict[str, Any]:
        existing = await self.repository.get(subject_id)
        if existing is not None:
            return existing
        document = new_subject_document(subject_id)
        await self.repository.save(subject_id, document)
        logger.info("subject_created", subject_id=subject_id)
        return document

    async def execute(self, command: GenerateSubjectGraphCommand) -> GenerationOutcome:
        bind_context(generation_id=command.generation_id, subject_id=command.subject_id)
        try:
            return await self._execute(command)
        finally:
            unbind_context("generation_id", "subject_id")

    async def _execute(self, command: GenerateSubjectGraphCommand) -> GenerationOutcome:
        subject_id = command.subject_id
        stored = await self._load_or_create(subject_id)
        previous_status = str(stored.get("status") or SubjectStatus.EMPTY.value)

        await self.repository.update_status(subject_id, SubjectStatus.PROCESSING.value)
        try:
            run = await self.pipeline.run(
                command.document,
                progress=command.progress,
                cancel_token=command.cancel_token,
            )
        except GenerationCancelled as exc:
            await self.repository.update_status(subject_id, previous_status)
            logger.info("subject_generation_cancelled", stage=exc.stage, restored_status=previous_status)
            return GenerationOutcome(
                state=OutcomeState.CANCELLED,
                subject_id=subject_id,
                generation_id=command.generation_id,
                message=CANCELLED_MESSAGE,
            )
        except GenerationError as exc:
            await self.repository.update_status(
                subject_id, SubjectStatus.ERROR.value, error_message=exc.user_message
            )
            logger.warning(
                "subject_generation_failed",
                error_type=type(exc).__name__,
                error=compact_error(exc),
                retryable=exc.retryable,
            )
            return GenerationOutcome(
                state=OutcomeState.FAILED,
                subject_id=subject_id,
                generation_id=command.generation_id,
                message=exc.user_message,
                error_code=type(exc).__name__,
                retryable=exc.retryable,
            )
        except Exception:
            await self.repository.update_status(
                subject_id, SubjectStatus.ERROR.value, error_message=UNEXPECTED_FAILURE_MESSAGE
            )
            logger.exception("subject_generation_crashed")
            raise

        result = run.result or GenerationResult()
        payload = result.to_payload()
        # Fetched again: the stored document may have been renamed while generating.
        current = await self.repository.get(subject_id) or stored
        await self.repository.save(
            subject_id,
            {
                **current,
                "name": result.subject_name or current.get("name") or "",
                "status": SubjectStatus.READY.value,
                "progress": 0,
                "nodes": payload["concepts"],
                "edges": payload["edges"],
                "last_error": None,
            },
        )
        logger.info(
            "subject_graph_saved",
            concepts=len(result.concepts),
            edges=len(result.edges),
            strategy=run.strategy.value,
        )
        return GenerationOutcome(
            state=OutcomeState.READY,
            subject_id=subject_id,
            generation_id=command.generation_id,
            message=f"Knowledge graph ready: {len(result.concepts)} concepts, {len(result.edges)} connections.",
            result=result,
            strategy=run.strategy.value,
            failed_chapters=len(run.chapter_failures),
        )
