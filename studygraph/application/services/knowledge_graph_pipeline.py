from __future__ import annotations

import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog

from studygraph.core.settings import settings
from studygraph.domain.cancellation import CancellationToken
from studygraph.domain.documents import DocumentSource
from studygraph.domain.exceptions import GenerationCancelled, LLMConfigurationError
from studygraph.domain.graph_assembler import assemble, disambiguate_concept_ids, normalize_single_pass
from studygraph.domain.graph_schemas import (
    CHAPTER_INDEX_KEY,
    CHAPTER_TITLE_KEY,
    Chapter,
    ChapterExtraction,
    DocumentStructure,
    GenerationResult,
)
from studygraph.domain.ports import ILLMClient
from studygraph.domain.progress import IProgressSink, ProgressTracker
from studygraph.infrastructure.observability.generation_logging import compact_error
from studygraph.services.knowledge.chapter_extractor import ChapterExtractor
from studygraph.services.knowledge.cross_reference_extractor import CrossReferenceExtractor
from studygraph.services.knowledge.json_completion import JsonCompletionEngine
from studygraph.services.knowledge.single_pass_extractor import SinglePassExtractor
from studygraph.services.knowledge.structure_extractor import StructureExtractor

logger = structlog.get_logger(__name__)


class PipelineState(str, Enum):
    START = "start"
    SINGLE_PASS = "single_pass"
    STRUCTURE_PASS = "structure_pass"
    CHAPTER_PASS = "chapter_pass"
    CROSS_REF_PASS = "cross_ref_pass"
    ASSEMBLY = "assembly"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"


class PipelineStrategy(str, Enum):
    SINGLE_PASS = "single_pass"
    MULTI_PASS = "multi_pass"
    FALLBACK_SINGLE_PASS = "fallback_single_pass"


@dataclass(frozen=True)
class ChapterFailure:
    index: int
    title: str
    error_type: str
    error: str


@dataclass
class ChapterPassAccumulator:
    """Fold state over the chapter loop. Recording never raises."""

    concepts: List[Dict[str, Any]] = field(default_factory=list)
    internal_edges: List[Dict[str, Any]] = field(default_factory=list)
    failures: List[ChapterFailure] = field(default_factory=list)
    succeeded: int = 0

    @property
    def attempted(self) -> int:
        return self.succeeded + len(self.failures)

    @property
    def is_empty(self) -> bool:
        return not self.concepts

    def record_success(self, extraction: ChapterExtraction) -> None:
        self.succeeded += 1
        self.concepts.extend(extraction.concepts)
        self.internal_edges.extend(extraction.internal_edges)

    def record_failure(self, index: int, chapter: Chapter, exc: BaseException) -> None:
        failure = ChapterFailure(
            index=index,
            title=chapter.title,
            error_type=type(exc).__name__,
            error=compact_error(exc),
        )
        self.failures.append(failure)
        logger.warning(
            "chapter_pass_failed",
            chapter_index=index,
            chapter_title=chapter.title,
            error_type=failure.error_type,
            error=failure.error,
        )


@dataclass
class PipelineRun:
    strategy: PipelineStrategy
    state: PipelineState = PipelineState.START
    transitions: List[PipelineState] = field(default_factory=lambda: [PipelineState.START])
    result: Optional[GenerationResult] = None
    chapters: List[Chapter] = field(default_factory=list)
    chapter_failures: List[ChapterFailure] = field(default_factory=list)
    concept_origins: Dict[str, int] = field(default_factory=dict)
    fallback_reason: Optional[str] = None

    def transition(self, state: PipelineState) -> None:
        logger.debug("pipeline_state_transition", previous=self.state.value, state=state.value)
        self.state = state
        self.transitions.append(state)


class KnowledgeGraphPipeline:
    """
    Drives one generation request through single-pass or chaptered
    multi-pass extraction.

    Chapters run sequentially. A failing chapter is skipped; a failing or
    empty structure pass, or a chapter loop that yields nothing, degrades to
    single pass on the full input. Single-pass errors propagate to the caller,
    and so does a configuration error from any pass. Cancellation is cooperative: checked before every pass and after every
    model call returns.
    """

    def __init__(
        self,
        llm: Optional[ILLMClient] = None,
        *,
        structure_extractor: Optional[StructureExtractor] = None,
        chapter_extractor: Optional[ChapterExtractor] = None,
        cross_reference_extractor: Optional[CrossReferenceExtractor] = None,
        single_pass_extractor: Optional[SinglePassExtractor] = None,
        text_threshold_chars: Optional[int] = None,
        file_threshold_mb: Optional[float] = None,
        rng: Optional[random.Random] = None,
    ):
        engine = JsonCompletionEngine(llm) if llm is not None else None
        if engine is None and not all(
            (structure_extractor, chapter_extractor, cross_reference_extractor, single_pass_extractor)
        ):
            raise ValueError("an LLM client is required unless every extractor is injected")

        self.structure_extractor = structure_extractor or StructureExtractor(engine)
        self.chapter_extractor = chapter_extractor or ChapterExtractor(engine)
        self.cross_reference_extractor = cross_reference_extractor or CrossReferenceExtractor(engine)
        self.single_pass_extractor = single_pass_extractor or SinglePassExtractor(engine)
        self.text_threshold_chars = int(
            text_threshold_chars
            if text_threshold_chars is not None
            else getattr(settings, "MULTI_PASS_TEXT_THRESHOLD_CHARS", 20000)
        )
        self.file_threshold_mb = float(
            file_threshold_mb
            if file_threshold_mb is not None
            else getattr(settings, "MULTI_PASS_FILE_THRESHOLD_MB", 0.5)
        )
        self._rng = rng

    def choose_strategy(self, document: DocumentSource) -> PipelineStrategy:
        if document.is_file:
            oversized = document.size_mb > self.file_threshold_mb
        else:
            oversized = len(document.text) > self.text_threshold_chars
        return PipelineStrategy.MULTI_PASS if oversized else PipelineStrategy.SINGLE_PASS

    async def generate(
        self,
        document: DocumentSource,
        *,
        progress: Optional[IProgressSink] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> GenerationResult:
        run = await self.run(document, progress=progress, cancel_token=cancel_token)
        return run.result  # type: ignore[return-value]

    async def run(
        self,
        document: DocumentSource,
        *,
        progress: Optional[IProgressSink] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> PipelineRun:
        token = cancel_token or CancellationToken()
        tracker = ProgressTracker(progress)
        run = PipelineRun(strategy=self.choose_strategy(document))
        started = time.perf_counter()
        logger.info("graph_generation_started", strategy=run.strategy.value, **document.describe())

        try:
            if run.strategy is PipelineStrategy.MULTI_PASS:
                await self._run_multi_pass(document, run, tracker, token)
            else:
                await self._run_single_pass(document, run, tracker, token)
        except GenerationCancelled as exc:
            run.transition(PipelineState.CANCELLED)
            logger.info("graph_generation_cancelled", stage=exc.stage, last_state=run.transitions[-2].value)
            raise
        except Exception as exc:
            run.transition(PipelineState.FAILED)
            logger.error(
                "graph_generation_failed",
                strategy=run.strategy.value,
                error_type=type(exc).__name__,
                error=compact_error(exc),
            )
            raise

        run.transition(PipelineState.DONE)
        result = run.result
        logger.info(
            "graph_generation_completed",
            strategy=run.strategy.value,
            fallback_reason=run.fallback_reason,
            concepts=len(result.concepts) if result else 0,
            edges=len(result.edges) if result else 0,
            failed_chapters=len(run.chapter_failures),
            duration_ms=round((time.perf_counter() - started) * 1000),
        )
        return run

    async def _run_single_pass(
        self,
        document: DocumentSource,
        run: PipelineRun,
        tracker: ProgressTracker,
        token: CancellationToken,
        *,
        subject_name: str = "",
    ) -> None:
        token.raise_if_cancelled("single_pass")
        run.transition(PipelineState.SINGLE_PASS)
        base = tracker.current
        tracker.advance("Generating knowledge graph", total=base + 2, detail=document.label)

        payload = await self.single_pass_extractor.extract(document)
        token.raise_if_cancelled("assembly")

        run.transition(PipelineState.ASSEMBLY)
        tracker.advance("Assembling final graph", total=base + 2)
        run.result = normalize_single_pass(payload, subject_name=subject_name, rng=self._rng)

    async def _fall_back(
        self,
        document: DocumentSource,
        run: PipelineRun,
        tracker: ProgressTracker,
        token: CancellationToken,
        *,
        reason: str,
        subject_name: str = "",
    ) -> None:
        run.strategy = PipelineStrategy.FALLBACK_SINGLE_PASS
        run.fallback_reason = reason
        logger.warning("multi_pass_fallback", reason=reason, failed_chapters=len(run.chapter_failures))
        await self._run_single_pass(document, run, tracker, token, subject_name=subject_name)

    async def _extract_structure(self, document: DocumentSource) -> Optional[DocumentStructure]:
        try:
            return await self.structure_extractor.extract(document)
        except LLMConfigurationError:
            raise
        except Exception as exc:
            logger.warning(
                "structure_pass_failed",
                error_type=type(exc).__name__,
                error=compact_error(exc),
            )
            return None

    async def _run_multi_pass(
        self,
        document: DocumentSource,
        run: PipelineRun,
        tracker: ProgressTracker,
        token: CancellationToken,
    ) -> None:
        token.raise_if_cancelled("structure_pass")
        run.transition(PipelineState.STRUCTURE_PASS)
        # Chapter count is unknown until the structure pass returns.
        tracker.advance("Analysing document structure", total=4, detail="Identifying chapters and topics")

        structure = await self._extract_structure(document)
        token.raise_if_cancelled("chapter_pass")
        if structure is None:
            await self._fall_back(document, run, tracker, token, reason="structure_failed")
            return
        if not structure.chapters:
            await self._fall_back(
                document, run, tracker, token, reason="no_chapters", subject_name=structure.subject_name
            )
            return

        chapters = structure.chapters
        run.chapters = list(chapters)
        chapter_count = len(chapters)
        total = chapter_count + 3
        accumulator = ChapterPassAccumulator()

        for index, chapter in enumerate(chapters):
            stage = f"chapter_{index + 1}"
            token.raise_if_cancelled(stage)
            run.transition(PipelineState.CHAPTER_PASS)
            tracker.jump_to(
                index + 2,
                f"Processing chapter {index + 1} of {chapter_count}",
                total=total,
                detail=chapter.title,
            )

            extraction: Optional[ChapterExtraction] = None
            error: Optional[Exception] = None
            try:
                extraction = await self.chapter_extractor.extract(chapter, index, chapter_count, document)
            except LLMConfigurationError:
                raise
            except Exception as exc:
                error = exc
            # Result of a call that was in flight during cancellation is discarded.
            token.raise_if_cancelled(stage)

            if extraction is not None:
                accumulator.record_success(extraction)
            else:
                accumulator.record_failure(index, chapter, error or RuntimeError("no extraction"))

        run.chapter_failures = list(accumulator.failures)
        logger.info(
            "chapter_passes_finished",
            chapters=chapter_count,
            succeeded=accumulator.succeeded,
            failed=len(accumulator.failures),
            concepts=len(accumulator.concepts),
        )
        if accumulator.is_empty:
            await self._fall_back(
                document, run, tracker, token, reason="no_chapter_concepts", subject_name=structure.subject_name
            )
            return

        concepts, internal_edges = disambiguate_concept_ids(accumulator.concepts, accumulator.internal_edges)
        run.concept_origins = {
            str(concept["id"]): int(concept.get(CHAPTER_INDEX_KEY) or 0) for concept in concepts
        }

        token.raise_if_cancelled("cross_reference")
        run.transition(PipelineState.CROSS_REF_PASS)
        tracker.jump_to(
            chapter_count + 2,
            "Connecting concepts across chapters",
            total=total,
            detail=f"{len(concepts)} concepts found",
        )
        cross_edges = await self._extract_cross_edges(concepts)
        token.raise_if_cancelled("assembly")

        run.transition(PipelineState.ASSEMBLY)
        tracker.jump_to(
            chapter_count + 3,
            "Assembling final graph",
            total=total,
            detail=f"{len(concepts)} concepts, {len(internal_edges) + len(cross_edges)} connections",
        )
        run.result = assemble(
            structure.subject_name,
            concepts,
            internal_edges,
            cross_edges,
            chapters,
            rng=self._rng,
        )

    async def _extract_cross_edges(self, concepts: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        summaries = [
            {
                "id": str(concept["id"]),
                "title": str(concept.get("title") or concept["id"]),
                "chapter": str(concept.get(CHAPTER_TITLE_KEY) or "unknown"),
            }
            for concept in concepts
        ]
        try:
            return await self.cross_reference_extractor.extract(summaries)
        except LLMConfigurationError:
            raise
        except Exception as exc:
            logger.warning(
                "cross_reference_pass_failed",
                error_type=type(exc).__name__,
                error=compact_error(exc),
            )
            return []
