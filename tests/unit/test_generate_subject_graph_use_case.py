from __future__ import annotations

import asyncio
import random

import pytest

from studygraph.application.services.knowledge_graph_pipeline import PipelineRun, PipelineStrategy
from studygraph.application.use_cases.generate_subject_graph_use_case import (
    GenerateSubjectGraphCommand,
    GenerateSubjectGraphUseCase,
    OutcomeState,
    UNEXPECTED_FAILURE_MESSAGE,
)
from studygraph.domain.cancellation import CancellationToken
from studygraph.domain.documents import DocumentSource
from studygraph.domain.exceptions import GenerationCancelled, TransientServiceError
from studygraph.domain.graph_assembler import normalize_single_pass
from studygraph.infrastructure.repositories.in_memory_subject_repository import InMemorySubjectRepository

TEXT = "Thermodynamics studies heat, work and energy transfer between systems and surroundings. " * 2

OLD_GRAPH = {
    "id": "physics",
    "name": "Physics",
    "status": "ready",
    "progress": 0,
    "nodes": [{"id": "old", "title": "Old node", "mastery": 0.8}],
    "edges": [{"from": "old", "to": "old2", "strength": 0.5}],
    "last_error": None,
    "owner": "owner-42",
}


def _result():
    return normalize_single_pass(
        {
            "subject_name": "Thermodynamics",
            "concepts": [
                {"id": "node_1", "title": "Heat", "level": 1},
                {"id": "node_2", "title": "First law", "level": 2},
            ],
            "dependencies": [{"from": "node_1", "to": "node_2", "strength": 0.9}],
        },
        rng=random.Random(0),
    )


class _FakePipeline:
    def __init__(self, *, error=None, on_run=None):
        self.error = error
        self.on_run = on_run
        self.calls = 0

    async def run(self, document, *, progress=None, cancel_token=None):
        self.calls += 1
        if self.on_run:
            await self.on_run()
        if self.error is not None:
            raise self.error
        run = PipelineRun(strategy=PipelineStrategy.SINGLE_PASS)
        run.result = _result()
        return run


def _command(subject_id: str = "physics", **kwargs) -> GenerateSubjectGraphCommand:
    return GenerateSubjectGraphCommand(subject_id=subject_id, document=DocumentSource.from_text(TEXT), **kwargs)


def test_success_replaces_graph_wholesale_and_keeps_other_fields():
    repository = InMemorySubjectRepository({"physics": OLD_GRAPH})
    use_case = GenerateSubjectGraphUseCase(_FakePipeline(), repository)

    outcome = asyncio.run(use_case.execute(_command()))

    stored = asyncio.run(repository.get("physics"))
    assert outcome.state is OutcomeState.READY
    assert outcome.strategy == "single_pass"
    assert stored["status"] == "ready"
    assert stored["name"] == "Thermodynamics"
    assert stored["owner"] == "owner-42"
    assert [node["id"] for node in stored["nodes"]] == ["node_1", "node_2"]
    assert stored["edges"] == [{"from": "node_1", "to": "node_2", "strength": 0.9}]
    assert all(node["mastery"] == 0 for node in stored["nodes"])


def test_subject_is_marked_processing_while_pipeline_runs():
    repository = InMemorySubjectRepository({"physics": OLD_GRAPH})
    seen = {}

    async def capture_status():
        seen["status"] = (await repository.get("physics"))["status"]

    use_case = GenerateSubjectGraphUseCase(_FakePipeline(on_run=capture_status), repository)
    asyncio.run(use_case.execute(_command()))

    assert seen["status"] == "processing"


def test_unknown_subject_is_created():
    repository = InMemorySubjectRepository()
    use_case = GenerateSubjectGraphUseCase(_FakePipeline(), repository)

    outcome = asyncio.run(use_case.execute(_command("new-subject")))

    stored = asyncio.run(repository.get("new-subject"))
    assert outcome.state is OutcomeState.READY
    assert stored["id"] == "new-subject"
    assert len(stored["nodes"]) == 2


def test_cancellation_restores_status_and_leaves_graph_untouched():
    repository = InMemorySubjectRepository({"physics": OLD_GRAPH})
    use_case = GenerateSubjectGraphUseCase(
        _FakePipeline(error=GenerationCancelled("chapter_2")), repository
    )

    outcome = asyncio.run(use_case.execute(_command(cancel_token=CancellationToken())))

    assert outcome.state is OutcomeState.CANCELLED
    assert outcome.message == "Generation cancelled"
    assert asyncio.run(repository.get("physics")) == OLD_GRAPH


def test_generation_error_records_user_message_and_keeps_old_graph():
    repository = InMemorySubjectRepository({"physics": OLD_GRAPH})
    use_case = GenerateSubjectGraphUseCase(
        _FakePipeline(error=TransientServiceError("llm_proxy_rate_limited")), repository
    )

    outcome = asyncio.run(use_case.execute(_command()))

    stored = asyncio.run(repository.get("physics"))
    assert outcome.state is OutcomeState.FAILED
    assert outcome.retryable is True
    assert outcome.error_code == "TransientServiceError"
    assert stored["status"] == "error"
    assert stored["last_error"] == TransientServiceError.default_user_message
    assert stored["nodes"] == OLD_GRAPH["nodes"]
    assert "llm_proxy" not in stored["last_error"]


@pytest.mark.asyncio
async def test_unexpected_error_marks_subject_and_propagates():
    repository = InMemorySubjectRepository({"physics": OLD_GRAPH})
    use_case = GenerateSubjectGraphUseCase(_FakePipeline(error=RuntimeError("bug")), repository)

    with pytest.raises(RuntimeError):
        await use_case.execute(_command())

    stored = await repository.get("physics")
    assert stored["status"] == "error"
    assert stored["last_error"] == UNEXPECTED_FAILURE_MESSAGE
    assert stored["edges"] == OLD_GRAPH["edges"]
