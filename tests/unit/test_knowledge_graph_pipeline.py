from __future__ import annotations

import asyncio
import json
import random
import re

import httpx
import pytest

from studygraph.application.services.knowledge_graph_pipeline import (
    KnowledgeGraphPipeline,
    PipelineState,
    PipelineStrategy,
)
from studygraph.domain.cancellation import CancellationToken
from studygraph.domain.documents import DocumentSource
from studygraph.domain.exceptions import (
    GenerationCancelled,
    LLMConfigurationError,
    LLMServiceError,
    UnparsableOutputError,
)
from studygraph.domain.ports import ILLMClient
from studygraph.domain.progress import CallbackProgressSink
from studygraph.infrastructure.ai.llm_proxy_client import LLMProxyClient
from studygraph.infrastructure.concurrency.rate_limiter import CallSpacingLimiter

_CHAPTER_RE = re.compile(r"\(chapter (\d+) of \d+\)")


class _RoutingLLM(ILLMClient):
    """Answers each pass by recognising its system prompt."""

    def __init__(self, *, structure=None, chapters=None, cross=None, single=None, on_call=None):
        self.responses = {"structure": structure, "cross_reference": cross, "single_pass": single}
        for index, payload in (chapters or {}).items():
            self.responses[f"chapter_{index}"] = payload
        self.on_call = on_call
        self.calls: list[str] = []

    @staticmethod
    def _kind(system_prompt: str) -> str:
        if "extract its STRUCTURE" in system_prompt:
            return "structure"
        if "DEPENDENCIES BETWEEN CHAPTERS" in system_prompt:
            return "cross_reference"
        match = _CHAPTER_RE.search(system_prompt)
        if match:
            return f"chapter_{match.group(1)}"
        return "single_pass"

    async def complete(self, messages, *, max_tokens, model=None, temperature=None, json_mode=True):
        kind = self._kind(messages[0]["content"])
        self.calls.append(kind)
        if self.on_call:
            self.on_call(kind)
        response = self.responses.get(kind)
        if isinstance(response, Exception):
            raise response
        if response is None:
            raise AssertionError(f"unexpected call: {kind}")
        return response if isinstance(response, str) else json.dumps(response)


def _single_pass_payload(count: int = 14) -> dict:
    return {
        "subject_name": "Newton's laws",
        "concepts": [
            {
                "id": f"node_{i}",
                "title": f"Concept {i}",
                "level": (i % 5) + 1,
                "description": "A description. It has sentences. Three of them.",
                "formula": "None",
            }
            for i in range(1, count + 1)
        ],
        "dependencies": [
            {"from": f"node_{i}", "to": f"node_{i + 1}", "strength": 0.9} for i in range(1, count)
        ],
    }


def _chapter_payload(number: int, count: int = 3) -> dict:
    return {
        "concepts": [
            {"id": f"ch{number}_node_{i}", "title": f"Chapter {number} concept {i}", "level": i}
            for i in range(1, count + 1)
        ],
        "internal_dependencies": [
            {"from": f"ch{number}_node_1", "to": f"ch{number}_node_2", "strength": 0.9}
        ],
    }


STRUCTURE = {
    "subject_name": "Classical Mechanics",
    "chapters": [
        {"id": "ch_1", "title": "Kinematics", "topics": ["velocity"]},
        {"id": "ch_2", "title": "Dynamics", "topics": ["force"]},
        {"id": "ch_3", "title": "Energy", "topics": ["work"]},
    ],
}
CROSS = {
    "cross_dependencies": [
        {"from": "ch1_node_1", "to": "ch3_node_1", "strength": 0.8},
        {"from": "ch2_node_3", "to": "ch3_node_2"},
        {"from": "ch1_node_1", "to": "unknown"},
    ]
}
LONG_DOCUMENT = " ".join(
    [
        "Kinematics describes motion through position, velocity and acceleration." * 4,
        "Dynamics explains motion through forces, mass and Newton's laws." * 4,
        "Energy methods use work, kinetic energy and potential energy." * 4,
    ]
)
SHORT_NEWTON_TEXT = (
    "Newton's laws of motion: an object stays at rest or in uniform motion unless a net force acts "
    "on it; the net force equals mass times acceleration; every action has an equal and opposite reaction."
)


def _pipeline(llm, **overrides) -> KnowledgeGraphPipeline:
    overrides.setdefault("text_threshold_chars", 400)
    return KnowledgeGraphPipeline(llm, rng=random.Random(0), **overrides)


def _collecting_sink():
    events = []
    return events, CallbackProgressSink(events.append)


def test_short_text_runs_single_pass():
    llm = _RoutingLLM(single=_single_pass_payload(14))
    events, sink = _collecting_sink()
    document = DocumentSource.from_text(SHORT_NEWTON_TEXT)

    run = asyncio.run(_pipeline(llm).run(document, progress=sink))

    result = run.result
    assert llm.calls == ["single_pass"]
    assert run.strategy is PipelineStrategy.SINGLE_PASS
    assert 12 <= len(result.concepts) <= 25
    assert all(1 <= concept.level <= 5 for concept in result.concepts)
    assert all(concept.formula is None for concept in result.concepts)
    assert len(result.edges) >= 1
    assert [(e.current, e.total) for e in events] == [(1, 2), (2, 2)]
    assert run.transitions == [
        PipelineState.START,
        PipelineState.SINGLE_PASS,
        PipelineState.ASSEMBLY,
        PipelineState.DONE,
    ]


@pytest.mark.asyncio
async def test_three_chapter_document_runs_every_pass_in_order():
    llm = _RoutingLLM(
        structure=STRUCTURE,
        chapters={1: _chapter_payload(1), 2: _chapter_payload(2), 3: _chapter_payload(3)},
        cross=CROSS,
    )
    events, sink = _collecting_sink()

    run = await _pipeline(llm).run(DocumentSource.from_text(LONG_DOCUMENT), progress=sink)

    assert llm.calls == ["structure", "chapter_1", "chapter_2", "chapter_3", "cross_reference"]
    assert run.strategy is PipelineStrategy.MULTI_PASS
    assert len(run.chapters) == 3
    assert set(run.concept_origins.values()) == {0, 1, 2}
    assert run.result.subject_name == "Classical Mechanics"
    assert len(run.result.concepts) == 9

    edge_keys = {(edge.source, edge.target) for edge in run.result.edges}
    assert ("ch1_node_1", "ch3_node_1") in edge_keys
    assert ("ch2_node_3", "ch3_node_2") in edge_keys
    assert ("ch1_node_1", "ch1_node_2") in edge_keys
    assert all(target != "unknown" for _, target in edge_keys)

    assert [(e.current, e.total) for e in events] == [(1, 4), (2, 6), (3, 6), (4, 6), (5, 6), (6, 6)]
    assert events[1].detail == "Kinematics"
    assert run.state is PipelineState.DONE


@pytest.mark.asyncio
async def test_failed_chapter_is_skipped_and_job_completes():
    llm = _RoutingLLM(
        structure=STRUCTURE,
        chapters={
            1: _chapter_payload(1),
            2: LLMServiceError("llm_proxy_error:500:boom", status_code=500),
            3: _chapter_payload(3),
        },
        cross=CROSS,
    )

    run = await _pipeline(llm).run(DocumentSource.from_text(LONG_DOCUMENT))

    ids = {concept.id for concept in run.result.concepts}
    assert {"ch1_node_1", "ch3_node_1"} <= ids
    assert not any(concept_id.startswith("ch2_") for concept_id in ids)
    assert run.state is PipelineState.DONE
    assert [failure.index for failure in run.chapter_failures] == [1]
    assert run.chapter_failures[0].error_type == "LLMServiceError"
    assert ("ch2_node_3", "ch3_node_2") not in {(e.source, e.target) for e in run.result.edges}


@pytest.mark.asyncio
async def test_unparsable_chapter_output_is_a_chapter_failure():
    llm = _RoutingLLM(
        structure=STRUCTURE,
        chapters={1: "Sorry, no JSON today", 2: _chapter_payload(2), 3: {"concepts": "none"}},
        cross=CROSS,
    )

    run = await _pipeline(llm).run(DocumentSource.from_text(LONG_DOCUMENT))

    assert [failure.index for failure in run.chapter_failures] == [0, 2]
    assert {c.id for c in run.result.concepts} == {"ch2_node_1", "ch2_node_2", "ch2_node_3"}


@pytest.mark.asyncio
async def test_empty_structure_falls_back_to_single_pass_result():
    document = DocumentSource.from_text(LONG_DOCUMENT)
    llm = _RoutingLLM(structure={"subject_name": "X", "chapters": []}, single=_single_pass_payload(15))
    events, sink = _collecting_sink()

    run = await _pipeline(llm).run(document, progress=sink)

    direct_llm = _RoutingLLM(single=_single_pass_payload(15))
    direct = await _pipeline(direct_llm, text_threshold_chars=10**6).run(document)

    assert llm.calls == ["structure", "single_pass"]
    assert run.strategy is PipelineStrategy.FALLBACK_SINGLE_PASS
    assert run.fallback_reason == "no_chapters"
    assert [c.id for c in run.result.concepts] == [c.id for c in direct.result.concepts]
    assert [e.model_dump() for e in run.result.edges] == [e.model_dump() for e in direct.result.edges]
    assert [(e.current, e.total) for e in events] == [(1, 4), (2, 3), (3, 3)]


@pytest.mark.asyncio
async def test_structure_failure_falls_back_to_single_pass():
    llm = _RoutingLLM(structure="<html>502</html>", single=_single_pass_payload())

    run = await _pipeline(llm).run(DocumentSource.from_text(LONG_DOCUMENT))

    assert run.fallback_reason == "structure_failed"
    assert len(run.result.concepts) == 14


@pytest.mark.asyncio
async def test_every_chapter_failing_falls_back_to_single_pass():
    error = LLMServiceError("down", status_code=503)
    llm = _RoutingLLM(
        structure=STRUCTURE,
        chapters={1: error, 2: error, 3: error},
        single=_single_pass_payload(),
    )
    events, sink = _collecting_sink()

    run = await _pipeline(llm).run(DocumentSource.from_text(LONG_DOCUMENT), progress=sink)

    assert llm.calls[-1] == "single_pass"
    assert "cross_reference" not in llm.calls
    assert run.fallback_reason == "no_chapter_concepts"
    assert len(run.chapter_failures) == 3
    currents = [event.current for event in events]
    assert currents == sorted(currents)
    assert events[-1].current == events[-1].total


@pytest.mark.asyncio
async def test_cross_reference_failure_keeps_internal_edges():
    llm = _RoutingLLM(
        structure=STRUCTURE,
        chapters={1: _chapter_payload(1), 2: _chapter_payload(2), 3: _chapter_payload(3)},
        cross=UnparsableOutputError("bad"),
    )

    run = await _pipeline(llm).run(DocumentSource.from_text(LONG_DOCUMENT))

    assert run.state is PipelineState.DONE
    assert {(e.source, e.target) for e in run.result.edges} == {
        ("ch1_node_1", "ch1_node_2"),
        ("ch2_node_1", "ch2_node_2"),
        ("ch3_node_1", "ch3_node_2"),
    }


@pytest.mark.asyncio
async def test_single_pass_failure_propagates():
    llm = _RoutingLLM(single="no json here")

    with pytest.raises(UnparsableOutputError):
        await _pipeline(llm).run(DocumentSource.from_text(SHORT_NEWTON_TEXT))


@pytest.mark.asyncio
async def test_cancellation_during_first_chapter_stops_before_second():
    token = CancellationToken()

    def cancel_on_first_chapter(kind: str) -> None:
        if kind == "chapter_1":
            token.cancel()

    llm = _RoutingLLM(
        structure=STRUCTURE,
        chapters={1: _chapter_payload(1), 2: _chapter_payload(2), 3: _chapter_payload(3)},
        cross=CROSS,
        on_call=cancel_on_first_chapter,
    )

    with pytest.raises(GenerationCancelled) as exc_info:
        await _pipeline(llm).run(DocumentSource.from_text(LONG_DOCUMENT), cancel_token=token)

    assert llm.calls == ["structure", "chapter_1"]
    assert exc_info.value.stage == "chapter_1"


@pytest.mark.asyncio
async def test_already_cancelled_token_makes_no_calls():
    token = CancellationToken()
    token.cancel()
    llm = _RoutingLLM(single=_single_pass_payload())

    with pytest.raises(GenerationCancelled):
        await _pipeline(llm).run(DocumentSource.from_text(SHORT_NEWTON_TEXT), cancel_token=token)

    assert llm.calls == []


@pytest.mark.asyncio
async def test_failing_progress_sink_does_not_affect_generation():
    def explode(event):
        raise RuntimeError("ui went away")

    llm = _RoutingLLM(single=_single_pass_payload())

    result = await _pipeline(llm).generate(
        DocumentSource.from_text(SHORT_NEWTON_TEXT), progress=CallbackProgressSink(explode)
    )

    assert len(result.concepts) == 14


def test_strategy_selection_by_size():
    pipeline = _pipeline(_RoutingLLM(), text_threshold_chars=200, file_threshold_mb=0.001)

    assert pipeline.choose_strategy(DocumentSource.from_text("x" * 200)) is PipelineStrategy.SINGLE_PASS
    assert pipeline.choose_strategy(DocumentSource.from_text("x" * 201)) is PipelineStrategy.MULTI_PASS
    small_pdf = DocumentSource.from_file("small.pdf", b"%PDF" + b"0" * 100)
    large_pdf = DocumentSource.from_file("large.pdf", b"%PDF" + b"0" * 5000)
    assert pipeline.choose_strategy(small_pdf) is PipelineStrategy.SINGLE_PASS
    assert pipeline.choose_strategy(large_pdf) is PipelineStrategy.MULTI_PASS


@pytest.mark.asyncio
async def test_colliding_chapter_ids_are_kept_apart():
    llm = _RoutingLLM(
        structure=STRUCTURE,
        # Every chapter numbers its concepts as if it were chapter 1.
        chapters={1: _chapter_payload(1), 2: _chapter_payload(1), 3: _chapter_payload(1)},
        cross={"cross_dependencies": []},
    )

    run = await _pipeline(llm).run(DocumentSource.from_text(LONG_DOCUMENT))

    ids = [concept.id for concept in run.result.concepts]
    assert len(ids) == len(set(ids)) == 9
    assert ("ch1_node_1_2", "ch1_node_2_2") in {(e.source, e.target) for e in run.result.edges}


@pytest.mark.asyncio
async def test_rejected_credentials_on_structure_pass_fail_without_fallback():
    llm = _RoutingLLM(
        structure=LLMConfigurationError("llm_proxy_auth_failed:401"),
        single=_single_pass_payload(),
    )

    with pytest.raises(LLMConfigurationError):
        await _pipeline(llm).run(DocumentSource.from_text(LONG_DOCUMENT))

    assert llm.calls == ["structure"]


@pytest.mark.asyncio
async def test_rejected_credentials_on_chapter_pass_stop_remaining_chapters():
    llm = _RoutingLLM(
        structure=STRUCTURE,
        chapters={
            1: LLMConfigurationError("llm_proxy_auth_failed:403"),
            2: _chapter_payload(2),
            3: _chapter_payload(3),
        },
        cross=CROSS,
        single=_single_pass_payload(),
    )

    with pytest.raises(LLMConfigurationError):
        await _pipeline(llm).run(DocumentSource.from_text(LONG_DOCUMENT))

    assert llm.calls == ["structure", "chapter_1"]


@pytest.mark.asyncio
async def test_rejected_credentials_on_cross_reference_pass_propagate():
    llm = _RoutingLLM(
        structure=STRUCTURE,
        chapters={1: _chapter_payload(1), 2: _chapter_payload(2), 3: _chapter_payload(3)},
        cross=LLMConfigurationError("llm_proxy_auth_failed:401"),
    )

    with pytest.raises(LLMConfigurationError):
        await _pipeline(llm).run(DocumentSource.from_text(LONG_DOCUMENT))


def test_proxy_auth_failure_sends_a_single_request():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(401, json={"error": "invalid api key"})

    client = LLMProxyClient(
        base_url="https://proxy.test/v1/chat",
        api_key="revoked",
        limiter=CallSpacingLimiter(0),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    pipeline = KnowledgeGraphPipeline(client, text_threshold_chars=100, rng=random.Random(0))

    with pytest.raises(LLMConfigurationError):
        asyncio.run(pipeline.run(DocumentSource.from_text(LONG_DOCUMENT)))

    assert len(requests) == 1
