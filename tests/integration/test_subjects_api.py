from __future__ import annotations

import asyncio
import io
import json

from fastapi.testclient import TestClient

from studygraph.domain.ports import ILLMClient
from studygraph.infrastructure.container import GenerationContainer
from studygraph.infrastructure.repositories.in_memory_subject_repository import InMemorySubjectRepository
from studygraph.main import app as default_app
from studygraph.main import create_app

TEXT = (
    "Newton's laws of motion relate forces to motion. Inertia keeps a body at rest or in uniform motion; "
    "net force equals mass times acceleration; forces come in action and reaction pairs."
)


class _FakeLLM(ILLMClient):
    def __init__(self, response=None):
        self.response = response or {
            "subject_name": "Newton's laws",
            "concepts": [
                {"id": "node_1", "title": "Inertia", "level": 1},
                {"id": "node_2", "title": "Second law", "level": 2, "formula": "F = ma"},
                {"id": "node_3", "title": "Action and reaction", "level": 3},
            ],
            "dependencies": [
                {"from": "node_1", "to": "node_2", "strength": 0.9},
                {"from": "node_2", "to": "node_3", "strength": 0.6},
            ],
        }
        self.calls = 0

    async def complete(self, messages, *, max_tokens, model=None, temperature=None, json_mode=True):
        self.calls += 1
        if isinstance(self.response, Exception):
            raise self.response
        return json.dumps(self.response)


def _route_map(app) -> dict[str, set[str]]:
    mapping: dict[str, set[str]] = {}
    for route in app.routes:
        path = getattr(route, "path", None)
        methods = getattr(route, "methods", None)
        if not path or not methods:
            continue
        allowed = set(methods) - {"HEAD", "OPTIONS"}
        if allowed:
            mapping[path] = mapping.get(path, set()) | allowed
    return mapping


def test_api_contract_inventory_is_exact() -> None:
    routes = {path: methods for path, methods in _route_map(default_app).items() if path.startswith("/api/")}

    assert routes == {
        "/api/v1/subjects/{subject_id}/graph": {"POST"},
        "/api/v1/subjects/{subject_id}": {"GET"},
        "/api/v1/subjects/{subject_id}/graph/generation": {"DELETE"},
    }
    assert _route_map(default_app)["/health"] == {"GET"}


def test_health_endpoint() -> None:
    with TestClient(create_app(GenerationContainer(llm_client=_FakeLLM()))) as client:
        response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "studygraph", "api_v1": "available"}


def test_text_generation_is_accepted_and_saved() -> None:
    llm = _FakeLLM()
    container = GenerationContainer(llm_client=llm)

    with TestClient(create_app(container)) as client:
        accepted = client.post("/api/v1/subjects/physics/graph", data={"text": TEXT})
        subject = client.get("/api/v1/subjects/physics")

    assert accepted.status_code == 202
    body = accepted.json()
    assert body["subject_id"] == "physics"
    assert body["status"] == "processing"
    assert body["generation_id"]

    assert subject.status_code == 200
    document = subject.json()
    assert document["status"] == "ready"
    assert document["name"] == "Newton's laws"
    assert [node["id"] for node in document["nodes"]] == ["node_1", "node_2", "node_3"]
    assert {"from": "node_1", "to": "node_2", "strength": 0.9} in document["edges"]
    assert document["generation"] is None
    assert llm.calls == 1


def test_markdown_upload_is_decoded_and_generated() -> None:
    container = GenerationContainer(llm_client=_FakeLLM())

    with TestClient(create_app(container)) as client:
        accepted = client.post(
            "/api/v1/subjects/notes/graph",
            files={"file": ("notes.md", io.BytesIO(TEXT.encode("utf-8")), "text/markdown")},
        )
        subject = client.get("/api/v1/subjects/notes")

    assert accepted.status_code == 202
    assert subject.json()["status"] == "ready"


def test_failed_generation_is_reported_on_subject() -> None:
    container = GenerationContainer(llm_client=_FakeLLM(response={"concepts": []}))

    with TestClient(create_app(container)) as client:
        client.post("/api/v1/subjects/physics/graph", data={"text": TEXT})
        document = client.get("/api/v1/subjects/physics").json()

    assert document["status"] == "error"
    assert document["last_error"] == "The AI returned an invalid answer. Please try again."
    assert document["nodes"] == []


def test_short_text_is_rejected_with_error_envelope() -> None:
    llm = _FakeLLM()

    with TestClient(create_app(GenerationContainer(llm_client=llm))) as client:
        response = client.post(
            "/api/v1/subjects/physics/graph",
            data={"text": "too short"},
            headers={"X-Correlation-ID": "corr-123"},
        )

    assert response.status_code == 400
    error = response.json()["error"]
    assert error["code"] == "INPUT_VALIDATION_FAILED"
    assert "too short" in error["message"].lower()
    assert error["request_id"] == "corr-123"
    assert response.headers["X-Correlation-ID"] == "corr-123"
    assert llm.calls == 0


def test_missing_input_is_rejected() -> None:
    with TestClient(create_app(GenerationContainer(llm_client=_FakeLLM()))) as client:
        response = client.post("/api/v1/subjects/physics/graph")

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INPUT_VALIDATION_FAILED"


def test_unsupported_upload_is_rejected() -> None:
    with TestClient(create_app(GenerationContainer(llm_client=_FakeLLM()))) as client:
        response = client.post(
            "/api/v1/subjects/physics/graph",
            files={"file": ("slides.pptx", io.BytesIO(b"PK"), "application/octet-stream")},
        )

    assert response.status_code == 400
    assert ".pptx" in response.json()["error"]["message"]


def test_unknown_subject_is_not_found() -> None:
    with TestClient(create_app(GenerationContainer(llm_client=_FakeLLM()))) as client:
        response = client.get("/api/v1/subjects/missing")

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "SUBJECT_NOT_FOUND"


def test_cancel_without_running_generation_is_not_found() -> None:
    repository = InMemorySubjectRepository({"physics": {"id": "physics", "status": "ready"}})
    container = GenerationContainer(llm_client=_FakeLLM(), subject_repository=repository)

    with TestClient(create_app(container)) as client:
        response = client.delete("/api/v1/subjects/physics/graph/generation")

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "GENERATION_NOT_FOUND"


def test_second_generation_conflicts_and_running_one_can_be_cancelled() -> None:
    llm = _FakeLLM()
    container = GenerationContainer(llm_client=llm)
    running = asyncio.run(container.generation_registry.start("physics"))

    with TestClient(create_app(container)) as client:
        conflict = client.post("/api/v1/subjects/physics/graph", data={"text": TEXT})
        cancelled = client.delete("/api/v1/subjects/physics/graph/generation")
        status = client.get("/api/v1/subjects/physics")

    assert conflict.status_code == 409
    assert conflict.json()["error"]["code"] == "GENERATION_IN_PROGRESS"
    assert conflict.json()["error"]["details"] == {"generation_id": running.generation_id}

    assert cancelled.status_code == 202
    assert cancelled.json()["generation_id"] == running.generation_id
    assert cancelled.json()["status"] == "cancel_requested"
    assert running.token.cancelled

    generation = status.json()["generation"]
    assert generation["generation_id"] == running.generation_id
    assert generation["cancel_requested"] is True
    assert llm.calls == 0
