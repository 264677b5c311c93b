from __future__ import annotations

import json

from studygraph import cli
from studygraph.domain.ports import ILLMClient

TEXT = (
    "Photosynthesis converts light energy into chemical energy. Chlorophyll absorbs light; "
    "the Calvin cycle fixes carbon dioxide into sugars."
)


class _FakeLLM(ILLMClient):
    def __init__(self):
        self.closed = False

    async def complete(self, messages, *, max_tokens, model=None, temperature=None, json_mode=True):
        return json.dumps(
            {
                "subject_name": "Photosynthesis",
                "concepts": [
                    {"id": "node_1", "title": "Light absorption", "level": 1},
                    {"id": "node_2", "title": "Calvin cycle", "level": 2},
                ],
                "dependencies": [{"from": "node_1", "to": "node_2", "strength": 0.8}],
            }
        )

    async def aclose(self):
        self.closed = True


def test_cli_prints_graph_json_and_progress(monkeypatch, capsys):
    fake = _FakeLLM()
    monkeypatch.setattr(cli, "LLMProxyClient", lambda: fake)

    exit_code = cli.main(["--text", TEXT])

    captured = capsys.readouterr()
    assert exit_code == 0
    payload = json.loads(captured.out)
    assert payload["subjectName"] == "Photosynthesis"
    assert [c["id"] for c in payload["concepts"]] == ["node_1", "node_2"]
    assert "[1/2] Generating knowledge graph" in captured.err
    assert fake.closed


def test_cli_writes_output_file(monkeypatch, tmp_path):
    monkeypatch.setattr(cli, "LLMProxyClient", _FakeLLM)
    source = tmp_path / "notes.md"
    source.write_text(TEXT, encoding="utf-8")
    target = tmp_path / "graph.json"

    exit_code = cli.main(["--file", str(source), "--output", str(target)])

    assert exit_code == 0
    assert json.loads(target.read_text(encoding="utf-8"))["edges"] == [
        {"from": "node_1", "to": "node_2", "strength": 0.8}
    ]


def test_cli_reports_invalid_input(monkeypatch, capsys):
    monkeypatch.setattr(cli, "LLMProxyClient", _FakeLLM)

    exit_code = cli.main(["--text", "short"])

    assert exit_code == 1
    assert "too short" in capsys.readouterr().err.lower()


def test_cli_reports_unreadable_file(tmp_path, capsys):
    exit_code = cli.main(["--file", str(tmp_path / "missing.pdf")])

    assert exit_code == 2
    assert "Could not read input" in capsys.readouterr().err
