from __future__ import annotations

import json
from pathlib import Path

import pytest

from replay import cli

FLOW = {
    "id": "cli-flow",
    "nodes": [
        {"id": "open", "actionType": "navigate", "config": {"url": "https://x.test"}},
        {"id": "pause", "actionType": "delay", "config": {"ms": 10}},
    ],
    "edges": [{"from": "open", "to": "pause"}],
}


@pytest.fixture
def flow_file(tmp_path: Path) -> Path:
    path = tmp_path / "flow.json"
    path.write_text(json.dumps(FLOW), encoding="utf-8")
    return path


def test_parse_variables_keeps_json_types():
    assert cli.parse_variables(["count=3", "name=bob", "tags=[\"a\"]", "empty="]) == {
        "count": 3,
        "name": "bob",
        "tags": ["a"],
        "empty": "",
    }
    with pytest.raises(ValueError):
        cli.parse_variables(["novalue"])


def test_validate_prints_plan(flow_file: Path, capsys: pytest.CaptureFixture[str]):
    assert cli.main(["validate", str(flow_file)]) == 0
    assert json.loads(capsys.readouterr().out) == {"flow_id": "cli-flow", "entry": "open", "nodes": 2}


def test_validate_reports_structural_errors(tmp_path: Path, capsys: pytest.CaptureFixture[str]):
    path = tmp_path / "cyclic.json"
    document = dict(FLOW, edges=FLOW["edges"] + [{"from": "pause", "to": "open"}])
    path.write_text(json.dumps(document), encoding="utf-8")

    assert cli.main(["validate", str(path)]) == 2
    assert json.loads(capsys.readouterr().out)["code"] == "INVALID_FLOW"


def test_missing_flow_file_exits(tmp_path: Path):
    with pytest.raises(SystemExit) as info:
        cli.main(["validate", str(tmp_path / "nope.json")])
    assert info.value.code == 2


def test_run_exit_code_follows_status(flow_file: Path, monkeypatch: pytest.MonkeyPatch):
    captured = {}

    async def fake_run_local(flow, variables, config_path, headed):
        captured.update(flow=flow.id, variables=variables, headed=headed)
        return {"status": "failed"}

    monkeypatch.setattr(cli, "_run_local", fake_run_local)

    assert cli.main(["run", str(flow_file), "--var", "user=ann", "--headed"]) == 1
    assert captured == {"flow": "cli-flow", "variables": {"user": "ann"}, "headed": True}


class _Response:
    def __init__(self, payload):
        self._payload = payload

    def raise_for_status(self) -> None:
        return None

    def json(self):
        return self._payload


def test_submit_polls_until_finished(flow_file: Path, monkeypatch: pytest.MonkeyPatch, capsys):
    posted = {}
    states = iter(["running", "completed"])

    def fake_post(url, json=None, timeout=None):
        posted.update(url=url, body=json)
        return _Response({"run_id": "remote-1"})

    def fake_get(url, timeout=None):
        state = next(states)
        return _Response({"status": state, "summary": {"status": state}})

    monkeypatch.setattr(cli.requests, "post", fake_post)
    monkeypatch.setattr(cli.requests, "get", fake_get)

    code = cli.main(["submit", str(flow_file), "--server", "http://replay.local", "--interval", "0"])

    assert code == 0
    assert posted["url"] == "http://replay.local/runs"
    assert posted["body"]["flow"]["id"] == "cli-flow"
    assert json.loads(capsys.readouterr().out) == {"status": "completed"}
