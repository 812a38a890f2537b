from __future__ import annotations

import json
import os
from pathlib import Path

import httpx
import pytest

from runwatch import cli
from runwatch.github_api import GitHubRunClient
from runwatch.relay import ChannelProvisioningError


def _run_json(run_id: int, status: str = "completed", conclusion="success") -> dict:
    return {
        "id": run_id,
        "name": "CI",
        "head_branch": "main",
        "status": status,
        "conclusion": conclusion,
        "workflow_id": 42,
        "html_url": f"https://github.com/octocat/repo/actions/runs/{run_id}",
        "updated_at": "2024-05-01T10:05:00Z",
        "run_number": run_id,
        "event": "push",
    }


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    for k in list(os.environ.keys()):
        if k.startswith("RUNWATCH_"):
            monkeypatch.delenv(k, raising=False)
    monkeypatch.delenv("GITHUB_TOKEN", raising=False)
    monkeypatch.setenv("RUNWATCH_LOAD_DOTENV", "0")
    monkeypatch.setenv("RUNWATCH_GITHUB_TOKEN", "ghp_test")
    monkeypatch.setattr(cli, "configure_logging", lambda **kwargs: None)


def _patch_api(monkeypatch, handler) -> list:
    made = []

    def _make_api(cfg):
        client = GitHubRunClient.from_config(cfg, transport=httpx.MockTransport(handler))
        made.append(cfg)
        return client

    monkeypatch.setattr(cli, "_make_api", _make_api)
    return made


def test_parser_error_uses_error_id(capsys):
    assert cli.main(["runs", "--repo", "octocat/repo"]) == 1
    err = capsys.readouterr().err
    assert "ERR-RUNWATCH-0018" in err
    assert "--workflow-id" in err


def test_unknown_subcommand_is_rejected(capsys):
    assert cli.main(["frobnicate"]) == 1
    assert "ERR-RUNWATCH-0018" in capsys.readouterr().err


def test_runs_prints_json_lines(monkeypatch, capsys):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        return httpx.Response(200, json={"workflow_runs": [_run_json(2, "in_progress", None), _run_json(1)]})

    made = _patch_api(monkeypatch, handler)
    code = cli.main(
        ["--api-base-url", "https://ghe.example/api/v3", "runs", "--repo", "octocat/repo", "--workflow-id", "42", "--limit", "2"]
    )
    assert code == 0
    assert made[0].api_base_url == "https://ghe.example/api/v3"
    assert seen["url"].endswith("/repos/octocat/repo/actions/workflows/42/runs?per_page=2")

    lines = [json.loads(line) for line in capsys.readouterr().out.strip().splitlines()]
    assert [(r["id"], r["status"], r["conclusion"]) for r in lines] == [
        (2, "in_progress", None),
        (1, "completed", "success"),
    ]


def test_runs_table_output(monkeypatch, capsys):
    _patch_api(monkeypatch, lambda request: httpx.Response(200, json={"workflow_runs": [_run_json(5)]}))
    assert cli.main(["runs", "--repo", "octocat/repo", "--workflow-id", "42", "--output", "table"]) == 0
    out = capsys.readouterr().out.splitlines()
    assert out[0].split() == ["id", "number", "status", "conclusion", "branch", "updated_at"]
    assert out[1].split()[:5] == ["5", "#5", "completed", "success", "main"]


def test_runs_reports_api_errors(monkeypatch, capsys):
    _patch_api(monkeypatch, lambda request: httpx.Response(401))
    assert cli.main(["runs", "--repo", "octocat/repo", "--workflow-id", "42"]) == 1
    err = capsys.readouterr().err
    assert "ERR-RUNWATCH-HTTP" in err
    assert "unauthorized" in err


def test_channel_prints_new_url(monkeypatch, capsys):
    seen = {}

    async def fake_create_channel(new_url, *, timeout_sec):
        seen["new_url"] = new_url
        return "https://smee.io/fresh"

    monkeypatch.setattr(cli, "create_channel", fake_create_channel)
    assert cli.main(["channel", "--new-url", "https://relay.example/new"]) == 0
    assert capsys.readouterr().out.strip() == "https://smee.io/fresh"
    assert seen["new_url"] == "https://relay.example/new"


def test_channel_failure(monkeypatch, capsys):
    async def failing(new_url, *, timeout_sec):
        raise ChannelProvisioningError("Failed to create relay channel.")

    monkeypatch.setattr(cli, "create_channel", failing)
    assert cli.main(["channel"]) == 1
    assert "ERR-RUNWATCH-0010" in capsys.readouterr().err


def test_watch_once_prints_runs_per_workflow(monkeypatch, capsys, tmp_path: Path):
    watchlist = tmp_path / "runwatch.yaml"
    watchlist.write_text(
        "workflows:\n  - repository: octocat/repo\n    workflow_id: 42\n    name: CI\n",
        encoding="utf-8",
    )
    _patch_api(monkeypatch, lambda request: httpx.Response(200, json={"workflow_runs": [_run_json(3)]}))

    code = cli.main(
        ["watch", "--watchlist", str(watchlist), "--registry", str(tmp_path / "reg.json"), "--once"]
    )
    assert code == 0
    lines = [json.loads(line) for line in capsys.readouterr().out.strip().splitlines()]
    assert len(lines) == 1
    assert lines[0]["workflow"] == "octocat/repo/42"
    assert lines[0]["id"] == 3
    assert lines[0]["status"] == "completed"


def test_watch_rejects_invalid_watchlist(capsys, tmp_path: Path):
    watchlist = tmp_path / "runwatch.yaml"
    watchlist.write_text("workflows: [{repository: nope, workflow_id: 1}]\n", encoding="utf-8")
    assert cli.main(["watch", "--watchlist", str(watchlist), "--once"]) == 1
    err = capsys.readouterr().err
    assert "invalid watch list" in err
    assert "invalid_repository: 0" in err


def test_watch_rejects_empty_watchlist(capsys, tmp_path: Path):
    watchlist = tmp_path / "runwatch.yaml"
    watchlist.write_text("workflows: []\n", encoding="utf-8")
    assert cli.main(["watch", "--watchlist", str(watchlist)]) == 1
    assert "watch list is empty" in capsys.readouterr().err


def test_workflows_lists_ids(monkeypatch, capsys):
    body = {
        "workflows": [
            {"id": 161335, "name": "CI", "path": ".github/workflows/ci.yml", "state": "active"},
        ]
    }
    _patch_api(monkeypatch, lambda request: httpx.Response(200, json=body))
    assert cli.main(["workflows", "--repo", "octocat/repo", "--output", "table"]) == 0
    out = capsys.readouterr().out.splitlines()
    assert out[0].split() == ["id", "name", "state", "path"]
    assert out[1].split() == ["161335", "CI", "active", ".github/workflows/ci.yml"]


def test_dispatch_triggers_then_refreshes_runs(monkeypatch, capsys):
    requests: list[tuple[str, str]] = []
    dispatched = {}

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append((request.method, request.url.path))
        if request.method == "POST":
            dispatched.update(json.loads(request.content))
            return httpx.Response(204)
        return httpx.Response(200, json={"workflow_runs": [_run_json(8, "queued", None)]})

    _patch_api(monkeypatch, handler)
    code = cli.main(
        [
            "dispatch",
            "--repo",
            "octocat/repo",
            "--workflow-id",
            "42",
            "--ref",
            "main",
            "--input",
            "env=staging",
            "--input",
            "note=a=b",
            "--refresh-delay",
            "0",
        ]
    )
    assert code == 0
    assert requests == [
        ("POST", "/repos/octocat/repo/actions/workflows/42/dispatches"),
        ("GET", "/repos/octocat/repo/actions/workflows/42/runs"),
    ]
    assert dispatched == {"ref": "main", "inputs": {"env": "staging", "note": "a=b"}}
    lines = [json.loads(line) for line in capsys.readouterr().out.strip().splitlines()]
    assert [(r["id"], r["status"]) for r in lines] == [(8, "queued")]


def test_dispatch_rejects_malformed_input(monkeypatch, capsys):
    calls = []
    _patch_api(monkeypatch, lambda request: calls.append(request) or httpx.Response(204))
    code = cli.main(
        ["dispatch", "--repo", "octocat/repo", "--workflow-id", "42", "--ref", "main", "--input", "novalue"]
    )
    assert code == 1
    assert "invalid --input 'novalue'" in capsys.readouterr().err
    assert calls == []
