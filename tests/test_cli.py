from __future__ import annotations

import json

import pytest
from rich.console import Console
from typer.testing import CliRunner

import carrier.cli as cli
from carrier import __version__
from carrier.orchestrator import Carrier

from fakes import ScriptProvider, claude_script

runner = CliRunner()

_FLEET = {
    "id": "code-change",
    "tasks": [
        {"id": "analyze", "agent": "code-analyzer", "nextTasks": [{"taskId": "implement"}]},
        {"id": "implement", "agent": "coder", "nextTasks": [{"taskId": "complete"}]},
    ],
}


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    root = tmp_path / ".carrier"
    fleet_dir = root / "fleets" / "code-change"
    fleet_dir.mkdir(parents=True)
    (fleet_dir / "code-change.json").write_text(json.dumps(_FLEET))

    provider = ScriptProvider(claude_script(result="ok"))
    monkeypatch.setattr(cli, "configure_logging", lambda config: None)
    monkeypatch.setattr(cli, "Carrier", lambda config: Carrier(config, provider=provider))
    monkeypatch.setattr(cli, "console", Console(width=200, color_system=None))

    base = ["--config", str(tmp_path / "absent.toml"), "--carrier-path", str(root)]

    def invoke(*args):
        return runner.invoke(cli.app, [*base, *args])

    invoke.provider = provider
    return invoke


def test_version():
    result = runner.invoke(cli.app, ["--version"])
    assert result.exit_code == 0
    assert f"carrier version {__version__}" in result.output


def test_status_without_deployments(workspace):
    result = workspace("status")
    assert result.exit_code == 0
    assert "No deployments." in result.output


class TestDeploy:
    def test_success(self, workspace):
        result = workspace("deploy", "code-change", "Fix the login bug")
        assert result.exit_code == 0, result.output
        assert "Deployment 1 (code-change)" in result.output
        assert "complete" in result.output
        assert [c.task_id for c in workspace.provider.calls] == ["analyze", "implement"]

    def test_failure_exit_code(self, workspace):
        workspace.provider.scripts = [claude_script(exit_code=4)]
        result = workspace("deploy", "code-change", "Fix the login bug")
        assert result.exit_code == 4
        assert "failed" in result.output

    def test_unknown_fleet(self, workspace):
        result = workspace("deploy", "nope", "x")
        assert result.exit_code == 1
        assert "Error:" in result.output


class TestQueries:
    def test_status_list_and_detail(self, workspace):
        workspace("deploy", "code-change", "Fix the login bug")

        listing = workspace("status")
        assert listing.exit_code == 0
        assert "code-change" in listing.output

        detail = workspace("status", "1")
        assert detail.exit_code == 0
        assert "analyze" in detail.output
        assert "implement" in detail.output

    def test_unknown_deployment(self, workspace):
        result = workspace("status", "42")
        assert result.exit_code == 1
        assert "not found" in result.output.lower()

    def test_summary(self, workspace):
        workspace("deploy", "code-change", "Fix the login bug")
        result = workspace("summary", "1")
        assert result.exit_code == 0
        assert "Deployment 1: code-change" in result.output

    def test_watch_json(self, workspace):
        workspace("deploy", "code-change", "Fix the login bug")
        result = workspace("watch", "1", "--format", "json", "--task", "analyze")
        assert result.exit_code == 0
        events = [json.loads(line) for line in result.output.splitlines() if line.strip()]
        assert events
        assert all(e["taskId"] == "analyze" for e in events)

    def test_watch_stats(self, workspace):
        workspace("deploy", "code-change", "Fix the login bug")
        result = workspace("watch", "1", "--stats")
        assert result.exit_code == 0
        assert "events" in result.output
        assert "analyze" in result.output

    def test_watch_bad_format(self, workspace):
        result = workspace("watch", "1", "--format", "xml")
        assert result.exit_code == 2


class TestLifecycle:
    def test_stop_finished_deployment_conflicts(self, workspace):
        workspace("deploy", "code-change", "Fix the login bug")
        result = workspace("stop", "1")
        assert result.exit_code == 1
        assert "already complete" in result.output

    def test_approve_requires_waiting(self, workspace):
        workspace("deploy", "code-change", "Fix the login bug")
        result = workspace("approve", "1")
        assert result.exit_code == 1
        assert "not awaiting approval" in result.output

    def test_clean(self, workspace):
        workspace("deploy", "code-change", "Fix the login bug")
        result = workspace("clean", "1")
        assert result.exit_code == 0
        assert "Removed 1 deployment(s): 1" in result.output
        assert workspace("status", "1").exit_code == 1

    def test_clean_nothing(self, workspace):
        result = workspace("clean")
        assert result.exit_code == 0
        assert "Nothing to clean." in result.output
