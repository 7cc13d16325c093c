"""Unit tests for the CLI: command registration and end-to-end behavior."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest
from typer.testing import CliRunner

from shipyard.cli.app import app

runner = CliRunner()


def _stage(name: str, code: str, after: list[str] | None = None) -> str:
    command = json.dumps([sys.executable, "-c", code])
    return (
        "[[stages]]\n"
        f'name = "{name}"\n'
        f"predecessors = {json.dumps(after or [])}\n"
        "timeout = 30\n"
        f'action = {{ kind = "command", command = {command} }}\n'
    )


def _config(*stages: str) -> str:
    return 'pipeline_id = "web"\nimage_repository = "example/web"\n\n' + "\n".join(stages)


PASSING = _config(
    _stage("checkout", "print('checked out')"),
    _stage("test", "print('tests ok')", ["checkout"]),
)

FAILING = _config(
    _stage("checkout", "print('checked out')"),
    _stage("test", "import sys; sys.exit(3)", ["checkout"]),
)


@pytest.fixture
def workspace(tmp_path: Path, monkeypatch) -> Path:
    """Run every command inside a temp dir with its own state directory."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SHIPYARD_STATE_DIR", str(tmp_path / "state"))
    monkeypatch.delenv("SHIPYARD_ENVIRONMENT", raising=False)
    return tmp_path


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestCliApp:
    def test_no_args_shows_help(self):
        result = runner.invoke(app, [])
        assert result.exit_code in (0, 2)
        assert "Usage" in result.output or "usage" in result.output.lower()

    @pytest.mark.parametrize(
        "command", ["init", "validate", "trigger", "status", "runs", "abort", "resume", "verify"]
    )
    def test_command_registered(self, command):
        result = runner.invoke(app, [command, "--help"])
        assert result.exit_code == 0


# ---------------------------------------------------------------------------
# init / validate
# ---------------------------------------------------------------------------


class TestInitAndValidate:
    def test_init_writes_config(self, workspace):
        result = runner.invoke(app, ["init", "--pipeline", "web", "--image", "example/web"])
        assert result.exit_code == 0, result.output
        text = (workspace / "shipyard.toml").read_text()
        assert 'pipeline_id = "web"' in text
        assert 'image_repository = "example/web"' in text
        assert (workspace / "state").is_dir()

    def test_init_refuses_overwrite(self, workspace):
        (workspace / "shipyard.toml").write_text("# mine\n")
        result = runner.invoke(app, ["init"])
        assert result.exit_code == 1
        assert (workspace / "shipyard.toml").read_text() == "# mine\n"

    def test_init_force(self, workspace):
        (workspace / "shipyard.toml").write_text("# mine\n")
        assert runner.invoke(app, ["init", "--force"]).exit_code == 0

    def test_sample_config_validates(self, workspace):
        runner.invoke(app, ["init"])
        result = runner.invoke(app, ["validate"])
        assert result.exit_code == 0, result.output
        assert "is valid (5 stages)" in result.output

    def test_validate_reports_cycle(self, workspace):
        (workspace / "shipyard.toml").write_text(
            _config(_stage("a", "pass", ["b"]), _stage("b", "pass", ["a"]))
        )
        result = runner.invoke(app, ["validate"])
        assert result.exit_code == 1
        assert "Error" in result.output

    def test_validate_missing_config(self, workspace):
        result = runner.invoke(app, ["validate", "-c", "absent.toml"])
        assert result.exit_code == 1


# ---------------------------------------------------------------------------
# trigger / runs / status / abort / verify / resume
# ---------------------------------------------------------------------------


class TestRunCommands:
    def test_read_commands_need_a_ledger(self, workspace):
        result = runner.invoke(app, ["runs"])
        assert result.exit_code == 1
        assert "Ledger not found" in result.output

    def test_trigger_queues_pending(self, workspace):
        (workspace / "shipyard.toml").write_text(PASSING)
        result = runner.invoke(app, ["trigger", "abc123"])
        assert result.exit_code == 0, result.output
        assert "Queued run-000001" in result.output

        listed = runner.invoke(app, ["runs"])
        assert listed.exit_code == 0
        assert "run-000001" in listed.output
        assert "PENDING" in listed.output

    def test_trigger_wait_success(self, workspace):
        (workspace / "shipyard.toml").write_text(PASSING)
        result = runner.invoke(app, ["trigger", "abc123", "--wait"])
        assert result.exit_code == 0, result.output
        assert "SUCCEEDED" in result.output

    def test_trigger_wait_failure_exit_code(self, workspace):
        (workspace / "shipyard.toml").write_text(FAILING)
        result = runner.invoke(app, ["trigger", "abc123", "--wait"])
        assert result.exit_code == 1
        status = runner.invoke(app, ["status", "run-000001"])
        assert "FAILED" in status.output

    def test_abort_pending_run(self, workspace):
        (workspace / "shipyard.toml").write_text(PASSING)
        runner.invoke(app, ["trigger", "abc123"])
        result = runner.invoke(app, ["abort", "run-000001", "--reason", "bad commit"])
        assert result.exit_code == 0, result.output
        assert "aborted" in result.output

        again = runner.invoke(app, ["abort", "run-000001"])
        assert again.exit_code == 1

        # An aborted run is not resumed
        resumed = runner.invoke(app, ["resume"])
        assert resumed.exit_code == 0
        assert "Nothing to resume" in resumed.output

    def test_abort_unknown_run(self, workspace):
        (workspace / "shipyard.toml").write_text(PASSING)
        runner.invoke(app, ["trigger", "abc123"])
        assert runner.invoke(app, ["abort", "run-000042"]).exit_code == 1

    def test_resume_drains_queue(self, workspace):
        (workspace / "shipyard.toml").write_text(PASSING)
        runner.invoke(app, ["trigger", "aaa"])
        runner.invoke(app, ["trigger", "bbb"])
        result = runner.invoke(app, ["resume"])
        assert result.exit_code == 0, result.output
        assert "run-000001" in result.output
        assert "run-000002" in result.output

    def test_status_unknown_run(self, workspace):
        (workspace / "shipyard.toml").write_text(PASSING)
        runner.invoke(app, ["trigger", "abc123"])
        result = runner.invoke(app, ["status", "run-000099"])
        assert result.exit_code == 1

    def test_verify(self, workspace):
        (workspace / "shipyard.toml").write_text(PASSING)
        runner.invoke(app, ["trigger", "abc123", "--wait"])
        result = runner.invoke(app, ["verify"])
        assert result.exit_code == 0, result.output
        assert "valid" in result.output
        assert runner.invoke(app, ["verify", "run-000077"]).exit_code == 1
