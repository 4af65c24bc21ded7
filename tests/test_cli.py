"""Tests for gurulo.cli: command-line surface."""

import asyncio
import json

import pytest
from click.testing import CliRunner

from gurulo import __version__
from gurulo.audit_log import AuditEntry, AuditLog
from gurulo.cli import cli


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in ("GROQ_API_KEY", "GURULO_API_BASE", "GURULO_SMALL_MODEL", "GURULO_LARGE_MODEL",
                "GURULO_PROJECT_ROOT", "AI_OFFLINE_MODE"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def config_path(tmp_path, project_path):
    path = tmp_path / "home" / "config.json"
    path.parent.mkdir()
    path.write_text(json.dumps({
        "models": {"offline_mode": True},
        "executor": {"project_root": str(project_path), "persist_audit": False},
    }))
    return path


class TestCli:
    def test_version(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_route_greeting(self, runner, config_path):
        result = runner.invoke(cli, ["--config", str(config_path), "route", "გამარჯობა"])
        assert result.exit_code == 0
        assert "GREETING" in result.output
        assert "none" in result.output

    def test_route_with_override(self, runner, config_path):
        result = runner.invoke(cli, ["--config", str(config_path), "route", "--model", "large", "hi"])
        assert "MANUAL_OVERRIDE" in result.output

    def test_ask_greeting_json(self, runner, config_path):
        result = runner.invoke(cli, ["--config", str(config_path), "ask", "--json", "hello"])
        assert result.exit_code == 0
        assert '"GREETING"' in result.output
        assert "requestId" in result.output

    def test_ask_offline(self, runner, config_path):
        result = runner.invoke(cli, ["--config", str(config_path), "ask", "--json", "what", "is", "npm"])
        assert result.exit_code == 0
        assert "Offline" in result.output

    def test_audit_empty(self, runner, config_path):
        result = runner.invoke(cli, ["--config", str(config_path), "audit"])
        assert result.exit_code == 0
        assert "No actions recorded yet" in result.output

    def test_audit_lists_persisted_actions(self, runner, config_path):
        log = AuditLog(capacity=10, db_path=config_path.parent / "gurulo.db")
        asyncio.run(log.append(AuditEntry(
            request_id="req_cli", action_id="act_cli", tool_name="writeFile",
            parameters={"filePath": "a.txt"}, success=True, result="Wrote 1 bytes to a.txt",
        )))
        result = runner.invoke(cli, ["--config", str(config_path), "audit"])
        assert result.exit_code == 0
        assert "writeFile" in result.output
        assert "req_cli" in result.output


class TestConfigCommand:
    def test_show_masks_key(self, runner, config_path, monkeypatch):
        monkeypatch.setenv("GROQ_API_KEY", "super-secret")
        result = runner.invoke(cli, ["--config", str(config_path), "config"])
        assert result.exit_code == 0
        assert "super-secret" not in result.output
        assert "(set)" in result.output

    def test_set_value(self, runner, config_path):
        result = runner.invoke(cli, ["--config", str(config_path), "config", "context.token_budget=2000"])
        assert result.exit_code == 0
        assert "Set context.token_budget = 2000" in result.output
        saved = json.loads(config_path.read_text())
        assert saved["context"]["token_budget"] == 2000
        assert saved["models"]["offline_mode"] is True

    def test_unknown_key(self, runner, config_path):
        result = runner.invoke(cli, ["--config", str(config_path), "config", "context.nope=1"])
        assert result.exit_code == 1
        assert "Unknown config key" in result.output

    def test_bad_value(self, runner, config_path):
        result = runner.invoke(cli, ["--config", str(config_path), "config", "context.token_budget=lots"])
        assert result.exit_code == 1

    def test_api_key_cannot_be_set(self, runner, config_path):
        result = runner.invoke(cli, ["--config", str(config_path), "config", "models.api_key=abc"])
        assert result.exit_code == 1
        assert "abc" not in config_path.read_text()
