"""Tests for gurulo.config."""

import json

import pytest

from gurulo.config import GuruloConfig


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in ("GROQ_API_KEY", "GURULO_API_BASE", "GURULO_SMALL_MODEL", "GURULO_LARGE_MODEL",
                "GURULO_PROJECT_ROOT", "AI_OFFLINE_MODE"):
        monkeypatch.delenv(var, raising=False)


class TestGuruloConfig:
    def test_defaults_when_file_missing(self, tmp_path):
        config = GuruloConfig.load(tmp_path / "missing.json")
        assert config.context.token_budget == 1500
        assert config.router.greeting_max_words == 8
        assert config.models.max_retries == 3
        assert config.safety.confirmation_timeout == 300.0

    def test_file_values_and_unknown_keys(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({
            "context": {"token_budget": 900, "bogus": 1},
            "models": {"large": "custom-large"},
        }))
        config = GuruloConfig.load(path)
        assert config.context.token_budget == 900
        assert config.models.large == "custom-large"
        assert not hasattr(config.context, "bogus")

    def test_env_overrides(self, tmp_path, monkeypatch):
        monkeypatch.setenv("GROQ_API_KEY", "secret")
        monkeypatch.setenv("GURULO_SMALL_MODEL", "tiny")
        monkeypatch.setenv("GURULO_PROJECT_ROOT", str(tmp_path))
        monkeypatch.setenv("AI_OFFLINE_MODE", "true")
        config = GuruloConfig.load(tmp_path / "missing.json")
        assert config.models.api_key == "secret"
        assert config.models.small == "tiny"
        assert config.models.offline_mode is True
        assert config.project_root == tmp_path.resolve()

    def test_save_never_writes_api_key(self, tmp_path):
        path = tmp_path / "nested" / "config.json"
        config = GuruloConfig()
        config.models.api_key = "secret"
        config.context.token_budget = 2000
        config.save(path)
        data = json.loads(path.read_text())
        assert "api_key" not in data["models"]
        assert GuruloConfig.load(path).context.token_budget == 2000

    def test_set_value_coerces_types(self):
        config = GuruloConfig()
        config.set_value("context.token_budget", "2000")
        config.set_value("safety.confirmation_timeout", "120")
        config.set_value("executor.persist_audit", "false")
        config.set_value("models.large", "llama-3.3-70b-versatile")
        assert config.context.token_budget == 2000
        assert config.safety.confirmation_timeout == 120.0
        assert config.executor.persist_audit is False
        assert config.models.large == "llama-3.3-70b-versatile"

    @pytest.mark.parametrize("key", ["nope.key", "context", "context.nope"])
    def test_set_value_unknown_key(self, key):
        with pytest.raises(KeyError):
            GuruloConfig().set_value(key, "1")

    def test_set_value_bad_number(self):
        with pytest.raises(ValueError):
            GuruloConfig().set_value("context.token_budget", "lots")
