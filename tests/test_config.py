"""Tests for environment configuration and state path resolution"""

from pathlib import Path

import pytest

from weave.config import WeaveConfig
from weave.errors import ConfigurationError
from weave.state_paths import resolve_db_path, resolve_state_dir, resolve_state_subdir


def test_defaults(tmp_path):
    config = WeaveConfig.from_env()

    assert config.state_dir == tmp_path / "state"
    assert config.db_path == tmp_path / "state" / "weave.sqlite"
    assert config.llm_provider == "openai"
    assert config.llm_api_url == "http://localhost:8000"
    assert config.llm_api_key is None
    assert config.batch_size == 10
    assert config.build_window == 100
    assert config.inter_call_delay == 0.5
    assert config.user_emails == []
    assert config.has_llm_credentials


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("WEAVE_LLM_API_URL", "http://gpu-box:8001/")
    monkeypatch.setenv("WEAVE_LLM_MODEL", "mistral")
    monkeypatch.setenv("WEAVE_BATCH_SIZE", "4")
    monkeypatch.setenv("WEAVE_INTER_CALL_DELAY", "0")
    monkeypatch.setenv("WEAVE_USER_NAME", "Sam")
    monkeypatch.setenv("WEAVE_USER_EMAILS", " Me@Example.com, ,work@example.com")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    config = WeaveConfig.from_env()

    assert config.llm_api_url == "http://gpu-box:8001"
    assert config.llm_model == "mistral"
    assert config.batch_size == 4
    assert config.inter_call_delay == 0.0
    assert config.user_name == "Sam"
    assert config.user_emails == ["me@example.com", "work@example.com"]
    assert config.log_level == "DEBUG"


def test_anthropic_provider_reads_its_key(monkeypatch):
    monkeypatch.setenv("WEAVE_LLM_PROVIDER", "Anthropic")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant")

    config = WeaveConfig.from_env()

    assert config.llm_provider == "anthropic"
    assert config.llm_api_url == "https://api.anthropic.com"
    assert config.llm_api_key == "sk-ant"
    assert config.has_llm_credentials


def test_anthropic_without_key_has_no_credentials(monkeypatch):
    monkeypatch.setenv("WEAVE_LLM_PROVIDER", "anthropic")
    assert not WeaveConfig.from_env().has_llm_credentials


@pytest.mark.parametrize(
    "name, value",
    [
        ("WEAVE_LLM_PROVIDER", "cohere"),
        ("WEAVE_BATCH_SIZE", "ten"),
        ("WEAVE_INTER_CALL_DELAY", "soon"),
        ("WEAVE_BATCH_SIZE", "0"),
        ("WEAVE_BUILD_WINDOW", "-1"),
        ("WEAVE_LLM_MAX_RETRIES", "-2"),
    ],
)
def test_invalid_values_raise(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(ConfigurationError):
        WeaveConfig.from_env()


class TestStatePaths:

    def test_explicit_base_dir_wins(self, tmp_path):
        assert resolve_state_dir(tmp_path / "x") == tmp_path / "x"

    def test_legacy_state_dir_variable(self, tmp_path, monkeypatch):
        monkeypatch.delenv("WEAVE_STATE_DIR")
        monkeypatch.setenv("STATE_DIR", str(tmp_path / "legacy"))
        assert resolve_state_dir() == tmp_path / "legacy"

    def test_subdir(self, tmp_path):
        assert resolve_state_subdir("logs") == tmp_path / "state" / "logs"

    def test_db_path_created_under_state_dir(self, tmp_path):
        db_path = resolve_db_path()
        assert db_path == tmp_path / "state" / "weave.sqlite"
        assert db_path.parent.is_dir()

    def test_db_path_override(self, tmp_path, monkeypatch):
        override = tmp_path / "elsewhere" / "graph.db"
        monkeypatch.setenv("WEAVE_DB_PATH", str(override))

        assert resolve_db_path() == override
        assert WeaveConfig.from_env().db_path == override
        assert Path(override).parent.is_dir()
