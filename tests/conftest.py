from __future__ import annotations

pytest_plugins = ("pytest_asyncio",)

import json
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from weave.graph import GraphManager
from weave.schema import ProvenancePointer
from weave.store import WeaveStore
from weave_logging import reset_logging

_ENV_VARS = [
    "WEAVE_STATE_DIR",
    "STATE_DIR",
    "WEAVE_DB_PATH",
    "WEAVE_LLM_PROVIDER",
    "WEAVE_LLM_API_URL",
    "WEAVE_LLM_MODEL",
    "WEAVE_LLM_API_KEY",
    "WEAVE_LLM_TIMEOUT",
    "WEAVE_LLM_MAX_RETRIES",
    "WEAVE_LLM_MAX_TOKENS",
    "WEAVE_INTER_CALL_DELAY",
    "WEAVE_BUILD_WINDOW",
    "WEAVE_BATCH_SIZE",
    "WEAVE_TOP_N",
    "WEAVE_USER_NAME",
    "WEAVE_USER_EMAILS",
    "WEAVE_LOG_LEVEL",
    "LOG_LEVEL",
    "LLM_API_URL",
    "LLM_MODEL",
    "LLM_API_KEY",
    "ANTHROPIC_API_KEY",
]


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch):
    """Keep every test away from the real state dir and real credentials."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("WEAVE_STATE_DIR", str(tmp_path / "state"))
    yield
    # CLI tests install handlers on the package logger; undo for caplog
    reset_logging()


@pytest.fixture
def store(tmp_path: Path) -> WeaveStore:
    return WeaveStore(db_path=tmp_path / "weave.sqlite")


@pytest.fixture
def graph(store: WeaveStore) -> GraphManager:
    return GraphManager(store)


@pytest.fixture
def make_provenance():
    """Factory for provenance pointers with distinct raw record ids."""

    def _make(data_id: str = "rec-1", data_source: str = "google", data_kind: str = "email"):
        return ProvenancePointer(data_source=data_source, data_kind=data_kind, data_id=data_id)

    return _make


def _llm_reply(entities=None, relationships=None, prose: str = "") -> str:
    body = json.dumps({"entities": entities or [], "relationships": relationships or []})
    return f"{prose}{body}" if prose else body


@pytest.fixture
def llm_reply():
    """Builds a provider reply wrapping the JSON contract, optionally in prose."""
    return _llm_reply


@pytest.fixture
def fake_llm():
    """AsyncMock text-understanding client; set ``extract_structured.side_effect``."""
    client = AsyncMock()
    client.extract_structured = AsyncMock(return_value=_llm_reply())
    return client
