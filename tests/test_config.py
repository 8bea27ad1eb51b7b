from __future__ import annotations

import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from memory_keeper.app import build_runtime  # noqa: E402
from memory_keeper.config import Settings  # noqa: E402


_KEYS = (
    "CHROMA_URL",
    "CHROMA_TENANT",
    "CHROMA_REPROBE_SECONDS",
    "GEMINI_API_KEY",
    "GEMINI_EMBEDDING_MODEL",
    "VERTEX_EMBEDDING_MODEL",
    "MEMORY_UPSERT_BATCH_SIZE",
    "INSIGHT_QUEUE_MAX_DEPTH",
    "RETRY_BASE_DELAY_MS",
    "RETRY_MAX_DELAY_MS",
)


@pytest.fixture
def clean_env(monkeypatch):
    for key in _KEYS:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


def test_defaults(clean_env) -> None:
    settings = Settings.from_env()
    settings.validate()
    assert settings.chroma_url == "http://127.0.0.1:8000"
    assert settings.chroma_tenant is None
    assert settings.chroma_reprobe_seconds == 0.0
    assert settings.memory_max_document_chars == 6000
    assert settings.memory_upsert_batch_size == 8
    assert settings.insight_queue_max_depth == 5
    assert settings.gemini_embedding_model == "text-embedding-004"


def test_alias_and_bad_values_fall_back(clean_env) -> None:
    clean_env.setenv("VERTEX_EMBEDDING_MODEL", "text-embedding-005")
    clean_env.setenv("MEMORY_UPSERT_BATCH_SIZE", "lots")
    settings = Settings.from_env()
    assert settings.gemini_embedding_model == "text-embedding-005"
    assert settings.memory_upsert_batch_size == 8


def test_validate_rejects_inverted_retry_delays(clean_env) -> None:
    clean_env.setenv("RETRY_BASE_DELAY_MS", "9000")
    clean_env.setenv("RETRY_MAX_DELAY_MS", "1000")
    with pytest.raises(ValueError, match="RETRY_MAX_DELAY_MS"):
        Settings.from_env().validate()


def test_validate_rejects_non_http_chroma_url(clean_env) -> None:
    clean_env.setenv("CHROMA_URL", "localhost:8000")
    with pytest.raises(ValueError, match="CHROMA_URL"):
        Settings.from_env().validate()


def test_runtime_without_api_key_disables_providers(clean_env, tmp_path) -> None:
    clean_env.setenv("CHROMA_REPROBE_SECONDS", "45")
    settings = Settings.from_env()
    settings.state_dir = tmp_path
    runtime = build_runtime(settings)
    assert runtime.gemini is None
    assert runtime.service.embedder.enabled is False
    assert runtime.service.insights.generator is None
    assert runtime.service.gateway.circuit.reprobe_after == 45.0
    assert runtime.state.state_dir == tmp_path
