from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


load_dotenv()


def _env_lookup(name: str, aliases: tuple[str, ...] = ()) -> str | None:
    for key in (name, *aliases):
        # Be tolerant to UTF-8 BOM accidentally saved in .env key names.
        for candidate in (key, f"\ufeff{key}"):
            raw = os.getenv(candidate)
            if raw is not None:
                return raw
    return None


def _env_bool(name: str, default: bool, aliases: tuple[str, ...] = ()) -> bool:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int, aliases: tuple[str, ...] = ()) -> int:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _env_float(name: str, default: float, aliases: tuple[str, ...] = ()) -> float:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _env_str(name: str, default: str, aliases: tuple[str, ...] = ()) -> str:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    value = raw.strip()
    return value if value else default


def _env_optional_str(name: str, aliases: tuple[str, ...] = ()) -> str | None:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return None
    value = raw.strip()
    return value or None


@dataclass(slots=True)
class Settings:
    chroma_url: str
    chroma_tenant: str | None
    chroma_database: str | None
    chroma_collection_prefix: str
    chroma_timeout_seconds: float
    chroma_reprobe_seconds: float

    gemini_api_key: str
    gemini_base_url: str
    gemini_timeout_seconds: int
    gemini_embedding_model: str
    memory_analyzer_model: str

    memory_enabled: bool
    memory_schema_version: str
    memory_max_document_chars: int
    memory_upsert_batch_size: int
    memory_self_context_page_size: int
    memory_retrieval_limit: int

    insight_analysis_enabled: bool
    insight_queue_max_depth: int

    retry_max_attempts: int
    retry_base_delay_ms: int
    retry_max_delay_ms: int

    state_dir: Path
    bot_user_id: str
    bot_display_name: str
    legacy_migration_enabled: bool

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            chroma_url=_env_str("CHROMA_URL", "http://127.0.0.1:8000"),
            chroma_tenant=_env_optional_str("CHROMA_TENANT"),
            chroma_database=_env_optional_str("CHROMA_DATABASE"),
            chroma_collection_prefix=_env_str("CHROMA_COLLECTION_PREFIX", "fibz"),
            chroma_timeout_seconds=_env_float("CHROMA_TIMEOUT_SECONDS", 10.0),
            chroma_reprobe_seconds=_env_float("CHROMA_REPROBE_SECONDS", 0.0),
            gemini_api_key=_env_str("GEMINI_API_KEY", ""),
            gemini_base_url=_env_str("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com"),
            gemini_timeout_seconds=_env_int("GEMINI_TIMEOUT_SECONDS", 60),
            gemini_embedding_model=_env_str(
                "GEMINI_EMBEDDING_MODEL",
                "text-embedding-004",
                aliases=("VERTEX_EMBEDDING_MODEL",),
            ),
            memory_analyzer_model=_env_str("MEMORY_ANALYZER_MODEL", "gemini-2.5-flash"),
            memory_enabled=_env_bool("MEMORY_ENABLED", True, aliases=("LONG_MEMORY_ENABLED",)),
            memory_schema_version=_env_str("MEMORY_SCHEMA_VERSION", "v1"),
            memory_max_document_chars=_env_int("MEMORY_MAX_DOCUMENT_CHARS", 6000),
            memory_upsert_batch_size=_env_int("MEMORY_UPSERT_BATCH_SIZE", 8),
            memory_self_context_page_size=_env_int("MEMORY_SELF_CONTEXT_PAGE_SIZE", 100),
            memory_retrieval_limit=_env_int("MEMORY_RETRIEVAL_LIMIT", 5),
            insight_analysis_enabled=_env_bool("INSIGHT_ANALYSIS_ENABLED", True),
            insight_queue_max_depth=_env_int("INSIGHT_QUEUE_MAX_DEPTH", 5),
            retry_max_attempts=_env_int("RETRY_MAX_ATTEMPTS", 5),
            retry_base_delay_ms=_env_int("RETRY_BASE_DELAY_MS", 500),
            retry_max_delay_ms=_env_int("RETRY_MAX_DELAY_MS", 8000),
            state_dir=Path(_env_str("STATE_DIR", "./config")).expanduser(),
            bot_user_id=_env_str("BOT_USER_ID", "fibz"),
            bot_display_name=_env_str("BOT_DISPLAY_NAME", "Fibz"),
            legacy_migration_enabled=_env_bool("LEGACY_MIGRATION_ENABLED", True),
        )

    def validate(self) -> None:
        if not self.chroma_url.startswith(("http://", "https://")):
            raise ValueError("CHROMA_URL must start with http:// or https://")
        if not self.chroma_collection_prefix.strip():
            raise ValueError("CHROMA_COLLECTION_PREFIX cannot be empty")
        if self.chroma_timeout_seconds <= 0:
            raise ValueError("CHROMA_TIMEOUT_SECONDS must be > 0")
        if self.chroma_reprobe_seconds < 0:
            raise ValueError("CHROMA_REPROBE_SECONDS must be >= 0 (0 disables re-probing)")

        if self.gemini_api_key == "put_your_gemini_api_key_here":
            raise ValueError("GEMINI_API_KEY is still placeholder")
        if self.gemini_timeout_seconds < 5:
            raise ValueError("GEMINI_TIMEOUT_SECONDS must be >= 5")
        if not self.gemini_embedding_model:
            raise ValueError("GEMINI_EMBEDDING_MODEL cannot be empty")

        if self.memory_max_document_chars < 200:
            raise ValueError("MEMORY_MAX_DOCUMENT_CHARS must be >= 200")
        if self.memory_upsert_batch_size < 1:
            raise ValueError("MEMORY_UPSERT_BATCH_SIZE must be >= 1")
        if self.memory_self_context_page_size < 1:
            raise ValueError("MEMORY_SELF_CONTEXT_PAGE_SIZE must be >= 1")
        if self.memory_retrieval_limit < 1:
            raise ValueError("MEMORY_RETRIEVAL_LIMIT must be >= 1")
        if self.insight_queue_max_depth < 1:
            raise ValueError("INSIGHT_QUEUE_MAX_DEPTH must be >= 1")

        if self.retry_max_attempts < 1:
            raise ValueError("RETRY_MAX_ATTEMPTS must be >= 1")
        if self.retry_base_delay_ms < 0 or self.retry_max_delay_ms < 0:
            raise ValueError("RETRY_BASE_DELAY_MS and RETRY_MAX_DELAY_MS must be >= 0")
        if self.retry_max_delay_ms < self.retry_base_delay_ms:
            raise ValueError("RETRY_MAX_DELAY_MS must be >= RETRY_BASE_DELAY_MS")

        if not self.bot_user_id.strip():
            raise ValueError("BOT_USER_ID cannot be empty")
