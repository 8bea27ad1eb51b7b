from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from .config import Settings
from .memory.embedding import EmbeddingAdapter
from .memory.migration import MigrationReport
from .memory.service import MemoryService
from .services.backoff import BackoffPolicy
from .services.chroma_gateway import AvailabilityCircuit, ChromaGateway
from .services.gemini_client import GeminiClient
from .state.persistence import StateStore

logger = logging.getLogger("memory_keeper")


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


@dataclass(slots=True)
class MemoryRuntime:
    settings: Settings
    service: MemoryService
    state: StateStore
    gemini: GeminiClient | None = None

    async def start(self) -> None:
        if self.gemini is not None:
            await self.gemini.start()
        await self.service.initialize()
        await self.state.load()

    async def close(self) -> None:
        await self.service.close()
        await self.state.wait_idle()
        if self.gemini is not None:
            await self.gemini.close()


def build_runtime(settings: Settings) -> MemoryRuntime:
    retry_policy = BackoffPolicy.from_millis(
        settings.retry_max_attempts,
        settings.retry_base_delay_ms,
        settings.retry_max_delay_ms,
    )
    gemini: GeminiClient | None = None
    if settings.gemini_api_key:
        gemini = GeminiClient(
            api_key=settings.gemini_api_key,
            model=settings.memory_analyzer_model,
            embedding_model=settings.gemini_embedding_model,
            timeout_seconds=settings.gemini_timeout_seconds,
            base_url=settings.gemini_base_url,
            retry_policy=retry_policy,
        )
    else:
        logger.warning("GEMINI_API_KEY is not set; embeddings and insight analysis are disabled")

    gateway = ChromaGateway(
        settings.chroma_url,
        tenant=settings.chroma_tenant,
        database=settings.chroma_database,
        timeout_seconds=settings.chroma_timeout_seconds,
        retry_policy=retry_policy,
        circuit=AvailabilityCircuit(reprobe_after=settings.chroma_reprobe_seconds or None),
    )
    service = MemoryService(
        gateway,
        EmbeddingAdapter(gemini, settings.memory_max_document_chars),
        generator=gemini,
        enabled=settings.memory_enabled,
        collection_prefix=settings.chroma_collection_prefix,
        schema_version=settings.memory_schema_version,
        max_document_chars=settings.memory_max_document_chars,
        upsert_batch_size=settings.memory_upsert_batch_size,
        self_context_page_size=settings.memory_self_context_page_size,
        retrieval_limit=settings.memory_retrieval_limit,
        insight_queue_max_depth=settings.insight_queue_max_depth,
        insight_analysis_enabled=settings.insight_analysis_enabled,
        bot_user_id=settings.bot_user_id,
        bot_display_name=settings.bot_display_name,
    )
    return MemoryRuntime(
        settings=settings,
        service=service,
        state=StateStore(settings.state_dir),
        gemini=gemini,
    )


async def run_maintenance(settings: Settings) -> MigrationReport | None:
    """Start up, import legacy histories, strip file parts, flush and shut down."""
    runtime = build_runtime(settings)
    report: MigrationReport | None = None
    await runtime.start()
    try:
        if settings.legacy_migration_enabled:
            report = await runtime.service.migrate_legacy_histories(runtime.state.chat_histories)
            logger.info(
                "Legacy migration: skipped=%s built=%s upserted=%s malformed=%s",
                report.skipped,
                report.built,
                report.upserted,
                report.malformed,
            )
        if runtime.state.remove_file_data():
            await runtime.state.save()
    finally:
        await runtime.close()
    return report


def main() -> None:
    configure_logging()
    settings = Settings.from_env()
    settings.validate()
    try:
        asyncio.run(run_maintenance(settings))
    except KeyboardInterrupt:
        logger.info("Shutdown requested, exiting.")
