from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, List, Mapping

from ..services.chroma_gateway import ChromaGateway
from .registry import CollectionRegistry
from .types import CollectionKey, ConsentLevel, MemoryItem
from .utils import DEFAULT_MAX_DOCUMENT_CHARS, base_metadata, deterministic_id, sanitize_document, utc_now_iso
from .writer import MemoryWriter

logger = logging.getLogger("memory_keeper")


@dataclass(slots=True)
class MigrationReport:
    skipped: str | None = None
    built: int = 0
    upserted: int = 0
    malformed: int = 0


def turn_text(entry: Mapping[str, Any]) -> str:
    content = entry.get("content")
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    texts: List[str] = []
    for part in content:
        if isinstance(part, str) and part:
            texts.append(part)
        elif isinstance(part, dict) and part.get("text"):
            texts.append(str(part["text"]))
    return "\n".join(texts)


class LegacyMigrationJob:
    """One-time import of flat-file chat histories into the messages collection."""

    def __init__(
        self,
        gateway: ChromaGateway,
        registry: CollectionRegistry,
        writer: MemoryWriter,
        *,
        schema_version: str = "v1",
        max_chars: int = DEFAULT_MAX_DOCUMENT_CHARS,
    ) -> None:
        self.gateway = gateway
        self.registry = registry
        self.writer = writer
        self.schema_version = schema_version
        self.max_chars = max_chars

    def build_items(self, histories: Mapping[str, Any], report: MigrationReport | None = None) -> List[MemoryItem]:
        report = report or MigrationReport()
        migrated_at = utc_now_iso()
        items: List[MemoryItem] = []
        for history_id, groups in histories.items():
            if not isinstance(groups, dict):
                report.malformed += 1
                continue
            for sub_id, entries in groups.items():
                if not isinstance(entries, list):
                    report.malformed += 1
                    continue
                for index, entry in enumerate(entries):
                    if not isinstance(entry, dict):
                        report.malformed += 1
                        continue
                    document = sanitize_document(turn_text(entry).strip(), self.max_chars)
                    if not document:
                        continue
                    role = str(entry.get("role") or "user")
                    items.append(
                        MemoryItem(
                            id=deterministic_id("legacy", history_id, sub_id, index, role),
                            document=document,
                            metadata=base_metadata(
                                {
                                    "history_id": str(history_id),
                                    "sub_id": str(sub_id),
                                    "role": "assistant" if role == "model" else role,
                                    "consent": ConsentLevel.UNKNOWN.value,
                                    "tags": ["legacy", "import"],
                                    "migrated_at": migrated_at,
                                },
                                schema_version=self.schema_version,
                            ),
                        )
                    )
        report.built = len(items)
        return items

    async def migrate(self, histories: Mapping[str, Any] | None) -> MigrationReport:
        report = MigrationReport()
        if not histories:
            report.skipped = "empty"
            return report
        collection = await self.registry.ensure(CollectionKey.MESSAGES.value)
        if collection is None:
            report.skipped = "unavailable"
            return report

        existing = await self.gateway.count(collection.remote_id)
        if existing is None:
            # Only import into a collection known to be empty.
            report.skipped = "count_unavailable"
            return report
        if existing > 0:
            report.skipped = "already_populated"
            logger.debug("Legacy migration skipped; %s already holds %s item(s)", collection.name, existing)
            return report

        items = self.build_items(histories, report)
        if report.malformed:
            logger.warning("Legacy migration skipped %s malformed entry(s)", report.malformed)
        if items:
            report.upserted = await self.writer.upsert(CollectionKey.MESSAGES.value, items)
            logger.info("Legacy migration imported %s of %s turn(s)", report.upserted, report.built)
        return report
