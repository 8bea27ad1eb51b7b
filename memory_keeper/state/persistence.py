from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Tuple, Union

from .mutex import StateMutex
from .single_flight import SingleFlight

logger = logging.getLogger("memory_keeper")

HISTORY_DIR_NAME = "chat_histories"

AUX_FILES: Dict[str, str] = {
    "active_users_in_channels": "active_users_in_channels.json",
    "custom_instructions": "custom_instructions.json",
    "server_settings": "server_settings.json",
    "user_response_preference": "user_response_preference.json",
    "always_respond_channels": "always_respond_channels.json",
    "channel_wide_chat_history": "channel_wide_chathistory.json",
    "blacklisted_users": "blacklisted_users.json",
}

_SAFE_HISTORY_ID = re.compile(r"^[A-Za-z0-9_-][A-Za-z0-9_.-]*$")

Histories = Dict[str, Dict[str, List[Dict[str, Any]]]]


def is_safe_history_id(history_id: str) -> bool:
    return bool(_SAFE_HISTORY_ID.match(str(history_id)))


def _read_json(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def _write_atomic(path: Path, text: str) -> None:
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(text, encoding="utf-8")
    os.replace(tmp, path)


class StateStore:
    """Working-memory fallback: one JSON file per history plus auxiliary maps."""

    def __init__(self, state_dir: Union[str, Path]) -> None:
        self.state_dir = Path(state_dir)
        self.history_dir = self.state_dir / HISTORY_DIR_NAME
        self.chat_histories: Histories = {}
        self.aux: Dict[str, Any] = {key: {} for key in AUX_FILES}
        self.mutex = StateMutex()
        self.save_failures = 0
        self._removed: set[str] = set()
        self._flight = SingleFlight(self._write_snapshot, name="memory_keeper-state-save")

    @property
    def save_executions(self) -> int:
        return self._flight.executions

    # ---- load ----

    def _read_all(self) -> Tuple[Histories, Dict[str, Any]]:
        self.history_dir.mkdir(parents=True, exist_ok=True)
        histories: Histories = {}
        for path in sorted(self.history_dir.glob("*.json")):
            try:
                data = _read_json(path)
            except (OSError, ValueError) as exc:
                logger.error("Error reading chat history %s: %s", path.name, exc)
                continue
            if isinstance(data, dict):
                histories[path.stem] = data
            else:
                logger.warning("Ignoring chat history %s: expected an object", path.name)

        aux: Dict[str, Any] = {key: {} for key in AUX_FILES}
        for key, filename in AUX_FILES.items():
            path = self.state_dir / filename
            if not path.exists():
                continue
            try:
                aux[key] = _read_json(path)
            except (OSError, ValueError) as exc:
                logger.error("Error reading %s from %s: %s", key, path, exc)
        return histories, aux

    async def load(self) -> int:
        histories, aux = await asyncio.to_thread(self._read_all)
        self.chat_histories = histories
        self.aux = aux
        self._removed.clear()
        logger.info("Loaded %s chat history file(s) from %s", len(histories), self.history_dir)
        return len(histories)

    # ---- save ----

    def _snapshot(self) -> Tuple[Dict[Path, str], List[Path]]:
        files: Dict[Path, str] = {}
        for history_id, groups in self.chat_histories.items():
            if not is_safe_history_id(history_id):
                logger.warning("Not persisting history with unsafe id %r", history_id)
                continue
            files[self.history_dir / f"{history_id}.json"] = json.dumps(groups, indent=2, ensure_ascii=False)
        for key, filename in AUX_FILES.items():
            files[self.state_dir / filename] = json.dumps(self.aux.get(key, {}), indent=2, ensure_ascii=False)
        removed = [
            self.history_dir / f"{history_id}.json"
            for history_id in self._removed
            if history_id not in self.chat_histories and is_safe_history_id(history_id)
        ]
        self._removed.clear()
        return files, removed

    def _write_files(self, files: Dict[Path, str], removed: List[Path]) -> None:
        self.history_dir.mkdir(parents=True, exist_ok=True)
        for path, text in files.items():
            _write_atomic(path, text)
        for path in removed:
            path.unlink(missing_ok=True)

    async def _write_snapshot(self) -> None:
        # Serialise on the loop so the worker thread only sees immutable strings.
        files, removed = self._snapshot()
        try:
            await asyncio.to_thread(self._write_files, files, removed)
        except OSError as exc:
            self.save_failures += 1
            # Retry the deletions on the next save.
            self._removed.update(path.stem for path in removed)
            logger.error("Error saving state to %s: %s", self.state_dir, exc)

    async def save(self) -> None:
        await self._flight.run()

    async def wait_idle(self) -> None:
        await self._flight.wait_idle()

    # ---- working memory ----

    def get_history(self, history_id: str) -> List[Dict[str, Any]]:
        combined: List[Dict[str, Any]] = []
        for entries in (self.chat_histories.get(history_id) or {}).values():
            if not isinstance(entries, list):
                continue
            for entry in entries:
                if not isinstance(entry, dict):
                    continue
                role = entry.get("role")
                combined.append(
                    {
                        "role": "model" if role == "assistant" else role,
                        "parts": entry.get("content") or [],
                    }
                )
        return combined

    async def append_turn(
        self,
        history_id: str,
        sub_id: str,
        user_parts: List[Dict[str, Any]],
        model_text: str,
    ) -> None:
        def mutate() -> None:
            groups = self.chat_histories.setdefault(str(history_id), {})
            entries = groups.setdefault(str(sub_id), [])
            entries.append({"role": "user", "content": list(user_parts)})
            entries.append({"role": "assistant", "content": [{"text": model_text}]})

        await self.update_and_save(mutate)

    async def clear_history(self, history_id: str) -> bool:
        def mutate() -> bool:
            existed = self.chat_histories.pop(str(history_id), None) is not None
            if existed:
                self._removed.add(str(history_id))
            return existed

        existed = await self.mutex.run_exclusive(mutate)
        if existed:
            await self.save()
        return existed

    def remove_file_data(self) -> int:
        """Strip `fileData` parts from every stored turn; returns parts removed."""
        removed = 0
        for groups in self.chat_histories.values():
            if not isinstance(groups, dict):
                continue
            for entries in groups.values():
                if not isinstance(entries, list):
                    continue
                for entry in entries:
                    content = entry.get("content") if isinstance(entry, dict) else None
                    if not isinstance(content, list):
                        continue
                    kept = []
                    for part in content:
                        if isinstance(part, dict) and "fileData" in part:
                            removed += 1
                            part = {key: value for key, value in part.items() if key != "fileData"}
                            if not part:
                                continue
                        kept.append(part)
                    entry["content"] = kept
        if removed:
            logger.info("Removed %s fileData part(s) from chat histories", removed)
        return removed

    async def update_and_save(self, mutator: Callable[[], Union[Any, Awaitable[Any]]]) -> Any:
        result = await self.mutex.run_exclusive(mutator)
        await self.save()
        return result
