"""Per-character persistence of the refinement iteration history.

Only the snapshot list is persisted; pipeline results live in memory. Each
character gets one JSON file:

    {base}/history/character_tools_history_<hash>.json
      {"character_name", "character_avatar", "history": [...], "saved_at"}

The key hashes "avatar::name" (djb2, base36) so names that differ only in
characters a filename can't hold don't collide. The stored name and avatar
are checked on load. A missing file, a mismatch or an unreadable file all
load as None.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, ValidationError

from .models import Character, IterationSnapshot, utc_now

logger = logging.getLogger(__name__)

KEY_PREFIX = "character_tools_history_"

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


class HistoryStore(Protocol):
    async def save(self, character: Character, history: list[IterationSnapshot]) -> bool: ...

    async def load(self, character: Character) -> list[IterationSnapshot] | None: ...

    async def clear(self, character: Character) -> bool: ...


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def hash_string(text: str) -> str:
    """djb2 (xor variant) over UTF-16 code units, unsigned 32-bit, base36."""
    h = 5381
    data = text.encode("utf-16-le")
    for i in range(0, len(data), 2):
        unit = data[i] | (data[i + 1] << 8)
        h = (((h << 5) + h) ^ unit) & 0xFFFFFFFF
    return _to_base36(h)


def character_key(character: Character) -> str:
    return KEY_PREFIX + hash_string(f"{character.avatar}::{character.name}")


class StoredHistory(BaseModel):
    character_name: str
    character_avatar: str
    history: list[IterationSnapshot]
    saved_at: str


class JsonHistoryStore:
    def __init__(self, base_path: Path) -> None:
        self._dir = base_path / "history"
        self._dir.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self._dir / f"{key}.json"

    async def save(self, character: Character, history: list[IterationSnapshot]) -> bool:
        key = character_key(character)
        blob = StoredHistory(
            character_name=character.name,
            character_avatar=character.avatar,
            history=history,
            saved_at=utc_now(),
        )
        try:
            self._path(key).write_text(blob.model_dump_json(indent=2), encoding="utf-8")
        except OSError as e:
            logger.error("failed to save iteration history key=%s: %s", key, e)
            return False
        logger.info("iteration history saved name=%s len=%d", character.name, len(history))
        return True

    async def load(self, character: Character) -> list[IterationSnapshot] | None:
        key = character_key(character)
        path = self._path(key)
        if not path.is_file():
            logger.debug("no iteration history key=%s", key)
            return None
        try:
            blob = StoredHistory.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, ValidationError) as e:
            logger.error("failed to load iteration history key=%s: %s", key, e)
            return None

        if blob.character_name != character.name or blob.character_avatar != character.avatar:
            logger.info(
                "iteration history mismatch key=%s stored=%s current=%s",
                key, blob.character_name, character.name,
            )
            return None

        logger.info("iteration history loaded name=%s len=%d", character.name, len(blob.history))
        return blob.history

    async def clear(self, character: Character) -> bool:
        key = character_key(character)
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as e:
            logger.error("failed to clear iteration history key=%s: %s", key, e)
            return False
        return True

    async def list_keys(self) -> list[str]:
        return sorted(p.stem for p in self._dir.glob(f"{KEY_PREFIX}*.json"))

    async def clear_all(self) -> int:
        cleared = 0
        for key in await self.list_keys():
            try:
                self._path(key).unlink()
                cleared += 1
            except OSError as e:
                logger.error("failed to clear history key=%s: %s", key, e)
        logger.info("all iteration history cleared count=%d", cleared)
        return cleared

