"""Key-value persistence backends used by the message history.

Values must be JSON serializable. Both backends keep each value as encoded
JSON text so callers always receive a fresh copy from ``get``.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

import aiofiles
import aiofiles.os

logger = logging.getLogger(__name__)


def _encode(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


class KeyValueStore(Protocol):
    def get(self, key: str, default: Any = None) -> Any: ...

    async def update(self, key: str, value: Any) -> None: ...


class MemoryKeyValueStore:
    """Process-local store."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None) -> None:
        self._encoded: Dict[str, str] = {key: _encode(value) for key, value in (initial or {}).items()}

    def get(self, key: str, default: Any = None) -> Any:
        text = self._encoded.get(key)
        if text is None:
            return default
        return json.loads(text)

    async def update(self, key: str, value: Any) -> None:
        if value is None:
            self._encoded.pop(key, None)
        else:
            self._encoded[key] = _encode(value)


class JsonFileKeyValueStore:
    """Store every key in a single JSON document on disk.

    The document is read once at construction; reads are served from memory
    and every update rewrites the file through a temporary sibling.
    """

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = Path(path).expanduser()
        self._encoded: Dict[str, str] = {key: _encode(value) for key, value in self._load().items()}

    def _load(self) -> Dict[str, Any]:
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError):
            logger.warning("history file %s unreadable; starting empty", self.path, exc_info=True)
            return {}
        if not isinstance(data, dict):
            logger.warning("history file %s does not hold an object; starting empty", self.path)
            return {}
        return data

    def get(self, key: str, default: Any = None) -> Any:
        text = self._encoded.get(key)
        if text is None:
            return default
        return json.loads(text)

    async def update(self, key: str, value: Any) -> None:
        encoded = dict(self._encoded)
        if value is None:
            encoded.pop(key, None)
        else:
            encoded[key] = _encode(value)
        document = "{" + ", ".join(f"{json.dumps(k)}: {v}" for k, v in encoded.items()) + "}"
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as handle:
            await handle.write(document)
        await aiofiles.os.replace(tmp_path, self.path)
        self._encoded = encoded


__all__ = ["JsonFileKeyValueStore", "KeyValueStore", "MemoryKeyValueStore"]
