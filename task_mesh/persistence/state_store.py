"""
Key/value state stores backing the agent registry.

The registry only needs get/save/delete of JSON values with no cross-key
transactions, so any backend offering those three operations will do.
"""

import asyncio
import copy
import json
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import quote, unquote

import aiofiles

from ..utils.logging import get_logger

logger = get_logger(__name__)


class StateStore(ABC):
    """Minimal asynchronous key/value store."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Return the stored JSON value, or None when absent."""

    @abstractmethod
    async def save(self, key: str, value: Any) -> None:
        """Store a JSON-serializable value under ``key``."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove ``key``; absent keys are ignored."""

    async def close(self) -> None:
        return None


class InMemoryStateStore(StateStore):
    """Process-local store; values are deep-copied on the way in and out."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = copy.deepcopy(initial or {})

    async def get(self, key: str) -> Optional[Any]:
        value = self._data.get(key)
        return copy.deepcopy(value)

    async def save(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self):
        return list(self._data.keys())


class FileStateStore(StateStore):
    """
    Stores each key as a JSON file in a directory.

    Writes go to a temporary file first and are renamed into place, so a
    crash never leaves a half-written value behind.
    """

    def __init__(self, storage_path: Optional[str] = None):
        """
        Initialize the file store.

        Args:
            storage_path: Directory for value files. Defaults to ./data/agent-state
        """
        self.storage_path = Path(storage_path or "./data/agent-state")
        self._lock = asyncio.Lock()
        self._initialized = False

    async def initialize(self):
        """Create the storage directory if needed."""
        self.storage_path.mkdir(parents=True, exist_ok=True)
        self._initialized = True
        logger.info(f"Initialized file state store at {self.storage_path}")

    def _path_for(self, key: str) -> Path:
        return self.storage_path / f"{quote(key, safe='')}.json"

    @staticmethod
    def key_for(path: Path) -> str:
        return unquote(path.stem)

    async def get(self, key: str) -> Optional[Any]:
        path = self._path_for(key)
        if not path.exists():
            return None

        async with self._lock:
            async with aiofiles.open(path, 'r', encoding='utf-8') as f:
                content = await f.read()

        data = json.loads(content)
        return data.get("value")

    async def save(self, key: str, value: Any) -> None:
        if not self._initialized:
            await self.initialize()

        path = self._path_for(key)
        document = {
            "value": value,
            "_metadata": {"saved_at": datetime.now().isoformat(), "version": "1.0"},
        }

        async with self._lock:
            temp_file = path.with_suffix('.tmp')
            async with aiofiles.open(temp_file, 'w', encoding='utf-8') as f:
                await f.write(json.dumps(document, ensure_ascii=False))
            temp_file.replace(path)

        logger.debug(f"Saved state key {key} to {path}")

    async def delete(self, key: str) -> None:
        path = self._path_for(key)
        async with self._lock:
            if path.exists():
                path.unlink()
                logger.debug(f"Deleted state key {key}")
