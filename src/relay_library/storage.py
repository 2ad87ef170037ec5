# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Key-value persistence for the quota store and account registry.

Two slots are used (``accounts`` and ``quota_state``); each holds one JSON
document with its own ``schema_version``. Version checks are done by the
owners of the documents, this module only moves bytes.
"""

import asyncio
import copy
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional, Union

import aiofiles
from filelock import FileLock

lib_logger = logging.getLogger("relay_library")


class KeyValueStorage(ABC):
    """Async load/save of JSON documents by key."""

    @abstractmethod
    async def load(self, key: str) -> Optional[Dict[str, Any]]:
        """Return the stored document, or None if missing/unreadable."""

    @abstractmethod
    async def save(self, key: str, data: Dict[str, Any]) -> bool:
        """Store the document. Returns False if the write failed."""


class MemoryStorage(KeyValueStorage):
    """In-process storage, mainly for tests and ephemeral sessions."""

    def __init__(self, initial: Optional[Dict[str, Dict[str, Any]]] = None):
        self.data: Dict[str, Dict[str, Any]] = copy.deepcopy(initial or {})
        self.save_count = 0

    async def load(self, key: str) -> Optional[Dict[str, Any]]:
        value = self.data.get(key)
        return copy.deepcopy(value) if value is not None else None

    async def save(self, key: str, data: Dict[str, Any]) -> bool:
        # Round-trip through JSON so tests catch unserializable state
        self.data[key] = json.loads(json.dumps(data))
        self.save_count += 1
        return True


class JsonFileStorage(KeyValueStorage):
    """
    Stores each key as ``<directory>/<key>.json``.

    Features:
    - Async file I/O with aiofiles
    - Atomic writes (write to temp, then rename)
    - Cross-process locking with filelock
    """

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)
        self._save_lock = asyncio.Lock()

    def path_for(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def _file_lock(self, path: Path) -> FileLock:
        return FileLock(f"{path}.lock")

    async def load(self, key: str) -> Optional[Dict[str, Any]]:
        path = self.path_for(key)
        if not path.exists():
            lib_logger.debug(f"No stored {key} at {path}, starting fresh")
            return None

        try:
            with self._file_lock(path):
                async with aiofiles.open(path, "r", encoding="utf-8") as f:
                    content = await f.read()
            if not content.strip():
                return None
            data = json.loads(content)
        except json.JSONDecodeError as e:
            lib_logger.error(f"Failed to parse {path}: {e}")
            return None
        except OSError as e:
            lib_logger.error(f"Failed to read {path}: {e}")
            return None

        if not isinstance(data, dict):
            lib_logger.warning(f"Ignoring {path}: top-level value is not an object")
            return None
        return data

    async def save(self, key: str, data: Dict[str, Any]) -> bool:
        path = self.path_for(key)
        temp_path = path.with_suffix(".tmp")

        async with self._save_lock:
            try:
                content = json.dumps(data, indent=2)
                self.directory.mkdir(parents=True, exist_ok=True)
                with self._file_lock(path):
                    async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
                        await f.write(content)
                    # Atomic rename
                    temp_path.replace(path)
                return True
            except (OSError, TypeError, ValueError) as e:
                lib_logger.error(f"Failed to save {path}: {e}")
                return False
