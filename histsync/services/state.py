"""Small keyed state storage for engine bookkeeping (rate limiter ledgers).

``JSONFileStateStorage`` keeps one JSON document per key under a directory and
replaces files atomically so a crash mid-write never leaves a torn ledger.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any

logger = logging.getLogger("histsync.services.state")

_SAFE_KEY = re.compile(r"[^A-Za-z0-9_.-]")


class StateStorage:
    """Interface: async get/set of JSON-serializable values by key."""

    async def get(self, key: str) -> Any:
        raise NotImplementedError

    async def set(self, key: str, value: Any) -> None:
        raise NotImplementedError


class MemoryStateStorage(StateStorage):
    def __init__(self) -> None:
        self.data: dict[str, Any] = {}

    async def get(self, key: str) -> Any:
        return json.loads(self.data[key]) if key in self.data else None

    async def set(self, key: str, value: Any) -> None:
        self.data[key] = json.dumps(value)


class JSONFileStateStorage(StateStorage):
    """One ``<key>.json`` file per key under ``directory``."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        return self.directory / f"{_SAFE_KEY.sub('_', key)}.json"

    async def get(self, key: str) -> Any:
        """Return the stored value, or None when the key was never written.

        Raises:
            ValueError: If the file exists but is not valid JSON.
        """
        path = self._path(key)
        if not path.exists():
            return None
        with path.open("r", encoding="utf-8") as fh:
            return json.load(fh)

    async def set(self, key: str, value: Any) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(key)
        fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=f".{path.stem}-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(value, fh)
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
