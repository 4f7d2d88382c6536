"""JSON-file backed repository.

All data lives in one state file. Every mutation rewrites the file atomically
(temp file, then rename), and an ``asyncio.Lock`` serialises the writers.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

from .memory import InMemoryReviewRepository

logger = logging.getLogger(__name__)


class JsonFileReviewRepository(InMemoryReviewRepository):
    VERSION = 1

    def __init__(self, state_file: str | Path) -> None:
        super().__init__()
        self.state_file = Path(state_file)
        self._lock: asyncio.Lock | None = None
        self._lock_loop: asyncio.AbstractEventLoop | None = None
        self._load()

    def _load(self) -> None:
        if not self.state_file.exists():
            return
        try:
            with open(self.state_file, "r", encoding="utf-8") as f:
                loaded = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Could not load state file %s: %s", self.state_file, e)
            return
        if loaded.get("version") != self.VERSION:
            logger.warning("State file version mismatch in %s, starting fresh", self.state_file)
            return
        self.restore(loaded)

    def _get_lock(self) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        if self._lock is None or self._lock_loop is not loop:
            self._lock = asyncio.Lock()
            self._lock_loop = loop
        return self._lock

    async def _changed(self) -> None:
        async with self._get_lock():
            data = self.snapshot()
            await asyncio.to_thread(self._write, data)

    def _write(self, data: dict[str, Any]) -> None:
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        temp_file = self.state_file.with_suffix(".tmp")
        try:
            with open(temp_file, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            temp_file.replace(self.state_file)
        except OSError as e:
            logger.error("Error writing to %s: %s", self.state_file, e)
            if temp_file.exists():
                temp_file.unlink()
            raise
