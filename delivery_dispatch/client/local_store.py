"""
Durable Local Store with Concurrency Control

One JSON document per client holding:
- the pending mutation queue
- permanently failed mutations awaiting dismissal
- the read cache

Every read and write happens under a file lock, so a second process
(or a restarted app) never sees a half-written document.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

from filelock import FileLock, Timeout

logger = logging.getLogger(__name__)


class LocalStoreUnavailable(Exception):
    """The local store file lock could not be acquired in time."""


def empty_state() -> dict[str, Any]:
    return {"queue": [], "failures": [], "cache": {}}


class LocalStore:
    """File-backed key-value document for the offline sync agent."""

    def __init__(self, directory: str | Path, name: str = "sync", lock_timeout: float = 30):
        self.directory = Path(directory)
        self.path = self.directory / f"{name}.json"
        self.lock_timeout = lock_timeout
        self._lock = FileLock(str(self.directory / f"{name}.json.lock"), timeout=lock_timeout)

    def _ensure_dir(self) -> None:
        if not self.directory.exists():
            self.directory.mkdir(parents=True, exist_ok=True)
            logger.info(f"Created data directory: {self.directory}")

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return empty_state()
        try:
            with self.path.open("r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError) as e:
            logger.warning(f"Error reading {self.path}: {e}")
            return empty_state()

        state = empty_state()
        if isinstance(data, dict):
            state.update({k: v for k, v in data.items() if k in state})
        return state

    def _write(self, state: dict[str, Any]) -> None:
        tmp_path = self.path.with_suffix(".json.tmp")
        with tmp_path.open("w", encoding="utf-8") as fh:
            json.dump(state, fh, default=str)
        os.replace(tmp_path, self.path)

    def load(self) -> dict[str, Any]:
        """Read the whole document (empty sections when the file is new)."""
        self._ensure_dir()
        try:
            with self._lock:
                return self._read()
        except Timeout:
            logger.error(f"Lock timeout reading {self.path}")
            raise LocalStoreUnavailable(f"Lock timeout ({self.lock_timeout}s)")

    def save(
        self,
        queue: Optional[list] = None,
        failures: Optional[list] = None,
        cache: Optional[dict] = None,
    ) -> None:
        """
        Replace the given sections; sections passed as None are kept.
        """
        self._ensure_dir()
        try:
            with self._lock:
                state = self._read()
                if queue is not None:
                    state["queue"] = queue
                if failures is not None:
                    state["failures"] = failures
                if cache is not None:
                    state["cache"] = cache
                self._write(state)
                logger.debug(
                    f"Saved {len(state['queue'])} queued, "
                    f"{len(state['failures'])} failed, {len(state['cache'])} cached"
                )
        except Timeout:
            logger.error(f"Lock timeout writing {self.path}")
            raise LocalStoreUnavailable(f"Lock timeout ({self.lock_timeout}s)")

    def clear(self) -> None:
        self.save(queue=[], failures=[], cache={})
