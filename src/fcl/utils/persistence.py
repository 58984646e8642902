from __future__ import annotations

import copy
import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional, Union

logger = logging.getLogger("fcl")

PARAMETER_STATE_KEY = "parameter_state"
CONSOLIDATED_ADVICE_KEY = "consolidated_advice"
ADVICE_HISTORY_KEY = "advice_history"
MANUAL_ADJUSTMENTS_KEY = "manual_adjustments"


class PersistentKeyValueStore(ABC):
    """Loads and saves JSON-compatible documents by key."""

    @abstractmethod
    def load(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    def save(self, key: str, value: Any) -> None:
        ...

    def save_quietly(self, key: str, value: Any) -> bool:
        """Save, logging instead of raising on I/O errors."""
        try:
            self.save(key, value)
        except (OSError, TypeError, ValueError) as exc:
            logger.warning("Could not persist '%s': %s", key, exc)
            return False
        return True


class InMemoryStore(PersistentKeyValueStore):
    def __init__(self) -> None:
        self._data: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def load(self, key: str) -> Optional[Any]:
        with self._lock:
            value = self._data.get(key)
        return copy.deepcopy(value)

    def save(self, key: str, value: Any) -> None:
        # Serialize to catch non-JSON payloads the same way the file store would.
        payload = json.loads(json.dumps(value))
        with self._lock:
            self._data[key] = payload


class JsonFileStore(PersistentKeyValueStore):
    """One JSON document per key inside a directory."""

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory).expanduser()
        self.directory.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def load(self, key: str) -> Optional[Any]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text())
        except json.JSONDecodeError as exc:
            logger.warning("Ignoring unreadable store file %s: %s", path, exc)
            return None

    def save(self, key: str, value: Any) -> None:
        path = self._path(key)
        tmp_path = path.with_suffix(".json.tmp")
        with self._lock:
            tmp_path.write_text(json.dumps(value, indent=2, sort_keys=True))
            os.replace(tmp_path, path)
