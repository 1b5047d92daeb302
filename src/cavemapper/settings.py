"""
Persisted survey settings.

The selected detection method and the last calibrated parameters for
each method must survive a restart. The coordinator only needs load/save
hooks; where the values live is up to the KeyValueStore handed to it.
"""

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Protocol

logger = logging.getLogger("cavemapper.settings")

# Keys, matching the names the survey app stored them under
KEY_METHOD = "detectionMethod"
KEY_ROTATION_COUNT = "rotationCount"
KEY_CIRCUMFERENCE = "wheelCircumference"
KEY_PARAMETERS_PREFIX = "calibration."


def parameters_key(method_value: str) -> str:
    """Store key holding the calibrated parameters for one method."""
    return f"{KEY_PARAMETERS_PREFIX}{method_value}"


class KeyValueStore(Protocol):
    """Minimal storage interface for persisted state."""

    def get(self, key: str, default: Any = None) -> Any:
        ...

    def set(self, key: str, value: Any) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def update(self, values: Mapping[str, Any], removed: Iterable[str] = ()) -> None:
        """Set several keys and delete others as one write."""
        ...


class MemoryStore:
    """In-process store, for tests and --no-persist runs."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = dict(initial or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def update(self, values: Mapping[str, Any], removed: Iterable[str] = ()) -> None:
        self._data.update(values)
        for key in removed:
            self._data.pop(key, None)

    def as_dict(self) -> Dict[str, Any]:
        return dict(self._data)


class JsonFileStore:
    """
    Key-value store backed by a single JSON file.

    The whole file is rewritten on every change, so callers saving
    several keys should use `update`. Writes go through a temporary file so a crash mid-write leaves the previous file intact.
    """

    DEFAULT_PATH = Path.home() / ".cavemapper" / "settings.json"

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else self.DEFAULT_PATH
        self._lock = threading.Lock()
        self._data = self._read()

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring unreadable settings file {self.path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Ignoring settings file {self.path}: expected an object")
            return {}
        return data

    def _write(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w") as f:
            json.dump(self._data, f, indent=2, sort_keys=True)
        os.replace(tmp_path, self.path)

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value
            self._write()

    def delete(self, key: str) -> None:
        with self._lock:
            if key in self._data:
                del self._data[key]
                self._write()

    def update(self, values: Mapping[str, Any], removed: Iterable[str] = ()) -> None:
        with self._lock:
            before = dict(self._data)
            self._data.update(values)
            for key in removed:
                self._data.pop(key, None)
            if self._data != before:
                self._write()

    def reload(self):
        """Re-read the file, discarding in-memory values."""
        with self._lock:
            self._data = self._read()
