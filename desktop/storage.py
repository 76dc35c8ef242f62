"""
Durable on-device storage: one JSON file per logical collection.

Reads are defensive (a missing or corrupt file reads as the default);
writes go through a temp file and `os.replace` and raise StorageError on
failure.
"""

import json
import logging
import os
import tempfile
import threading
from pathlib import Path

from .errors import StorageError

logger = logging.getLogger(__name__)


class LocalStore:
    def __init__(self, root: Path):
        self.root = Path(root)
        self._lock = threading.RLock()

    def _path(self, name: str) -> Path:
        return self.root / f"{name}.json"

    def read(self, name: str, default):
        path = self._path(name)
        with self._lock:
            if not path.exists():
                return default
            try:
                with open(path, "r", encoding="utf-8") as f:
                    data = json.load(f)
            except (json.JSONDecodeError, OSError, UnicodeDecodeError) as exc:
                logger.warning("Ignoring unreadable %s: %s", path.name, exc)
                return default
        if default is not None and not isinstance(data, type(default)):
            logger.warning("Ignoring %s: expected %s", path.name, type(default).__name__)
            return default
        return data

    def write(self, name: str, value) -> None:
        path = self._path(name)
        with self._lock:
            try:
                self.root.mkdir(parents=True, exist_ok=True)
                fd, tmp = tempfile.mkstemp(dir=self.root, prefix=f".{name}.", suffix=".tmp")
                try:
                    with os.fdopen(fd, "w", encoding="utf-8") as f:
                        json.dump(value, f, indent=2)
                    os.replace(tmp, path)
                except BaseException:
                    if os.path.exists(tmp):
                        os.unlink(tmp)
                    raise
            except (OSError, TypeError, ValueError) as exc:
                logger.error("Could not write %s: %s", path.name, exc)
                raise StorageError() from exc

    def remove(self, name: str) -> None:
        with self._lock:
            try:
                self._path(name).unlink(missing_ok=True)
            except OSError as exc:
                raise StorageError() from exc

    @property
    def lock(self) -> threading.RLock:
        return self._lock
