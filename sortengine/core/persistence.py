"""
Keyed persistence for the engine's stores.

Values are JSON-compatible dicts addressed by (namespace, key). Stores are
in-memory first and write through a `Namespace`; when the backend fails
the namespace logs once and the store carries on memory-only.
"""

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from .errors import PersistenceUnavailable

logger = logging.getLogger(__name__)

Record = Dict[str, Any]


class PersistenceBackend(ABC):
    """Opaque keyed store. Implementations raise PersistenceUnavailable on I/O failure."""

    @abstractmethod
    def get(self, namespace: str, key: str) -> Optional[Record]:
        pass

    @abstractmethod
    def set(self, namespace: str, key: str, value: Record) -> None:
        pass

    @abstractmethod
    def delete(self, namespace: str, key: str) -> None:
        pass

    @abstractmethod
    def scan(self, namespace: str) -> List[Tuple[str, Record]]:
        """All (key, value) pairs in a namespace."""
        pass


class MemoryPersistence(PersistenceBackend):
    """Process-local backend; the default."""

    def __init__(self):
        self._data: Dict[str, Dict[str, Record]] = {}
        self._lock = threading.Lock()

    def get(self, namespace: str, key: str) -> Optional[Record]:
        with self._lock:
            value = self._data.get(namespace, {}).get(key)
            return dict(value) if value is not None else None

    def set(self, namespace: str, key: str, value: Record) -> None:
        with self._lock:
            self._data.setdefault(namespace, {})[key] = dict(value)

    def delete(self, namespace: str, key: str) -> None:
        with self._lock:
            self._data.get(namespace, {}).pop(key, None)

    def scan(self, namespace: str) -> List[Tuple[str, Record]]:
        with self._lock:
            return [(k, dict(v)) for k, v in self._data.get(namespace, {}).items()]


class JsonFilePersistence(PersistenceBackend):
    """
    One JSON file per namespace under a directory.

    Each namespace is loaded on first access and rewritten in full on
    every mutation (temp file + rename).
    """

    def __init__(self, directory: Optional[str] = None):
        self.directory = directory or os.path.expanduser("~/.sortengine/data")
        self._namespaces: Dict[str, Dict[str, Record]] = {}
        self._lock = threading.Lock()

    def _path(self, namespace: str) -> str:
        return os.path.join(self.directory, f"{namespace}.json")

    def _load(self, namespace: str) -> Dict[str, Record]:
        if namespace in self._namespaces:
            return self._namespaces[namespace]
        path = self._path(namespace)
        data: Dict[str, Record] = {}
        if os.path.exists(path):
            try:
                with open(path, "r", encoding="utf-8") as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                raise PersistenceUnavailable(f"Cannot read {path}: {e}") from e
        self._namespaces[namespace] = data
        return data

    def _flush(self, namespace: str) -> None:
        path = self._path(namespace)
        tmp_path = path + ".tmp"
        try:
            os.makedirs(self.directory, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(self._namespaces[namespace], f)
            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceUnavailable(f"Cannot write {path}: {e}") from e

    def get(self, namespace: str, key: str) -> Optional[Record]:
        with self._lock:
            value = self._load(namespace).get(key)
            return dict(value) if value is not None else None

    def set(self, namespace: str, key: str, value: Record) -> None:
        with self._lock:
            self._load(namespace)[key] = dict(value)
            self._flush(namespace)

    def delete(self, namespace: str, key: str) -> None:
        with self._lock:
            data = self._load(namespace)
            if data.pop(key, None) is not None:
                self._flush(namespace)

    def scan(self, namespace: str) -> List[Tuple[str, Record]]:
        with self._lock:
            return [(k, dict(v)) for k, v in self._load(namespace).items()]


class Namespace:
    """
    Write-through handle a store holds on one namespace.

    Swallows PersistenceUnavailable after logging it and switches the
    handle off, so the owning store degrades to memory-only.
    """

    def __init__(self, backend: Optional[PersistenceBackend], name: str):
        self.backend = backend
        self.name = name
        self.enabled = backend is not None

    def _disable(self, action: str, error: Exception) -> None:
        logger.warning(
            f"Persistence unavailable for '{self.name}' ({action}): {error}. "
            "Continuing memory-only."
        )
        self.enabled = False

    def load_all(self) -> List[Tuple[str, Record]]:
        if not self.enabled:
            return []
        try:
            return self.backend.scan(self.name)
        except PersistenceUnavailable as e:
            self._disable("scan", e)
            return []

    def save(self, key: str, value: Record) -> None:
        if not self.enabled:
            return
        try:
            self.backend.set(self.name, key, value)
        except PersistenceUnavailable as e:
            self._disable("write", e)

    def remove(self, key: str) -> None:
        if not self.enabled:
            return
        try:
            self.backend.delete(self.name, key)
        except PersistenceUnavailable as e:
            self._disable("delete", e)


def create_persistence(config: Optional[Dict] = None) -> PersistenceBackend:
    """
    Build a backend from the `persistence` config section.

    Args:
        config: Configuration with:
            - backend: 'memory' (default) or 'json'
            - directory: Data directory for the json backend
    """
    config = config or {}
    backend = config.get("backend", "memory")
    if backend == "json":
        return JsonFilePersistence(config.get("directory"))
    if backend != "memory":
        logger.warning(f"Unknown persistence backend '{backend}', using memory")
    return MemoryPersistence()
