"""
Unit tests for persistence backends and the write-through namespace handle.
"""

import json
from unittest.mock import MagicMock

import pytest

from sortengine.core.errors import PersistenceUnavailable
from sortengine.core.persistence import (
    JsonFilePersistence,
    MemoryPersistence,
    Namespace,
    create_persistence,
)


class TestMemoryPersistence:
    """Tests for the in-memory backend."""

    def setup_method(self):
        self.backend = MemoryPersistence()

    def test_set_get_delete(self):
        """Values round-trip and can be deleted."""
        self.backend.set("ns", "a", {"value": 1})
        assert self.backend.get("ns", "a") == {"value": 1}

        self.backend.delete("ns", "a")
        assert self.backend.get("ns", "a") is None

    def test_namespaces_are_isolated(self):
        """Same key in different namespaces does not collide."""
        self.backend.set("one", "k", {"v": 1})
        self.backend.set("two", "k", {"v": 2})
        assert self.backend.get("one", "k") == {"v": 1}
        assert self.backend.get("two", "k") == {"v": 2}

    def test_scan_lists_namespace(self):
        """Scan returns every key of a namespace."""
        self.backend.set("ns", "a", {"v": 1})
        self.backend.set("ns", "b", {"v": 2})
        assert sorted(k for k, _ in self.backend.scan("ns")) == ["a", "b"]
        assert self.backend.scan("missing") == []


class TestJsonFilePersistence:
    """Tests for the JSON file backend."""

    def test_writes_one_file_per_namespace(self, tmp_path):
        """Each namespace lives in <namespace>.json."""
        backend = JsonFilePersistence(str(tmp_path))
        backend.set("prototypes", "p1", {"category_path": "Work"})

        with open(tmp_path / "prototypes.json", encoding="utf-8") as f:
            assert json.load(f) == {"p1": {"category_path": "Work"}}

    def test_data_survives_new_instance(self, tmp_path):
        """A fresh backend on the same directory sees earlier writes."""
        JsonFilePersistence(str(tmp_path)).set("ns", "k", {"v": 42})
        assert JsonFilePersistence(str(tmp_path)).get("ns", "k") == {"v": 42}

    def test_corrupt_file_raises(self, tmp_path):
        """Unreadable JSON surfaces as PersistenceUnavailable."""
        (tmp_path / "ns.json").write_text("{not json", encoding="utf-8")
        backend = JsonFilePersistence(str(tmp_path))
        with pytest.raises(PersistenceUnavailable):
            backend.scan("ns")

    def test_unwritable_directory_raises(self, tmp_path):
        """A directory that cannot be created surfaces as PersistenceUnavailable."""
        blocker = tmp_path / "blocker"
        blocker.write_text("", encoding="utf-8")
        backend = JsonFilePersistence(str(blocker / "data"))
        with pytest.raises(PersistenceUnavailable):
            backend.set("ns", "k", {"v": 1})


class TestNamespace:
    """Tests for the write-through handle."""

    def test_without_backend_is_noop(self):
        """No backend means memory-only."""
        handle = Namespace(None, "ns")
        handle.save("k", {"v": 1})
        assert handle.load_all() == []
        assert handle.enabled is False

    def test_failure_disables_handle(self):
        """A failing backend is switched off after the first error."""
        backend = MagicMock()
        backend.set.side_effect = PersistenceUnavailable("disk full")
        handle = Namespace(backend, "ns")

        handle.save("k", {"v": 1})
        handle.save("k2", {"v": 2})

        assert handle.enabled is False
        assert backend.set.call_count == 1

    def test_scan_failure_returns_empty(self):
        """Load failures degrade to an empty store."""
        backend = MagicMock()
        backend.scan.side_effect = PersistenceUnavailable("gone")
        handle = Namespace(backend, "ns")
        assert handle.load_all() == []
        assert handle.enabled is False


class TestCreatePersistence:
    def test_default_is_memory(self):
        assert isinstance(create_persistence(), MemoryPersistence)

    def test_json_backend(self, tmp_path):
        backend = create_persistence({"backend": "json", "directory": str(tmp_path)})
        assert isinstance(backend, JsonFilePersistence)
        assert backend.directory == str(tmp_path)
