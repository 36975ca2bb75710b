"""
Tests for the document stores.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from zinscribe.errors import LeaseConflict
from zinscribe.leases import LeaseManager
from zinscribe.store import InMemoryDocumentStore, JsonFileDocumentStore


class TestInMemoryDocumentStore:
    """Tests for the in-memory store."""

    def test_create_rejects_duplicate(self) -> None:
        store = InMemoryDocumentStore()
        store.create("jobs", "a", {"x": 1})
        with pytest.raises(KeyError):
            store.create("jobs", "a", {"x": 2})

    def test_returns_copies(self) -> None:
        """Test mutating a fetched document does not change the stored one."""
        store = InMemoryDocumentStore()
        store.put("jobs", "a", {"items": [1]})
        doc = store.get("jobs", "a")
        assert doc is not None
        doc["items"].append(2)
        assert store.get("jobs", "a") == {"items": [1]}

    def test_list_with_predicate(self) -> None:
        store = InMemoryDocumentStore()
        store.put("jobs", "a", {"status": "failed"})
        store.put("jobs", "b", {"status": "running"})
        assert store.list("jobs", lambda d: d["status"] == "failed") == [{"status": "failed"}]
        assert len(store.list("jobs")) == 2
        assert store.list("missing") == []

    def test_delete_missing_is_ignored(self) -> None:
        store = InMemoryDocumentStore()
        store.delete("jobs", "nope")
        assert store.get("jobs", "nope") is None


class TestJsonFileDocumentStore:
    """Tests for the JSON file store."""

    def test_persists_across_instances(self, tmp_path: Path) -> None:
        """Test a second store on the same file sees earlier writes."""
        path = tmp_path / "state" / "zinscribe.json"
        store = JsonFileDocumentStore(path)
        store.put("contexts", "c1", {"phase": "done"})

        reloaded = JsonFileDocumentStore(path)
        assert reloaded.get("contexts", "c1") == {"phase": "done"}

    def test_delete_is_persisted(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        store = JsonFileDocumentStore(path)
        store.put("leases", "a:0", {"holder_id": "x"})
        store.delete("leases", "a:0")
        assert json.loads(path.read_text()) == {"leases": {}}
        assert not path.with_suffix(".json.tmp").exists()

    def test_instances_share_state(self, tmp_path: Path) -> None:
        """Test writes from one store are visible to another already open on the file."""
        path = tmp_path / "state.json"
        gateway = JsonFileDocumentStore(path)
        cli = JsonFileDocumentStore(path)

        gateway.put("contexts", "c1", {"phase": "building"})
        cli.put("contexts", "c2", {"phase": "done"})

        assert gateway.get("contexts", "c2") == {"phase": "done"}
        assert json.loads(path.read_text())["contexts"].keys() == {"c1", "c2"}

    def test_transaction_is_reentrant(self, tmp_path: Path) -> None:
        store = JsonFileDocumentStore(tmp_path / "state.json")
        with store.transaction():
            store.put("jobs", "a", {"n": 1})
            with store.transaction():
                store.put("jobs", "b", {"n": 2})
        assert len(JsonFileDocumentStore(tmp_path / "state.json").list("jobs")) == 2

    def test_leases_conflict_across_instances(self, tmp_path: Path) -> None:
        """Test a lease taken through one store blocks a holder using another."""
        path = tmp_path / "state.json"
        first = LeaseManager(JsonFileDocumentStore(path))
        second = LeaseManager(JsonFileDocumentStore(path))

        first.acquire(["aa:0"], "ctx-gateway")
        with pytest.raises(LeaseConflict) as exc_info:
            second.acquire(["aa:0"], "ctx-cli")
        assert exc_info.value.holder_id == "ctx-gateway"
        assert LeaseManager(JsonFileDocumentStore(path)).holder_of("aa:0") == "ctx-gateway"
