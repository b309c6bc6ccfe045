"""Tests for the document store layer and its initialization."""

from unittest.mock import MagicMock

import pytest

from safezone.config import firebase
from safezone.stores import FirestoreDocumentStore, InMemoryDocumentStore


@pytest.fixture(autouse=True)
def fresh_store():
    firebase.reset_store()
    yield
    firebase.reset_store()


class TestInMemoryStore:

    def test_documents_are_copied(self):
        store = InMemoryDocumentStore()
        doc = {"id": "a", "tags": ["x"]}
        store.put("things", "a", doc)
        doc["tags"].append("mutated")
        fetched = store.get("things", "a")
        assert fetched["tags"] == ["x"]
        fetched["tags"].append("again")
        assert store.get("things", "a")["tags"] == ["x"]

    def test_query_filters_and_count(self):
        store = InMemoryDocumentStore()
        store.put("cases", "1", {"status": "active"})
        store.put("cases", "2", {"status": "closed"})
        assert store.query("cases", {"status": "closed"}) == [{"status": "closed"}]
        assert store.count("cases") == 2
        assert store.delete("cases", "1") is True
        assert store.delete("cases", "1") is False
        assert store.count("cases") == 1


class TestFirestoreStore:

    def test_put_and_get_use_collection_documents(self):
        db = MagicMock()
        snapshot = db.collection.return_value.document.return_value.get.return_value
        snapshot.exists = True
        snapshot.to_dict.return_value = {"id": "gf_1"}

        store = FirestoreDocumentStore(db)
        store.put("geofences", "gf_1", {"id": "gf_1"})
        assert store.get("geofences", "gf_1") == {"id": "gf_1"}

        db.collection.assert_called_with("geofences")
        db.collection.return_value.document.assert_called_with("gf_1")
        db.collection.return_value.document.return_value.set.assert_called_once_with({"id": "gf_1"})

    def test_query_chains_equality_filters(self):
        db = MagicMock()
        collection = db.collection.return_value
        filtered = collection.where.return_value.where.return_value
        doc = MagicMock()
        doc.to_dict.return_value = {"case_id": "CASE-1"}
        filtered.stream.return_value = [doc]

        results = FirestoreDocumentStore(db).query("cases", {"status": "active", "archived": False})

        assert results == [{"case_id": "CASE-1"}]
        collection.where.assert_called_once_with("status", "==", "active")
        collection.where.return_value.where.assert_called_once_with("archived", "==", False)

    def test_missing_document(self):
        db = MagicMock()
        db.collection.return_value.document.return_value.get.return_value.exists = False
        assert FirestoreDocumentStore(db).get("cases", "nope") is None


class TestStoreInitialization:

    def test_mock_db_uses_memory_store(self, config):
        store = firebase.initialize_store(config)
        assert isinstance(store, InMemoryDocumentStore)
        assert firebase.get_store() is store

    def test_missing_credentials_file_fails_fast(self, config, monkeypatch, tmp_path):
        monkeypatch.setattr(firebase.firebase_admin, "_apps", {})
        real = config.model_copy(update={
            "USE_MOCK_DB": False,
            "FIREBASE_CREDENTIALS_PATH": str(tmp_path / "missing.json"),
        })
        with pytest.raises(RuntimeError, match="invalid credentials"):
            firebase.initialize_store(real)
        assert firebase.store is None
