"""
Tests for the blob store backends.

Covers:
  - InMemoryBlobStore
  - FileBlobStore (JSON file persistence)
  - Store factory
"""
import json
import os
import shutil
import tempfile
import pytest

from database.store_base import BlobStoreError


@pytest.fixture
def sample_blob():
    return {
        "abc": {
            "conversation_id": "abc",
            "last_inbound_timestamp": "2024-03-01T10:00:00+00:00",
            "engagement_count": 3,
        },
        "xyz": {"conversation_id": "xyz", "engagement_count": 0},
    }


# ──────────────────────────────────────────────────────────────
#  InMemoryBlobStore
# ──────────────────────────────────────────────────────────────

class TestInMemoryBlobStore:
    @pytest.fixture
    def store(self):
        from database.store_memory import InMemoryBlobStore
        return InMemoryBlobStore()

    def test_save_and_load(self, store, sample_blob):
        store.save("cache", sample_blob)
        assert store.load("cache") == sample_blob

    def test_load_missing_returns_none(self, store):
        assert store.load("nope") is None

    def test_loaded_value_is_independent(self, store, sample_blob):
        store.save("cache", sample_blob)
        loaded = store.load("cache")
        loaded["abc"]["engagement_count"] = 100
        assert store.load("cache")["abc"]["engagement_count"] == 3

    def test_delete(self, store, sample_blob):
        store.save("cache", sample_blob)
        store.delete("cache")
        store.delete("cache")
        assert store.load("cache") is None
        assert store.keys() == []

    def test_unserializable_value_raises(self, store):
        with pytest.raises(BlobStoreError):
            store.save("cache", {"when": object()})


# ──────────────────────────────────────────────────────────────
#  FileBlobStore
# ──────────────────────────────────────────────────────────────

class TestFileBlobStore:
    @pytest.fixture
    def data_dir(self):
        d = tempfile.mkdtemp(prefix="engagement_test_")
        yield d
        shutil.rmtree(d, ignore_errors=True)

    @pytest.fixture
    def store(self, data_dir):
        from database.store_file import FileBlobStore
        return FileBlobStore(data_dir=data_dir)

    def test_save_and_load(self, store, sample_blob):
        store.save("cache", sample_blob)
        assert store.load("cache") == sample_blob

    def test_survives_new_instance(self, data_dir, store, sample_blob):
        from database.store_file import FileBlobStore
        store.save("cache", sample_blob)
        assert FileBlobStore(data_dir=data_dir).load("cache") == sample_blob

    def test_file_layout(self, data_dir, store, sample_blob):
        store.save("whatsapp_user_engagement_cache", sample_blob)
        path = os.path.join(data_dir, "whatsapp_user_engagement_cache.json")
        assert os.path.exists(path)
        with open(path) as f:
            assert json.load(f) == sample_blob
        assert not os.path.exists(path.replace(".json", ".tmp"))

    def test_unsafe_key_is_sanitized(self, data_dir, store):
        store.save("../escape/key", {"a": 1})
        assert store.load("../escape/key") == {"a": 1}
        assert all(os.sep not in name for name in os.listdir(data_dir))
        assert not os.path.exists(os.path.join(os.path.dirname(data_dir), "escape"))

    def test_corrupt_file_raises(self, data_dir, store):
        with open(os.path.join(data_dir, "cache.json"), "w") as f:
            f.write("{broken")
        with pytest.raises(BlobStoreError):
            store.load("cache")

    def test_delete(self, store, sample_blob):
        store.save("cache", sample_blob)
        store.delete("cache")
        store.delete("cache")
        assert store.load("cache") is None


# ──────────────────────────────────────────────────────────────
#  Store factory
# ──────────────────────────────────────────────────────────────

class TestStoreFactory:
    def test_default_is_memory(self):
        from database.store_factory import create_store
        from database.store_memory import InMemoryBlobStore
        assert isinstance(create_store(), InMemoryBlobStore)

    def test_file_backend(self, tmp_path):
        from config.settings import StorageConfig
        from database.store_factory import create_store
        from database.store_file import FileBlobStore
        store = create_store(StorageConfig(backend="file", file_dir=str(tmp_path)))
        assert isinstance(store, FileBlobStore)

    def test_each_call_follows_its_config(self, tmp_path):
        from config.settings import StorageConfig
        from database.store_factory import create_store
        from database.store_file import FileBlobStore
        from database.store_memory import InMemoryBlobStore
        first = create_store(StorageConfig(backend="memory"))
        second = create_store(StorageConfig(backend="file", file_dir=str(tmp_path)))
        assert isinstance(first, InMemoryBlobStore)
        assert isinstance(second, FileBlobStore)
        assert create_store() is not first

    def test_unknown_backend_rejected(self):
        from config.settings import StorageConfig
        from database.store_factory import create_store
        with pytest.raises(ValueError):
            create_store(StorageConfig(backend="redis"))
