"""Tests for the settings document and pinned fingerprints."""

import json

import pytest

from mcp_pm2_ops.errors import PersistenceError
from mcp_pm2_ops.models import HostFingerprint
from mcp_pm2_ops.store import DocumentStore
from mcp_pm2_ops.trust_store import FINGERPRINTS_KEY, TrustStore


def _fingerprint(host="web-1", port=22, hash="abc", **kwargs) -> HostFingerprint:
    return HostFingerprint(host=host, port=port, hash=hash, key_type="ssh-ed25519", **kwargs)


# --- DocumentStore ---


class TestDocumentStore:
    def test_missing_file_is_empty(self, tmp_path):
        assert DocumentStore(tmp_path / "nope.json").load() == {}

    def test_update_creates_parent_dirs(self, tmp_path):
        store = DocumentStore(tmp_path / "a" / "b" / "settings.json")
        store.update(lambda doc: doc.update(theme="dark"))
        assert json.loads(store.path.read_text()) == {"theme": "dark"}

    def test_no_temp_files_left_behind(self, tmp_path):
        store = DocumentStore(tmp_path / "settings.json")
        store.update(lambda doc: doc.update(x=1))
        assert [p.name for p in tmp_path.iterdir()] == ["settings.json"]

    def test_corrupt_document_raises(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text("[1, 2")
        with pytest.raises(PersistenceError):
            DocumentStore(path).load()

    def test_non_object_document_raises(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text("[]")
        with pytest.raises(PersistenceError):
            DocumentStore(path).load()


# --- TrustStore ---


class TestTrustStore:
    def test_put_and_get(self, trust_store):
        trust_store.put(_fingerprint())
        fp = trust_store.get("web-1", 22)
        assert fp is not None
        assert fp.hash == "abc"
        assert trust_store.get("web-1", 2222) is None

    def test_put_replaces_same_identity(self, trust_store):
        trust_store.put(_fingerprint(hash="old"))
        trust_store.put(_fingerprint(hash="new", verified=True))
        fingerprints = trust_store.list()
        assert len(fingerprints) == 1
        assert fingerprints[0].hash == "new"
        assert fingerprints[0].verified

    def test_delete(self, trust_store):
        trust_store.put(_fingerprint())
        trust_store.put(_fingerprint(port=2222))
        assert trust_store.delete("web-1", 22)
        assert not trust_store.delete("web-1", 22)
        assert [fp.port for fp in trust_store.list()] == [2222]

    def test_touch_updates_last_seen(self, trust_store):
        trust_store.put(_fingerprint())
        assert trust_store.get("web-1", 22).last_seen is None
        touched = trust_store.touch("web-1", 22)
        assert touched.last_seen is not None
        assert trust_store.get("web-1", 22).last_seen == touched.last_seen
        assert trust_store.touch("db-1", 22) is None

    def test_document_layout(self, store, trust_store):
        trust_store.put(_fingerprint(verified=True))
        entry = store.load()[FINGERPRINTS_KEY][0]
        assert entry["host"] == "web-1"
        assert entry["hashAlgorithm"] == "sha256"
        assert entry["keyType"] == "ssh-ed25519"
        assert entry["verified"] is True
        assert "addedAt" in entry

    def test_other_settings_preserved(self, store, trust_store):
        store.update(lambda doc: doc.update(connections=[{"name": "prod"}]))
        trust_store.put(_fingerprint())
        trust_store.delete("web-1", 22)
        assert store.load()["connections"] == [{"name": "prod"}]

    def test_malformed_entries_skipped(self, store, trust_store):
        store.update(lambda doc: doc.update({FINGERPRINTS_KEY: [{"host": "x"}, _fingerprint().to_document()]}))
        assert [fp.host for fp in trust_store.list()] == ["web-1"]
