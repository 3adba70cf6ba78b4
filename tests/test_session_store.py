"""
SessionStore tests: persistence, ordering and the pairing workflow.
"""
import json
import threading

import pytest

from gateway.models import MessageRole
from gateway.session_store import PAIRING_CODE_ALPHABET, PAIRING_CODE_LENGTH, SessionStore


class TestSessions:

    def test_get_or_create_with_explicit_id(self, store):
        first = store.get_or_create("abc")
        second = store.get_or_create("abc")
        assert first is second
        assert store.count() == 1

    def test_get_or_create_generates_id(self, store):
        session = store.get_or_create()
        assert session.id
        assert store.get(session.id) is session

    def test_add_message_creates_missing_session(self, store):
        message = store.add_message("new", MessageRole.USER, "hello")
        session = store.get("new")
        assert session.messages == [message]
        assert message.role == MessageRole.USER

    def test_append_monotonicity(self, store):
        session = store.get_or_create("s")
        before = session.updated_at
        for i in range(5):
            store.add_message("s", "user", f"m{i}")
        assert [m.content for m in session.messages] == [f"m{i}" for i in range(5)]
        assert session.updated_at >= before
        stamps = [m.timestamp for m in session.messages]
        assert stamps == sorted(stamps)

    def test_list_orders_by_recent_update(self, store):
        store.get_or_create("old")
        store.get_or_create("new")
        store.get("old").updated_at = 1
        store.get("new").updated_at = 2
        assert [s.id for s in store.list()] == ["new", "old"]

    def test_reset_and_delete(self, store):
        store.add_message("s", "user", "x")
        assert store.reset("s")
        assert store.get("s").messages == []
        assert store.delete("s")
        assert store.get("s") is None
        assert not store.reset("s")
        assert not store.delete("s")

    def test_channel_session_is_unique(self, store):
        results = []

        def worker():
            results.append(store.get_or_create_for_channel("feishu", "ou_1"))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len({s.id for s in results}) == 1
        assert results[0].name == "feishu:ou_1"
        assert store.count() == 1


class TestPersistence:

    def test_reload_from_disk(self, tmp_path):
        data_dir = tmp_path / "data"
        store = SessionStore(data_dir)
        store.add_message("s", "user", "persist me", {"channel": "feishu"})
        store.create_pairing("feishu", "ou_1")

        reloaded = SessionStore(data_dir)
        [message] = reloaded.get("s").messages
        assert message.content == "persist me"
        assert message.channel == "feishu"
        assert reloaded.get_pairing("feishu", "ou_1") is not None

    def test_document_is_camel_case(self, tmp_path):
        store = SessionStore(tmp_path)
        store.add_message("s", "user", "hi")
        doc = json.loads((tmp_path / SessionStore.FILE_NAME).read_text(encoding="utf-8"))
        assert set(doc) == {"sessions", "pairing"}
        assert "createdAt" in doc["sessions"][0]
        assert not list(tmp_path.glob("*.tmp*"))

    def test_corrupt_document_means_empty_store(self, tmp_path):
        (tmp_path / SessionStore.FILE_NAME).write_text("{broken", encoding="utf-8")
        store = SessionStore(tmp_path)
        assert store.count() == 0

    def test_write_error_propagates(self, tmp_path, monkeypatch):
        store = SessionStore(tmp_path)

        def fail(*args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr("gateway.session_store.os.replace", fail)
        with pytest.raises(OSError, match="disk full"):
            store.get_or_create("s")
        assert not list(tmp_path.glob("*.tmp*"))


class TestPairing:

    def test_create_pairing_code(self, store):
        entry = store.create_pairing("feishu", "ou_1")
        assert len(entry.pairing_code) == PAIRING_CODE_LENGTH
        assert set(entry.pairing_code) <= set(PAIRING_CODE_ALPHABET)
        assert not entry.approved
        assert store.create_pairing("feishu", "ou_1").pairing_code == entry.pairing_code

    def test_approve_is_idempotent(self, store):
        store.create_pairing("feishu", "ou_1")
        assert store.approve_pairing("feishu", "ou_1")
        first_approved_at = store.get_pairing("feishu", "ou_1").approved_at
        assert store.approve_pairing("feishu", "ou_1")
        assert store.get_pairing("feishu", "ou_1").approved_at == first_approved_at
        assert store.is_approved("feishu", "ou_1")

    def test_approve_unknown(self, store):
        assert not store.approve_pairing("feishu", "nobody")
        assert not store.is_approved("feishu", "nobody")

    def test_list_pairing(self, store):
        store.create_pairing("feishu", "a")
        store.create_pairing("feishu", "b")
        assert sorted(p.user_id for p in store.list_pairing()) == ["a", "b"]
