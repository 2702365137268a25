"""Tests for the in-memory credential store and its persistence backends."""

import json
from datetime import timedelta

import pytest

from tradedesk.config import Settings
from tradedesk.storage.backends import FileBackend, KeyValueBackend, backend_from_settings
from tradedesk.storage.errors import ConstraintViolation
from tradedesk.storage.memory import SESSIONS, USERS, CredentialStore
from tradedesk.storage.models import Session, utcnow


class FakeKeyValueClient:
    """Dict-backed stand-in for ``redis.Redis(decode_responses=True)``."""

    def __init__(self):
        self.data = {}

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value):
        self.data[key] = value
        return True

    def delete(self, *keys):
        removed = 0
        for key in keys:
            removed += self.data.pop(key, None) is not None
        return removed


class BrokenBackend:
    def load(self, collection):
        return None

    def persist(self, collection, records):
        raise OSError("disk full")

    def reset(self):
        pass


@pytest.fixture
def store(tmp_path):
    return CredentialStore(FileBackend(tmp_path))


def _user(store, email="jane@example.com", **kwargs):
    return store.create_user(email, "Jane", "Doe", "hash", **kwargs)


def _session(store, user, token="tok-1", ttl=timedelta(days=7)):
    return store.create_session(Session.new(user.id, token, ttl))


class TestUsers:
    """User rows and the email uniqueness constraint."""

    def test_create_user_normalizes_email(self, store):
        user = _user(store, email="  Jane@Example.COM ")
        assert user.email == "jane@example.com"
        assert user.role == "user"
        assert user.is_active
        assert not user.email_verified
        assert store.get_user_by_email("JANE@example.com").id == user.id

    def test_duplicate_email_is_rejected_case_insensitively(self, store):
        _user(store)
        with pytest.raises(ConstraintViolation) as excinfo:
            _user(store, email="JANE@EXAMPLE.COM")
        assert excinfo.value.detail == {"field": "email"}
        assert excinfo.value.field == "email"
        assert excinfo.value.collection == USERS
        assert store.count_users() == 1

    def test_update_user_bumps_updated_at(self, store):
        user = _user(store)
        updated = store.update_user(user.id, role="admin")
        assert updated.role == "admin"
        assert updated.updated_at >= user.updated_at
        assert store.get_user(user.id).role == "admin"

    def test_update_user_email_clash(self, store):
        _user(store)
        other = _user(store, email="john@example.com")
        with pytest.raises(ConstraintViolation):
            store.update_user(other.id, email="Jane@example.com")

    def test_update_missing_user_returns_none(self, store):
        assert store.update_user("missing", role="admin") is None

    def test_list_users_oldest_first(self, store):
        first = _user(store)
        second = _user(store, email="john@example.com")
        assert [u.id for u in store.list_users()] == [first.id, second.id]

    def test_find_first_matches_fields(self, store):
        user = _user(store, role="admin")
        assert store.find_first(USERS, role="admin").id == user.id
        assert store.find_first(USERS, role="admin", is_active=False) is None
        with pytest.raises(ValueError):
            store.find_first("nope", id="x")


class TestSessions:
    """Session rows keyed by id and looked up by literal token."""

    def test_session_requires_existing_user(self, store):
        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_session(Session.new("ghost", "tok", timedelta(days=1)))
        assert excinfo.value.collection == SESSIONS
        assert excinfo.value.field is None

    def test_token_must_be_unique(self, store):
        user = _user(store)
        _session(store, user, token="same")
        with pytest.raises(ConstraintViolation):
            _session(store, user, token="same")

    def test_lookup_by_token(self, store):
        user = _user(store)
        sess = _session(store, user)
        assert store.get_session_by_token("tok-1").id == sess.id
        assert store.get_session_by_token("tok-2") is None

    def test_replace_session_keeps_created_at(self, store):
        user = _user(store)
        original = _session(store, user)
        fresh = Session.new(user.id, "tok-2", timedelta(days=7))

        rotated = store.replace_session(original.id, fresh)

        assert rotated.id == fresh.id
        assert rotated.created_at == original.created_at
        assert store.get_session(original.id) is None
        assert store.get_session_by_token("tok-1") is None
        assert store.get_session_by_token("tok-2").id == fresh.id

    def test_replace_missing_session_returns_none(self, store):
        user = _user(store)
        assert store.replace_session("gone", Session.new(user.id, "t", timedelta(days=1))) is None
        assert store.list_user_sessions(user.id) == []

    def test_delete_user_sessions_keeps_one(self, store):
        user = _user(store)
        keep = _session(store, user, token="a")
        _session(store, user, token="b")
        _session(store, user, token="c")

        assert store.delete_user_sessions(user.id, keep=keep.id) == 2
        assert [s.id for s in store.list_user_sessions(user.id)] == [keep.id]
        assert store.delete_session(keep.id)
        assert not store.delete_session(keep.id)

    def test_expiry_uses_wall_clock(self, store):
        user = _user(store)
        sess = _session(store, user, ttl=timedelta(seconds=-1))
        assert sess.is_expired()
        assert not Session.new(user.id, "x", timedelta(days=1)).is_expired()


class TestLoginAttempts:
    def test_newest_first_and_filtered(self, store):
        store.record_login_attempt("a@example.com")
        second = store.record_login_attempt("B@example.com", ip_address="10.0.0.1")
        third = store.record_login_attempt("a@example.com", success=True)

        everything = store.list_login_attempts()
        assert everything[0].id == third.id
        only_b = store.list_login_attempts(email="b@example.com")
        assert [a.id for a in only_b] == [second.id]
        assert only_b[0].ip_address == "10.0.0.1"
        assert len(store.list_login_attempts(limit=2)) == 2

    def test_mark_success(self, store):
        attempt = store.record_login_attempt("a@example.com")
        assert not attempt.success
        assert store.mark_login_attempt_success(attempt.id).success
        assert store.mark_login_attempt_success("missing") is None


class TestPersistence:
    """Write-through flushes and rehydration at startup."""

    def test_file_backend_rehydrates(self, tmp_path):
        store = CredentialStore(FileBackend(tmp_path))
        user = _user(store)
        sess = _session(store, user)
        store.record_login_attempt(user.email, success=True)

        reloaded = CredentialStore(FileBackend(tmp_path))

        assert reloaded.get_user(user.id).email == "jane@example.com"
        assert reloaded.get_user(user.id).created_at == user.created_at
        assert reloaded.get_session_by_token("tok-1").id == sess.id
        assert reloaded.get_session(sess.id).expires_at == sess.expires_at
        assert len(reloaded.list_login_attempts()) == 1

    def test_file_backend_layout(self, tmp_path):
        store = CredentialStore(FileBackend(tmp_path))
        _user(store)
        records = json.loads((tmp_path / "state" / "users.json").read_text())
        assert records[0]["email"] == "jane@example.com"
        assert "password_hash" in records[0]

    def test_corrupt_state_file_is_ignored(self, tmp_path):
        backend = FileBackend(tmp_path)
        (tmp_path / "state" / "users.json").write_text("{not json")
        assert backend.load(USERS) is None
        assert CredentialStore(backend).count_users() == 0

    def test_flush_failure_keeps_write(self):
        store = CredentialStore(BrokenBackend())
        user = _user(store)
        assert store.get_user(user.id) is not None

    def test_key_value_backend_round_trip(self):
        client = FakeKeyValueClient()
        store = CredentialStore(KeyValueBackend(client, prefix="test:auth"))
        user = _user(store)
        _session(store, user)

        assert set(client.data) == {"test:auth:users", "test:auth:sessions"}
        reloaded = CredentialStore(KeyValueBackend(client, prefix="test:auth"))
        assert reloaded.get_user(user.id) is not None
        assert reloaded.get_session_by_token("tok-1") is not None

    def test_reset_clears_memory_and_backend(self):
        client = FakeKeyValueClient()
        store = CredentialStore(KeyValueBackend(client))
        user = _user(store)
        _session(store, user)
        store.record_login_attempt(user.email)

        store.reset()

        assert store.count_users() == 0
        assert store.list_login_attempts() == []
        assert client.data == {}

    def test_backend_from_settings(self, tmp_path):
        file_settings = Settings(data_root=str(tmp_path), token_secret="x" * 40)
        assert isinstance(backend_from_settings(file_settings), FileBackend)

        redis_settings = Settings(
            data_root=str(tmp_path),
            token_secret="x" * 40,
            storage_backend="redis",
            redis_key_prefix="td",
        )
        backend = backend_from_settings(redis_settings)
        assert isinstance(backend, KeyValueBackend)
        assert backend.prefix == "td"


def test_store_clock_is_injectable(tmp_path):
    fixed = utcnow() - timedelta(days=3)
    store = CredentialStore(FileBackend(tmp_path), clock=lambda: fixed)
    assert _user(store).created_at == fixed
