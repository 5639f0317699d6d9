import copy

import pytest

from gatehouse.storage.common import user_to_doc
from gatehouse.storage.ids import new_id
from gatehouse.storage.models import TokenEntry, User
from gatehouse.storage.postgres import PostgresStore


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


@pytest.fixture
def store():
    """A PostgresStore whose row-level helpers run against a dict."""

    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = DummyPool()
    rows = {}

    def _mutate(table, doc_id, apply):
        doc = rows.get((table, doc_id))
        if doc is None:
            return None, None
        working = copy.deepcopy(doc)
        result = apply(working)
        rows[(table, doc_id)] = working
        return working, result

    store._mutate = _mutate
    store._rows = rows
    return store


def _seed_user(store, *tokens):
    user = User(id=new_id(), email="a@x.com", password_digest="digest", tokens=list(tokens))
    store._rows[("app_user", user.id)] = user_to_doc(user)
    return user


def test_push_user_token_caps_entries(store):
    user = _seed_user(store, TokenEntry("t1", "s1", 1), TokenEntry("t2", "s2", 2))

    updated = store.push_user_token(user.id, TokenEntry("t3", "s3", 3), max_entries=2)

    assert [e.token for e in updated.tokens] == ["t2", "t3"]
    assert updated.logged_in is True
    assert updated.last_login == 3


def test_push_user_token_absent_user(store):
    assert store.push_user_token(new_id(), TokenEntry("t", "s")) is None


def test_replace_user_token_only_when_present(store):
    user = _seed_user(store, TokenEntry("old", "s1", 1))

    assert store.replace_user_token(user.id, "old", TokenEntry("new", "s1", 2)) is True
    assert store.replace_user_token(user.id, "old", TokenEntry("newer", "s1", 3)) is False
    assert store._rows[("app_user", user.id)]["tokens"][0]["token"] == "new"


def test_pull_user_session_keeps_other_sessions(store):
    user = _seed_user(store, TokenEntry("t1", "s1"), TokenEntry("t2", "s2"))

    assert store.pull_user_session(user.id, "s1") == 1
    doc = store._rows[("app_user", user.id)]
    assert [e["token"] for e in doc["tokens"]] == ["t2"]
    assert doc["logged_in"] is True
    assert doc["last_logout"] is not None


def test_pull_user_session_absent_user(store):
    assert store.pull_user_session(new_id(), "s1") is None


def test_pull_token_uses_holder_lookup(store, monkeypatch):
    user = _seed_user(store, TokenEntry("t1", "s1"))
    monkeypatch.setattr(store, "get_user_by_token", lambda token: user if token == "t1" else None)

    assert store.pull_token("missing") == 0
    assert store.pull_token("t1") == 1
    assert store._rows[("app_user", user.id)]["logged_in"] is False


def test_set_user_roles_dedupes(store):
    user = _seed_user(store)
    role_id = new_id()

    updated = store.set_user_roles(user.id, [role_id, role_id])

    assert updated.roles == [role_id]
