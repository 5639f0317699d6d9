"""Unit tests for the in-process document store."""

import pytest

from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.ids import is_valid_id, new_id
from gatehouse.storage.memory import MemoryStore
from gatehouse.storage.models import TokenEntry


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


def test_ids_have_store_shape():
    assert is_valid_id(new_id())
    assert not is_valid_id("not-an-id")
    assert not is_valid_id("")
    assert not is_valid_id(None)
    assert not is_valid_id(12345)


def test_email_is_lowercased_and_unique(store):
    user = store.create_user("Alice@Example.COM", "digest")

    assert user.email == "alice@example.com"
    assert store.get_user_by_email("ALICE@example.com").id == user.id
    with pytest.raises(ConstraintViolation):
        store.create_user("alice@EXAMPLE.com", "digest")


def test_email_lookup_folds_unicode_variants(store):
    user = store.create_user("\uff21lice@example.com", "digest")

    assert user.email == "alice@example.com"
    assert store.get_user_by_email("al\u200bice@example.com").id == user.id
    assert store.get_user_by_email("\uff21LICE@example.com").id == user.id


def test_returned_records_are_copies(store):
    user = store.create_user("a@x.com", "digest")
    user.roles.append("mutated")

    assert store.get_user(user.id).roles == []


def test_snapshot_reloads_from_disk(tmp_path):
    first = MemoryStore(fs_root=str(tmp_path))
    user = first.create_user("a@x.com", "digest", name="Ada")
    role = first.create_role("editor")
    first.set_user_roles(user.id, [role.id])

    second = MemoryStore(fs_root=str(tmp_path))
    reloaded = second.get_user(user.id)
    assert reloaded.name == "Ada"
    assert reloaded.roles == [role.id]


def test_no_snapshot_without_fs_root(tmp_path):
    store = MemoryStore()
    store.create_user("a@x.com", "digest")

    assert list(tmp_path.iterdir()) == []


def test_token_push_marks_login_and_caps_entries(store):
    user = store.create_user("a@x.com", "digest")
    for n in range(3):
        store.push_user_token(
            user.id, TokenEntry(token=f"tok-{n}", session_id=f"s-{n}"), max_entries=2
        )

    stored = store.get_user(user.id)
    assert [e.token for e in stored.tokens] == ["tok-1", "tok-2"]
    assert stored.logged_in is True
    assert stored.last_login is not None


def test_push_token_for_missing_user(store):
    assert store.push_user_token(new_id(), TokenEntry(token="t", session_id="s")) is None


def test_pull_token_is_idempotent(store):
    user = store.create_user("a@x.com", "digest")
    store.push_user_token(user.id, TokenEntry(token="tok", session_id="s"))

    assert store.pull_token("tok") == 1
    assert store.pull_token("tok") == 0
    stored = store.get_user(user.id)
    assert stored.tokens == []
    assert stored.logged_in is False
    assert stored.last_logout is not None


def test_pull_user_session_only_touches_that_session(store):
    user = store.create_user("a@x.com", "digest")
    store.push_user_token(user.id, TokenEntry(token="t1", session_id="s1"))
    store.push_user_token(user.id, TokenEntry(token="t2", session_id="s2"))

    assert store.pull_user_session(user.id, "s1") == 1
    assert store.pull_user_session(user.id, "s1") == 0
    assert store.pull_user_session(new_id(), "s1") is None
    assert [e.token for e in store.get_user(user.id).tokens] == ["t2"]
    assert store.get_user(user.id).logged_in is True


def test_replace_token_requires_live_token(store):
    user = store.create_user("a@x.com", "digest")
    store.push_user_token(user.id, TokenEntry(token="old", session_id="s"))

    assert store.replace_user_token(user.id, "old", TokenEntry(token="new", session_id="s"))
    assert not store.replace_user_token(user.id, "old", TokenEntry(token="x", session_id="s"))
    assert store.get_user_by_token("new").id == user.id
    assert store.get_user_by_token("old") is None


def test_role_assignment_replaces_and_dedupes(store):
    user = store.create_user("a@x.com", "digest")
    a = store.create_role("a")
    b = store.create_role("b")

    store.set_user_roles(user.id, [a.id, a.id])
    assert store.get_user(user.id).roles == [a.id]
    store.set_user_roles(user.id, [b.id])
    assert store.get_user(user.id).roles == [b.id]


def test_unique_names(store):
    store.create_role("admin")
    store.create_group("staff")
    store.create_permission("roles.query", "roles", "query")

    with pytest.raises(ConstraintViolation):
        store.create_role("admin")
    with pytest.raises(ConstraintViolation):
        store.create_group("staff")
    with pytest.raises(ConstraintViolation):
        store.create_permission("roles.query", "roles", "query")


def test_deleting_role_detaches_from_users_and_groups(store):
    user = store.create_user("a@x.com", "digest")
    group = store.create_group("staff")
    role = store.create_role("editor")
    store.set_user_roles(user.id, [role.id])
    store.set_group_roles(group.id, [role.id])

    assert store.delete_role(role.id).id == role.id
    assert store.get_user(user.id).roles == []
    assert store.get_group(group.id).roles == []
    assert store.delete_role(role.id) is None


def test_deleting_permission_detaches_from_roles(store):
    role = store.create_role("editor")
    perm = store.create_permission("roles.query", "roles", "query")
    store.set_role_permissions(role.id, [perm.id])

    store.delete_permission(perm.id)
    assert store.get_role(role.id).permissions == []


def test_deleting_group_detaches_members(store):
    user = store.create_user("a@x.com", "digest")
    group = store.create_group("staff")
    store.set_user_groups(user.id, [group.id])
    assert [u.id for u in store.list_users_in_group(group.id)] == [user.id]

    store.delete_group(group.id)
    assert store.get_user(user.id).groups == []


def test_update_user_touches_updated_at(store):
    user = store.create_user("a@x.com", "digest")
    updated = store.update_user(user.id, {"name": "Ada"})

    assert updated.name == "Ada"
    assert updated.updated_at >= user.updated_at
    assert store.update_user(new_id(), {"name": "x"}) is None
