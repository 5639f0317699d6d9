import pytest

from gatehouse.service.sessions import SessionRegistry
from gatehouse.storage.ids import new_id
from gatehouse.storage.memory import MemoryStore


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def registry(store):
    return SessionRegistry(store)


@pytest.fixture
def user(store):
    return store.create_user("a@x.com", "digest")


def test_add_then_contains(registry, user):
    registry.add(user.id, "tok-1", "s-1")

    assert registry.contains(user.id, "tok-1")
    assert not registry.contains(user.id, "tok-2")
    assert registry.holder("tok-1").id == user.id


def test_add_for_unknown_user(registry):
    assert registry.add(new_id(), "tok", "s") is None


def test_concurrent_sessions_are_independent(registry, user):
    registry.add(user.id, "tok-1", "s-1")
    registry.add(user.id, "tok-2", "s-2")

    assert registry.remove("tok-1") == 1
    assert not registry.contains(user.id, "tok-1")
    assert registry.contains(user.id, "tok-2")


def test_remove_unknown_token_is_noop(registry, user):
    registry.add(user.id, "tok-1", "s-1")

    assert registry.remove("never-issued") == 0
    assert registry.contains(user.id, "tok-1")


def test_remove_scans_all_users(store, registry, user):
    other = store.create_user("b@x.com", "digest")
    registry.add(user.id, "tok-a", "s-a")
    registry.add(other.id, "tok-b", "s-b")

    assert registry.remove("tok-b") == 1
    assert registry.contains(user.id, "tok-a")
    assert not registry.contains(other.id, "tok-b")


def test_remove_session(registry, user):
    registry.add(user.id, "tok-1", "s-1")

    assert registry.remove_session(user.id, "s-1") == 1
    assert registry.remove_session(user.id, "s-1") == 0
    assert registry.remove_session(new_id(), "s-1") is None


def test_rotate_swaps_token(registry, user):
    registry.add(user.id, "old", "s-1")

    assert registry.rotate(user.id, "old", "new", "s-1")
    assert registry.contains(user.id, "new")
    assert not registry.contains(user.id, "old")
    assert not registry.rotate(user.id, "old", "newer", "s-1")


def test_session_cap_drops_oldest(store, user):
    registry = SessionRegistry(store, max_sessions_per_user=2)
    for n in range(3):
        registry.add(user.id, f"tok-{n}", f"s-{n}")

    assert not registry.contains(user.id, "tok-0")
    assert registry.contains(user.id, "tok-1")
    assert registry.contains(user.id, "tok-2")
