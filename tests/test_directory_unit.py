import pytest

from gatehouse.service.directory import DirectoryService
from gatehouse.service.errors import IdNotValidError, NotFoundError, ValidationError
from gatehouse.storage.ids import new_id
from gatehouse.storage.memory import MemoryStore


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def directory(store):
    return DirectoryService(store)


def test_find_one_checks_shape_then_existence(directory):
    with pytest.raises(IdNotValidError):
        directory.get_user("not-an-id")
    with pytest.raises(NotFoundError):
        directory.get_user(new_id())


@pytest.mark.parametrize("getter", ["get_role", "get_group", "get_permission"])
def test_every_lookup_validates_ids(directory, getter):
    with pytest.raises(IdNotValidError):
        getattr(directory, getter)("nope")
    with pytest.raises(NotFoundError):
        getattr(directory, getter)(new_id())


def test_update_user_limits_fields(directory, store):
    user = store.create_user("a@x.com", "digest")

    updated = directory.update_user(user.id, {"name": "Ada", "surname": "King"})
    assert (updated.name, updated.surname) == ("Ada", "King")
    with pytest.raises(ValidationError):
        directory.update_user(user.id, {"password_digest": "x"})


def test_delete_user(directory, store):
    user = store.create_user("a@x.com", "digest")

    assert directory.delete_user(user.id).id == user.id
    with pytest.raises(NotFoundError):
        directory.delete_user(user.id)


def test_duplicate_role_name(directory):
    directory.create_role("admin")

    with pytest.raises(ValidationError):
        directory.create_role("admin")


def test_group_members_replace(directory, store):
    group = directory.create_group("staff")
    a = store.create_user("a@x.com", "digest")
    b = store.create_user("b@x.com", "digest")
    c = store.create_user("c@x.com", "digest")

    directory.set_group_members(group.id, [a.id, b.id])
    members = directory.set_group_members(group.id, [b.id, c.id])

    assert sorted(u.id for u in members) == sorted([b.id, c.id])
    assert store.get_user(a.id).groups == []


def test_group_members_unknown_user(directory):
    group = directory.create_group("staff")

    with pytest.raises(NotFoundError):
        directory.set_group_members(group.id, [new_id()])


def test_set_user_groups_requires_existing_groups(directory, store):
    user = store.create_user("a@x.com", "digest")
    group = directory.create_group("staff")

    assert directory.set_user_groups(user.id, [group.id]).groups == [group.id]
    with pytest.raises(NotFoundError):
        directory.set_user_groups(user.id, [new_id()])


def test_permission_crud(directory):
    perm = directory.create_permission("roles.query", "roles", "query", "list roles")

    assert [p.id for p in directory.list_permissions()] == [perm.id]
    assert directory.delete_permission(perm.id).resource == "roles"
    assert directory.list_permissions() == []
