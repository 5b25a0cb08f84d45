import pytest

from usersimple.admin import UserStore
from usersimple.errors import (
    ConfigurationError,
    InconsistentStateWarning,
    IntegrityViolation,
    InvalidFieldError,
    SchemaError,
    StorageError,
)
from usersimple.storage import SQLAlchemyStorage


class FailingPasswordStorage(SQLAlchemyStorage):
    """Storage whose password writes always fail."""

    def execute(self, sql, params=None):
        if "SET passwd" in sql:
            raise StorageError("disk full")
        return super().execute(sql, params)


def test_provision_and_attach(storage):
    assert UserStore.has_structure(storage) is False
    UserStore.provision(storage, "accounts")

    assert UserStore.has_structure(storage, "accounts") is True
    assert UserStore(storage, "accounts").list_users() == {}


def test_attach_missing_table_fails(storage):
    with pytest.raises(SchemaError):
        UserStore(storage, "nothing_here")


def test_provision_existing_table_fails(storage, store):
    with pytest.raises(SchemaError):
        UserStore.provision(storage)


@pytest.mark.parametrize("table", ["users; DROP TABLE x", "", "user-table", None])
def test_invalid_table_name(storage, table):
    with pytest.raises(ConfigurationError):
        UserStore(storage, table)


def test_constructor_rejects_bad_arguments(storage, store):
    with pytest.raises(ConfigurationError):
        UserStore(None)
    with pytest.raises(ConfigurationError):
        UserStore(storage, admin_level=-1)


def test_create_and_list_users(store):
    created = {
        store.create_user("ana", "Ana", "pw-a", level=5): ("ana", "Ana", 5),
        store.create_user("ben", "Ben", "pw-b"): ("ben", "Ben", 0),
        store.create_user("cy", "Cy", "pw-c", level=2): ("cy", "Cy", 2),
    }

    assert sorted(created) == [1, 2, 3]
    users = store.list_users()
    assert len(users) == 3
    for user_id, (login, name, level) in created.items():
        assert users[user_id] == {"login": login, "name": name, "level": level}


def test_list_users_raises_when_table_is_gone(storage, store):
    store.create_user("ana", "Ana", "pw")
    storage.execute("DROP TABLE user_simple")

    with pytest.raises(StorageError):
        store.list_users()


def test_duplicate_login_is_rejected(store):
    assert store.create_user("ana", "Ana", "pw") == 1
    assert store.create_user("ana", "Other Ana", "pw") is None
    assert len(store.list_users()) == 1


def test_ids_follow_current_maximum(store):
    first = store.create_user("a", "A", "pw")
    second = store.create_user("b", "B", "pw")
    store.remove_user(first)

    assert store.create_user("c", "C", "pw") == second + 1
    store.remove_user(second + 1)
    assert store.create_user("d", "D", "pw") == second + 1


def test_field_accessors(store):
    user_id = store.create_user("ana", "Ana", "pw", level=3)

    assert store.id_for_login("ana") == user_id
    assert store.login(user_id) == "ana"
    assert store.name(user_id) == "Ana"
    assert store.level(user_id) == 3
    assert store.get_field(user_id, "name") == "Ana"
    assert store.id_for_login("nobody") is None
    assert store.name(999) is None


@pytest.mark.parametrize("field", ["passwd", "session", "id", "name; --"])
def test_invalid_fields_are_rejected(store, field):
    user_id = store.create_user("ana", "Ana", "pw")
    with pytest.raises(InvalidFieldError):
        store.get_field(user_id, field)
    with pytest.raises(InvalidFieldError):
        store.set_field(user_id, field, "x")


def test_setters(store):
    user_id = store.create_user("ana", "Ana", "pw")

    assert store.set_name(user_id, "Ana Maria") is True
    assert store.set_level(user_id, 4) is True
    assert store.set_login(user_id, "anamaria") is True
    assert store.list_users()[user_id] == {"login": "anamaria", "name": "Ana Maria", "level": 4}
    assert store.set_name(999, "ghost") is False


def test_set_login_to_taken_login_does_not_write(store):
    ana = store.create_user("ana", "Ana", "pw")
    ben = store.create_user("ben", "Ben", "pw")

    assert store.set_login(ben, "ana") is False
    assert store.login(ben) == "ben"
    assert store.login(ana) == "ana"
    # keeping one's own login is not a conflict
    assert store.set_login(ana, "ana") is True


@pytest.mark.parametrize("level", [-1, "3", 1.5, None, True])
def test_invalid_levels_are_rejected(store, level):
    user_id = store.create_user("ana", "Ana", "pw", level=2)
    with pytest.raises(IntegrityViolation):
        store.set_level(user_id, level)
    assert store.level(user_id) == 2


def test_create_user_rejects_invalid_level(store):
    with pytest.raises(IntegrityViolation):
        store.create_user("ana", "Ana", "pw", level=-2)
    assert store.list_users() == {}


def test_remove_user(store):
    user_id = store.create_user("ana", "Ana", "pw")

    assert store.remove_user(user_id) is True
    assert store.id_for_login("ana") is None
    assert store.remove_user(user_id) is False


def test_empty_password_disables_account(store):
    user_id = store.create_user("ana", "Ana", "")
    assert store.get_user(user_id).passwd is None
    assert store.get_user(user_id).is_disabled is True

    store.set_password(user_id, "pw")
    assert len(store.get_user(user_id).passwd) == 32
    store.set_password(user_id, "")
    assert store.get_user(user_id).passwd is None


def test_admin_helpers(store):
    a = store.create_user("a", "A", "pw", level=5)
    b = store.create_user("b", "B", "pw", level=0)

    with pytest.deprecated_call():
        assert store.is_admin(a) is True
    with pytest.deprecated_call():
        assert store.is_admin(b) is False

    store.set_level(b, 2)
    with pytest.deprecated_call():
        assert store.is_admin(b) is True

    with pytest.deprecated_call():
        store.unset_admin(a)
    assert store.level(a) == 0
    with pytest.deprecated_call():
        store.set_admin(a)
    assert store.level(a) == store.admin_level


def test_create_user_rolls_back_on_failure(engine):
    storage = FailingPasswordStorage(engine)
    store = UserStore.provision(storage)

    with pytest.raises(StorageError):
        store.create_user("ana", "Ana", "pw")

    assert store.list_users() == {}
    storage.close()


def test_create_user_without_transactions_warns_of_partial_state(engine):
    storage = FailingPasswordStorage(engine, transactional=False)
    store = UserStore.provision(storage)

    with pytest.warns(InconsistentStateWarning):
        with pytest.raises(StorageError):
            store.create_user("ana", "Ana", "pw")

    # the row was inserted before the password write failed
    user_id = store.id_for_login("ana")
    assert user_id is not None
    assert store.get_user(user_id).passwd is None
    storage.close()


def test_concurrent_id_allocation_fails_on_constrained_schema(store, monkeypatch):
    store.create_user("ana", "Ana", "pw")
    # another writer computed the same max+1 id
    monkeypatch.setattr(store, "_next_id", lambda: 1)

    assert store.create_user("ben", "Ben", "pw") is None
    assert store.list_users() == {1: {"login": "ana", "name": "Ana", "level": 0}}


def test_rejected_insert_without_transactions_reports_no_partial_row(engine, monkeypatch, recwarn):
    storage = SQLAlchemyStorage(engine, transactional=False)
    store = UserStore.provision(storage)
    store.create_user("ana", "Ana", "pw")
    monkeypatch.setattr(store, "_next_id", lambda: 1)

    assert store.create_user("ben", "Ben", "pw") is None
    assert not [w for w in recwarn if issubclass(w.category, InconsistentStateWarning)]
    assert store.id_for_login("ben") is None
    storage.close()


def test_concurrent_id_allocation_duplicates_on_permissive_schema(storage, monkeypatch):
    store = UserStore.provision(storage, constrained=False)
    store.create_user("ana", "Ana", "pw")
    monkeypatch.setattr(store, "_next_id", lambda: 1)

    assert store.create_user("ben", "Ben", "pw") == 1
    rows = storage.fetch_all("SELECT id, login FROM user_simple ORDER BY login")
    assert rows == [{"id": 1, "login": "ana"}, {"id": 1, "login": "ben"}]


def test_clear_session(store, auth):
    user_id = store.create_user("ana", "Ana", "pw")
    auth.check_login("ana", "pw")
    token = auth.session

    assert store.clear_session(user_id) is True
    record = store.get_user(user_id)
    assert record.session is None
    assert record.session_exp is None
    assert auth.check_session(token) is None
