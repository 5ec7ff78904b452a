"""Tests for the Repo execution facade using the in-memory adapter."""

import logging

import pytest

from typed_records.adapters import InMemoryAdapter, StorageAdapter
from typed_records.changeset import (
    Action,
    cast,
    pipe,
    stage,
    traverse_errors,
    unique_constraint,
    validate_length,
    validate_required,
)
from typed_records.deadline import CancellationToken, Deadline
from typed_records.entity import EntityState
from typed_records.errors import MultipleResultsError, StorageError, StorageErrorKind
from typed_records.expressions import field
from typed_records.query import from_
from typed_records.repo import Repo
from typed_records.schema import Schema

USERS = """
schema User {
    username: string,
    email: string,
    age: integer,
    password: string virtual,
    timestamps
}
"""

ADA = {
    "id": 1,
    "username": "ada",
    "email": "ada@example.com",
    "age": None,
    "inserted_at": "2024-05-01T10:00:00",
    "updated_at": "2024-05-01T10:00:00",
}


@pytest.fixture
def schema():
    """Create a schema set with a User schema."""
    return Schema.parse(USERS)


@pytest.fixture
def adapter():
    """Create an in-memory adapter with no scripted responses."""
    return InMemoryAdapter()


@pytest.fixture
def repo(adapter, schema):
    """Create a repo over the in-memory adapter."""
    return Repo(adapter, schema.registry)


@pytest.fixture
def stored_user(schema):
    """Load a stored user."""
    return schema.load("User", ADA)


def registration(user, params):
    """Cast and validate a sign-up form."""
    return pipe(
        cast(user, params, ["username", "email", "password"]),
        stage(validate_required, ["username", "email", "password"]),
        stage(validate_length, "password", min=8),
        stage(unique_constraint, "username", name="unique_usernames"),
    )


VALID_FORM = {"username": "ada", "email": "ada@example.com", "password": "correct horse"}


class TestInsert:
    """Tests for Repo.insert."""

    def test_insert(self, repo, adapter, schema):
        """Test that a valid changeset is written and the stored row decoded."""
        adapter.push([ADA])

        result = repo.insert(registration(schema.new("User"), VALID_FORM))

        assert result.ok
        assert result.entity.state is EntityState.LOADED
        assert result.entity.id == 1
        assert result.entity.username == "ada"
        assert result.entity.inserted_at.year == 2024
        assert result.changeset.action is Action.INSERT

        (compiled,) = adapter.executed
        assert compiled.text.startswith('INSERT INTO "users" ("username", "email") VALUES (?, ?)')
        assert compiled.parameters == ("ada", "ada@example.com")

    def test_invalid_changeset_is_not_written(self, repo, adapter, schema):
        """Test that an invalid changeset never reaches the adapter."""
        form = dict(VALID_FORM, password="short")

        result = repo.insert(registration(schema.new("User"), form))

        assert not result.ok
        assert result.entity is None
        assert traverse_errors(result.changeset) == {"password": ["too short"]}
        assert adapter.executed == []

    def test_unique_violation_is_mapped(self, repo, adapter, schema, caplog):
        """Test that a declared constraint violation becomes a field error."""
        adapter.push(StorageError.constraint_violation("unique_usernames", "unique"))
        caplog.set_level(logging.WARNING, logger="typed_records.repo")

        result = repo.insert(registration(schema.new("User"), VALID_FORM))

        assert not result.ok
        assert result.entity is None
        assert traverse_errors(result.changeset) == {"username": ["has already been taken"]}
        assert "unique_usernames" in caplog.text

    def test_unmatched_violation_propagates(self, repo, adapter, schema):
        """Test that an undeclared constraint violation is raised."""
        adapter.push(StorageError.constraint_violation("users_email_index", "unique"))

        with pytest.raises(StorageError) as exc_info:
            repo.insert(registration(schema.new("User"), VALID_FORM))
        assert exc_info.value.constraint_name == "users_email_index"

    def test_other_storage_errors_propagate(self, repo, adapter, schema):
        """Test that non-constraint failures are raised."""
        adapter.push(StorageError.connection("server went away"))

        with pytest.raises(StorageError, match="server went away"):
            repo.insert(registration(schema.new("User"), VALID_FORM))

    def test_no_row_returned(self, repo, schema):
        """Test that a write returning nothing is an error."""
        with pytest.raises(StorageError, match="affected no rows"):
            repo.insert(registration(schema.new("User"), VALID_FORM))


class TestUpdateDelete:
    """Tests for Repo.update, Repo.delete and Repo.commit."""

    def test_update(self, repo, adapter, stored_user):
        """Test updating changed fields by primary key."""
        adapter.push([dict(ADA, email="new@example.com")])

        result = repo.update(cast(stored_user, {"email": "new@example.com"}, ["email"]))

        assert result.ok
        assert result.entity.email == "new@example.com"
        (compiled,) = adapter.executed
        assert compiled.text.startswith('UPDATE "users" SET "email" = ? WHERE "id" = ?')
        assert compiled.parameters == ("new@example.com", 1)

    def test_update_without_changes(self, repo, adapter, stored_user):
        """Test that an update with nothing to store does no I/O."""
        result = repo.update(cast(stored_user, {"email": "ada@example.com"}, ["email"]))

        assert result.ok
        assert result.entity == stored_user
        assert adapter.executed == []

    def test_update_virtual_only(self, repo, adapter, stored_user):
        """Test that changing only virtual fields does no I/O."""
        result = repo.update(cast(stored_user, {"password": "correct horse"}, ["password"]))

        assert result.ok
        assert result.entity.password == "correct horse"
        assert adapter.executed == []

    def test_update_unsaved(self, repo, schema):
        """Test that an entity must be stored before it can be updated."""
        with pytest.raises(ValueError, match="never stored"):
            repo.update(cast(schema.new("User"), {"email": "a@b"}, ["email"]))

    def test_delete(self, repo, adapter, stored_user):
        """Test deleting a stored entity."""
        adapter.push([ADA])

        result = repo.delete(stored_user)

        assert result.ok
        assert result.entity.state is EntityState.DELETED
        assert adapter.executed[0].text.startswith('DELETE FROM "users" WHERE "id" = ?')
        assert adapter.executed[0].parameters == (1,)

    def test_commit_dispatch(self, repo, adapter, schema, stored_user):
        """Test that commit inserts new entities and updates stored ones."""
        adapter.push([ADA])
        adapter.push([dict(ADA, age=37)])

        repo.commit(registration(schema.new("User"), VALID_FORM))
        repo.commit(cast(stored_user, {"age": "37"}, ["age"]))

        assert [c.text.split()[0] for c in adapter.executed] == ["INSERT", "UPDATE"]

    def test_commit_explicit_action(self, repo, adapter, stored_user):
        """Test that an explicit action wins over the entity state."""
        adapter.push([ADA])

        result = repo.commit(cast(stored_user, {}, []).evolve(action=Action.DELETE))

        assert result.entity.state is EntityState.DELETED


class TestQueries:
    """Tests for reading through the repo."""

    def test_all_decodes_entities(self, repo, adapter):
        """Test that default projections decode to entities."""
        adapter.push([ADA, dict(ADA, id=2, username="grace")])

        users = repo.all(from_("User", as_="u").order_by("u.id"))

        assert [u.username for u in users] == ["ada", "grace"]
        assert all(u.state is EntityState.LOADED for u in users)

    def test_all_returns_dicts_for_projections(self, repo, adapter):
        """Test that custom projections return plain rows."""
        adapter.push([{"username": "ada"}])

        rows = repo.all(from_("User", as_="u").select("u.username"))

        assert rows == [{"username": "ada"}]

    def test_get(self, repo, adapter):
        """Test fetching by primary key."""
        adapter.push([ADA])

        user = repo.get("User", 1)

        assert user.email == "ada@example.com"
        assert adapter.executed[0].text.endswith('WHERE ("r"."id" = ?)')
        assert adapter.executed[0].parameters == (1,)

    def test_get_missing(self, repo):
        """Test that a missing record gives None."""
        assert repo.get("User", 99) is None

    def test_get_unknown_schema(self, repo):
        """Test fetching from a schema that was never declared."""
        with pytest.raises(KeyError):
            repo.get("Invoice", 1)

    def test_one_with_many_rows(self, repo, adapter):
        """Test that one() refuses more than one row."""
        adapter.push([ADA, dict(ADA, id=2)])

        with pytest.raises(MultipleResultsError):
            repo.one(from_("User", as_="u"))

    def test_aggregate(self, repo, adapter):
        """Test computing a single aggregate."""
        adapter.push([{"value": 3}])

        total = repo.aggregate(from_("User", as_="u").where(field("u.age").ge(18)), "count")

        assert total == 3
        assert adapter.executed[0].text == (
            'SELECT COUNT(*) AS "value" FROM "users" AS "u" WHERE ("u"."age" >= ?)'
        )

    def test_aggregate_field(self, repo, adapter):
        """Test aggregating a field."""
        adapter.push([{"value": 40.5}])

        assert repo.aggregate(from_("User", as_="u"), "avg", "u.age") == 40.5
        assert adapter.executed[0].text.startswith('SELECT AVG("u"."age") AS "value"')

    def test_aggregate_arguments(self, repo):
        """Test aggregate argument checks."""
        with pytest.raises(ValueError, match="Unknown aggregate"):
            repo.aggregate(from_("User", as_="u"), "median", "u.age")
        with pytest.raises(ValueError, match="needs a field"):
            repo.aggregate(from_("User", as_="u"), "sum")

    def test_delete_all(self, repo, adapter):
        """Test that bulk deletes report how many rows went."""
        adapter.push([{"id": 1}, {"id": 2}])

        assert repo.delete_all(from_("User", as_="u").where(field("u.age").lt(13))) == 2

    def test_update_all(self, repo, adapter):
        """Test that bulk updates report how many rows changed."""
        adapter.push([{"id": 1}])

        count = repo.update_all(from_("User", as_="u"), {"age": field("u.age").add(1)})

        assert count == 1
        assert adapter.executed[0].text.startswith('UPDATE "users" AS "u" SET "age" = ("u"."age" + ?)')


class TestDeadlines:
    """Tests for deadlines and cancellation."""

    def test_expired_deadline(self, repo):
        """Test that an expired deadline fails the call."""
        with pytest.raises(StorageError) as exc_info:
            repo.all(from_("User", as_="u"), deadline=Deadline.after(0))
        assert exc_info.value.kind is StorageErrorKind.TIMEOUT

    def test_default_timeout(self, adapter, schema):
        """Test that the repo applies its default timeout."""
        repo = Repo(adapter, schema.registry, timeout=0)

        with pytest.raises(StorageError) as exc_info:
            repo.get("User", 1)
        assert exc_info.value.kind is StorageErrorKind.TIMEOUT

    def test_cancelled(self, repo):
        """Test that a cancelled token fails the call."""
        token = CancellationToken()
        token.cancel()

        with pytest.raises(StorageError) as exc_info:
            repo.all(from_("User", as_="u"), deadline=Deadline(token=token))
        assert exc_info.value.kind is StorageErrorKind.CANCELLED

    def test_negative_deadline(self):
        """Test that deadlines cannot be in the past."""
        with pytest.raises(ValueError):
            Deadline.after(-1)

    def test_remaining(self):
        """Test remaining time."""
        assert Deadline().remaining() is None
        assert 0 < Deadline.after(60).remaining() <= 60


class TestTransactions:
    """Tests for transaction scoping."""

    def test_commit(self, repo, adapter):
        """Test that a clean block commits."""
        with repo.transaction():
            repo.all(from_("User", as_="u"))

        assert adapter.commits == 1
        assert adapter.rollbacks == 0

    def test_rollback(self, repo, adapter):
        """Test that an exception rolls back and propagates."""
        with pytest.raises(RuntimeError):
            with repo.transaction():
                raise RuntimeError("boom")

        assert adapter.commits == 0
        assert adapter.rollbacks == 1

    def test_adapter_protocol(self, adapter):
        """Test that the in-memory adapter satisfies the adapter protocol."""
        assert isinstance(adapter, StorageAdapter)
