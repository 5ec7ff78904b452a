"""Tests for field and schema definitions."""

import pytest

from typed_records.errors import SchemaError, UnknownFieldError
from typed_records.types import (
    FieldKind,
    FieldSpec,
    Relationship,
    RelationshipKind,
    SchemaDescriptor,
    SchemaRegistry,
    default_relation,
    pluralize,
    snake_case,
)


class TestFieldKind:
    """Tests for the FieldKind enum."""

    def test_is_numeric(self):
        """Test which kinds count as numbers."""
        assert FieldKind.INTEGER.is_numeric is True
        assert FieldKind.FLOAT.is_numeric is True
        assert FieldKind.DECIMAL.is_numeric is True
        assert FieldKind.ID.is_numeric is True
        assert FieldKind.STRING.is_numeric is False
        assert FieldKind.BOOLEAN.is_numeric is False


class TestNaming:
    """Tests for relation name helpers."""

    def test_snake_case(self):
        """Test CamelCase to snake_case conversion."""
        assert snake_case("User") == "user"
        assert snake_case("BlogPost") == "blog_post"
        assert snake_case("HTTPRequest") == "http_request"

    def test_pluralize(self):
        """Test the naive plural rules."""
        assert pluralize("user") == "users"
        assert pluralize("box") == "boxes"
        assert pluralize("category") == "categories"
        assert pluralize("day") == "days"

    def test_default_relation(self):
        """Test the relation a schema maps to by default."""
        assert default_relation("User") == "users"
        assert default_relation("BlogPost") == "blog_posts"


class TestFieldSpec:
    """Tests for FieldSpec."""

    def test_default_value_is_copied(self):
        """Test that mutable defaults are not shared between entities."""
        spec = FieldSpec("settings", FieldKind.MAP, default={"theme": "dark"})
        first = spec.default_value()
        first["theme"] = "light"
        assert spec.default_value() == {"theme": "dark"}


class TestSchemaDescriptor:
    """Tests for SchemaDescriptor."""

    def test_define_adds_primary_key(self):
        """Test that an id primary key is prepended when none is declared."""
        desc = SchemaDescriptor.define("User", [FieldSpec("username", FieldKind.STRING)])

        assert desc.field_names == ["id", "username"]
        assert desc.primary_key == "id"
        assert desc.field("id").primary_key is True
        assert desc.field("id").kind == FieldKind.ID
        assert desc.relation == "users"

    def test_define_custom_primary_key(self):
        """Test a declared primary key replaces the implicit one."""
        desc = SchemaDescriptor.define(
            "Country",
            [FieldSpec("code", FieldKind.STRING, primary_key=True), FieldSpec("name", FieldKind.STRING)],
            relation="countries",
        )
        assert desc.field_names == ["code", "name"]
        assert desc.primary_key == "code"

    def test_multiple_primary_keys(self):
        """Test that two primary keys are rejected."""
        with pytest.raises(SchemaError, match="multiple primary keys"):
            SchemaDescriptor.define(
                "Pair",
                [
                    FieldSpec("a", FieldKind.INTEGER, primary_key=True),
                    FieldSpec("b", FieldKind.INTEGER, primary_key=True),
                ],
            )

    def test_duplicate_field(self):
        """Test that duplicate field names are rejected."""
        with pytest.raises(SchemaError, match="duplicate field 'name'"):
            SchemaDescriptor.define(
                "Tag", [FieldSpec("name", FieldKind.STRING), FieldSpec("name", FieldKind.STRING)]
            )

    def test_belongs_to_adds_foreign_key(self):
        """Test that belongs_to declares its foreign key field."""
        desc = SchemaDescriptor.define(
            "Post",
            [FieldSpec("title", FieldKind.STRING)],
            relationships=[Relationship.belongs_to("author", "User", foreign_key="user_id")],
        )
        assert desc.field_names == ["id", "title", "user_id"]
        assert desc.field("user_id").kind == FieldKind.ID

    def test_relationship_clashing_with_field(self):
        """Test that a relationship cannot share a field's name."""
        with pytest.raises(SchemaError, match="clashes"):
            SchemaDescriptor.define(
                "Post",
                [FieldSpec("author", FieldKind.STRING)],
                relationships=[Relationship.belongs_to("author", "User")],
            )

    def test_unknown_field(self):
        """Test that looking up a missing field raises UnknownFieldError."""
        desc = SchemaDescriptor.define("User", [FieldSpec("username", FieldKind.STRING)])

        with pytest.raises(UnknownFieldError) as exc_info:
            desc.field("nickname")
        assert isinstance(exc_info.value, KeyError)
        assert exc_info.value.field_name == "nickname"
        assert "nickname" in str(exc_info.value)

    def test_persisted_fields_skip_virtual(self):
        """Test that virtual fields are not persisted."""
        desc = SchemaDescriptor.define(
            "User",
            [FieldSpec("username", FieldKind.STRING), FieldSpec("password", FieldKind.STRING, virtual=True)],
        )
        assert [f.name for f in desc.persisted_fields] == ["id", "username"]
        assert desc.has_field("password") is True

    def test_defaults(self):
        """Test the default value of every field."""
        desc = SchemaDescriptor.define(
            "User",
            [FieldSpec("admin", FieldKind.BOOLEAN, default=False), FieldSpec("name", FieldKind.STRING)],
        )
        assert desc.defaults() == {"id": None, "admin": False, "name": None}


class TestSchemaRegistry:
    """Tests for SchemaRegistry."""

    @pytest.fixture
    def registry(self):
        """Create a registry with users and posts."""
        registry = SchemaRegistry()
        registry.register(
            SchemaDescriptor.define(
                "User",
                [FieldSpec("username", FieldKind.STRING)],
                relationships=[Relationship.has_many("posts", "Post", owner="User")],
            )
        )
        registry.register(
            SchemaDescriptor.define(
                "Post",
                [FieldSpec("title", FieldKind.STRING)],
                relationships=[Relationship.belongs_to("author", "User", foreign_key="user_id")],
            )
        )
        return registry

    def test_lookup(self, registry):
        """Test lookups by schema and relation name."""
        assert "User" in registry
        assert len(registry) == 2
        assert registry.list_schemas() == ["User", "Post"]
        assert registry.get("Nope") is None
        assert registry.for_relation("posts").name == "Post"
        assert registry.resolve("users").name == "User"
        assert registry.resolve("User").name == "User"

    def test_get_or_raise(self, registry):
        """Test that get_or_raise raises for unknown schemas."""
        with pytest.raises(KeyError, match="Comment"):
            registry.get_or_raise("Comment")

    def test_duplicate_name(self, registry):
        """Test that a schema name can only be registered once."""
        with pytest.raises(SchemaError, match="already defined"):
            registry.register(SchemaDescriptor.define("User", [], relation="people"))

    def test_duplicate_relation(self, registry):
        """Test that two schemas cannot map the same relation."""
        with pytest.raises(SchemaError, match="already mapped"):
            registry.register(SchemaDescriptor.define("Member", [], relation="users"))

    def test_resolve_has_many(self, registry):
        """Test resolving a has_many association to its join keys."""
        related, owner_key, related_key = registry.resolve_relationship(
            registry.get("User"), "posts"
        )
        assert related.name == "Post"
        assert owner_key == "id"
        assert related_key == "user_id"

    def test_resolve_belongs_to(self, registry):
        """Test resolving a belongs_to association to its join keys."""
        related, owner_key, related_key = registry.resolve_relationship(
            registry.get("Post"), "author"
        )
        assert related.name == "User"
        assert owner_key == "user_id"
        assert related_key == "id"

    def test_resolve_unknown_relationship(self, registry):
        """Test that an undeclared association raises KeyError."""
        with pytest.raises(KeyError, match="no relationship 'comments'"):
            registry.resolve_relationship(registry.get("User"), "comments")

    def test_relationship_kinds(self):
        """Test relationship constructors."""
        rel = Relationship.has_one("profile", "Profile", owner="BlogAuthor")
        assert rel.kind == RelationshipKind.HAS_ONE
        assert rel.related_key == "blog_author_id"
        assert rel.owner_key == "id"
