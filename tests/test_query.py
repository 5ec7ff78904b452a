"""Tests for expressions and the query builder."""

import pytest

from typed_records.expressions import (
    Aggregate,
    Binding,
    BinaryOp,
    BoolOp,
    FieldRef,
    InList,
    Literal,
    OrderItem,
    and_,
    count,
    desc,
    field,
    fragment,
    or_,
    to_order_item,
)
from typed_records.query import Filter, Join, Limit, OrderBy, Source, assoc, from_
from typed_records.types import FieldKind, FieldSpec, SchemaDescriptor


class TestExpressions:
    """Tests for expression builders."""

    def test_field_paths(self):
        """Test the two ways of referencing a field."""
        assert field("u.username") == FieldRef("u", "username")
        assert field("u", "username") == FieldRef("u", "username")

    @pytest.mark.parametrize("path", ["username", ".username", "u."])
    def test_bad_field_path(self, path):
        """Test that field paths need a binding and a name."""
        with pytest.raises(ValueError, match="binding.field"):
            field(path)

    def test_comparisons_wrap_literals(self):
        """Test that plain values become literals."""
        expr = field("u.age").ge(18)
        assert expr == BinaryOp(">=", FieldRef("u", "age"), Literal(18))

    def test_in_list(self):
        """Test membership expressions."""
        expr = field("u.id").in_([1, 2])
        assert expr == InList(FieldRef("u", "id"), (Literal(1), Literal(2)))
        assert field("u.id").not_in([]).negate is True

    def test_boolean_combinators(self):
        """Test and_/or_ flattening of single operands."""
        a = field("u.age").gt(1)
        b = field("u.age").lt(9)
        assert and_(a) == a
        assert and_(a, b) == BoolOp("and", (a, b))
        assert or_(a, b).op == "or"
        with pytest.raises(ValueError):
            and_()

    def test_structural_equality(self):
        """Test that equally built expressions compare and hash equal."""
        first = field("u.age").add(1).gt(30)
        second = field("u.age").add(1).gt(30)
        assert first == second
        assert hash(first) == hash(second)

    def test_list_literal_becomes_tuple(self):
        """Test that list literals are frozen."""
        assert Literal([1, 2]).value == (1, 2)

    def test_count(self):
        """Test count variants."""
        assert count() == Aggregate("count")
        assert count("u.id", distinct=True) == Aggregate("count", FieldRef("u", "id"), True)
        with pytest.raises(ValueError):
            count(distinct=True)

    def test_fragment(self):
        """Test fragment parameters are kept in order."""
        frag = fragment("lower(?) = ?", field("u.username"), "ada")
        assert frag.params == (FieldRef("u", "username"), "ada")

    def test_binding_shorthand(self):
        """Test building field references from a binding."""
        u = Binding("u")
        assert u.username == FieldRef("u", "username")
        assert u["inserted_at"] == FieldRef("u", "inserted_at")

    def test_order_items(self):
        """Test normalizing order_by arguments."""
        assert to_order_item("u.name") == OrderItem(FieldRef("u", "name"), "asc")
        assert to_order_item(("u.name", "DESC")) == OrderItem(FieldRef("u", "name"), "desc")
        assert desc("u.name").direction == "desc"
        with pytest.raises(ValueError, match="direction"):
            OrderItem(FieldRef("u", "name"), "sideways")


class TestQueryBuilder:
    """Tests for query IR nodes."""

    def test_from_defaults(self):
        """Test default bindings for relations and descriptors."""
        users = SchemaDescriptor.define("User", [FieldSpec("username", FieldKind.STRING)])

        assert from_("users") == Source("users", "users")
        assert from_(users) == Source("User", "users")
        assert from_(users, as_="u") == Source("User", "u")

    def test_chain(self):
        """Test that each builder call wraps the previous node."""
        query = from_("users", as_="u").where(field("u.age").gt(1)).limit(10)

        nodes = query.nodes()
        assert [type(n) for n in nodes] == [Source, Filter, Limit]
        assert query.parent is nodes[1]

    def test_immutable_reuse(self):
        """Test that extending a query leaves the original untouched."""
        base = from_("users", as_="u").where(field("u.active").eq(True))
        recent = base.order_by(desc("u.inserted_at")).limit(10)
        admins = base.where(field("u.admin").eq(True))

        assert isinstance(base, Filter)
        assert recent.parent.parent is base
        assert admins.parent is base
        assert len(base.nodes()) == 2
        with pytest.raises(Exception):
            base.predicate = None

    def test_equal_queries(self):
        """Test that equally built queries are equal."""
        first = from_("users", as_="u").where(field("u.age").gt(1))
        second = from_("users", as_="u").where(field("u.age").gt(1))
        assert first == second
        assert hash(first) == hash(second)

    def test_filters(self):
        """Test where, or_where and having flags."""
        q = from_("users", as_="u")
        assert q.where(field("u.a").eq(1)).conjunction == "and"
        assert q.or_where(field("u.a").eq(1)).conjunction == "or"
        assert q.having(count().gt(1)).in_having is True

    def test_join(self):
        """Test join nodes."""
        users = SchemaDescriptor.define("User", [])
        q = from_("posts", as_="p").join(users, as_="u", on=field("u.id").eq(field("p.user_id")))

        assert isinstance(q, Join)
        assert q.target == "User"
        assert q.kind == "inner"
        assert from_("users", as_="u").join(assoc("u", "posts"), as_="p", kind="left").kind == "left"

    def test_nodes_take_parent_first(self):
        """Test that every node is built from its parent and its own fields."""
        root = Source("users", "u")

        join = Join(root, "posts", "p", field("p.user_id").eq(field("u.id")))
        assert join.parent is root
        assert join.kind == "inner"
        assert Filter(join, field("p.id").eq(1)).parent is join
        assert root.parent is None

    def test_literal_types_are_distinct(self):
        """Test that literals of equal value but different type differ."""
        assert Literal(True) != Literal(1)
        assert Literal(1) != Literal(1.0)
        assert Literal((1, True)) != Literal((1, 1))
        assert Literal(1) == Literal(1)
        assert from_("users", as_="u").where(field("u.a").eq(True)) != from_("users", as_="u").where(
            field("u.a").eq(1)
        )
        assert fragment("? > 0", True) != fragment("? > 0", 1)
        assert from_("users").fragment("LIMIT ?", 1) != from_("users").fragment("LIMIT ?", True)

    def test_bad_join_kind(self):
        """Test that only inner and left joins are supported."""
        with pytest.raises(ValueError, match="join kind"):
            from_("users", as_="u").join("posts", as_="p", on=field("p.id").eq(1), kind="cross")

    def test_order_by_keeps_precedence(self):
        """Test that order_by items keep their order."""
        q = from_("users", as_="u").order_by(desc("u.inserted_at"), "u.username")
        assert isinstance(q, OrderBy)
        assert [i.direction for i in q.items] == ["desc", "asc"]

    @pytest.mark.parametrize("value", [-1, 1.5, True, "3"])
    def test_bad_limit(self, value):
        """Test that limit and offset need non-negative integers."""
        with pytest.raises(ValueError, match="non-negative integer"):
            from_("users").limit(value)
        with pytest.raises(ValueError, match="non-negative integer"):
            from_("users").offset(value)

    def test_select_strings(self):
        """Test that select accepts field paths."""
        q = from_("users", as_="u").select("u.username", count())
        assert q.exprs == (FieldRef("u", "username"), Aggregate("count"))
