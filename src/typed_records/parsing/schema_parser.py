"""Parser for the schema declaration DSL."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import ply.yacc as yacc

from typed_records.casting import CastFailure, cast_value
from typed_records.errors import SchemaError
from typed_records.parsing.schema_lexer import SchemaLexer
from typed_records.types import (
    FIELD_KIND_NAMES,
    FieldKind,
    FieldSpec,
    Relationship,
    RelationshipKind,
    SchemaDescriptor,
    SchemaRegistry,
)


@dataclass
class FieldDecl:
    """A field declaration before resolution."""

    name: str
    kind_name: str
    virtual: bool = False
    primary_key: bool = False
    default: Any = None
    lineno: int = 0


@dataclass
class RelationshipDecl:
    """An association declaration before resolution."""

    kind: RelationshipKind
    name: str
    related: str
    foreign_key: str | None = None


@dataclass
class TimestampsDecl:
    """The ``timestamps`` shorthand."""

    pass


@dataclass
class SchemaDecl:
    """A schema declaration before resolution."""

    name: str
    relation: str | None = None
    members: list[FieldDecl | RelationshipDecl | TimestampsDecl] = field(default_factory=list)


class SchemaParser:
    """Parser for the schema declaration DSL."""

    tokens = SchemaLexer.tokens

    def __init__(self) -> None:
        self.lexer = SchemaLexer()
        self.lexer.build()
        self.parser: yacc.LRParser = None  # type: ignore

    def p_schema_file(self, p: yacc.YaccProduction) -> None:
        """schema_file : statement_list"""
        p[0] = p[1]

    def p_schema_file_empty(self, p: yacc.YaccProduction) -> None:
        """schema_file : """
        p[0] = []

    def p_statement_list_single(self, p: yacc.YaccProduction) -> None:
        """statement_list : schema_def"""
        p[0] = [p[1]]

    def p_statement_list_multiple(self, p: yacc.YaccProduction) -> None:
        """statement_list : statement_list schema_def"""
        p[0] = p[1] + [p[2]]

    def p_schema_def(self, p: yacc.YaccProduction) -> None:
        """schema_def : SCHEMA IDENTIFIER relation_clause LBRACE member_list RBRACE
                      | SCHEMA IDENTIFIER relation_clause LBRACE member_list COMMA RBRACE"""
        p[0] = SchemaDecl(name=p[2], relation=p[3], members=p[5])

    def p_schema_def_empty(self, p: yacc.YaccProduction) -> None:
        """schema_def : SCHEMA IDENTIFIER relation_clause LBRACE RBRACE"""
        p[0] = SchemaDecl(name=p[2], relation=p[3], members=[])

    def p_relation_clause(self, p: yacc.YaccProduction) -> None:
        """relation_clause : AS IDENTIFIER
                           | AS STRING"""
        p[0] = p[2]

    def p_relation_clause_empty(self, p: yacc.YaccProduction) -> None:
        """relation_clause : """
        p[0] = None

    def p_member_list_single(self, p: yacc.YaccProduction) -> None:
        """member_list : member"""
        p[0] = [p[1]]

    def p_member_list_multiple(self, p: yacc.YaccProduction) -> None:
        """member_list : member_list COMMA member"""
        p[0] = p[1] + [p[3]]

    def p_member(self, p: yacc.YaccProduction) -> None:
        """member : field_def
                  | relationship_def"""
        p[0] = p[1]

    def p_member_timestamps(self, p: yacc.YaccProduction) -> None:
        """member : TIMESTAMPS"""
        p[0] = TimestampsDecl()

    def p_field_def(self, p: yacc.YaccProduction) -> None:
        """field_def : IDENTIFIER COLON IDENTIFIER modifier_list default_clause"""
        modifiers = p[4]
        p[0] = FieldDecl(
            name=p[1],
            kind_name=p[3],
            virtual="virtual" in modifiers,
            primary_key="primary_key" in modifiers,
            default=p[5],
            lineno=p.lineno(1),
        )

    def p_modifier_list_empty(self, p: yacc.YaccProduction) -> None:
        """modifier_list : """
        p[0] = []

    def p_modifier_list(self, p: yacc.YaccProduction) -> None:
        """modifier_list : modifier_list VIRTUAL
                         | modifier_list PRIMARY_KEY"""
        p[0] = p[1] + [p[2]]

    def p_default_clause_empty(self, p: yacc.YaccProduction) -> None:
        """default_clause : """
        p[0] = None

    def p_default_clause(self, p: yacc.YaccProduction) -> None:
        """default_clause : EQUALS literal"""
        p[0] = p[2]

    def p_literal(self, p: yacc.YaccProduction) -> None:
        """literal : INTEGER
                   | FLOAT
                   | STRING"""
        p[0] = p[1]

    def p_literal_true(self, p: yacc.YaccProduction) -> None:
        """literal : TRUE"""
        p[0] = True

    def p_literal_false(self, p: yacc.YaccProduction) -> None:
        """literal : FALSE"""
        p[0] = False

    def p_literal_null(self, p: yacc.YaccProduction) -> None:
        """literal : NULL"""
        p[0] = None

    def p_relationship_def(self, p: yacc.YaccProduction) -> None:
        """relationship_def : relationship_kind IDENTIFIER COLON IDENTIFIER foreign_key_clause"""
        p[0] = RelationshipDecl(kind=p[1], name=p[2], related=p[4], foreign_key=p[5])

    def p_relationship_kind(self, p: yacc.YaccProduction) -> None:
        """relationship_kind : BELONGS_TO
                             | HAS_MANY
                             | HAS_ONE"""
        p[0] = RelationshipKind(p[1])

    def p_foreign_key_clause_empty(self, p: yacc.YaccProduction) -> None:
        """foreign_key_clause : """
        p[0] = None

    def p_foreign_key_clause(self, p: yacc.YaccProduction) -> None:
        """foreign_key_clause : FOREIGN_KEY IDENTIFIER"""
        p[0] = p[2]

    def p_error(self, p: yacc.YaccProduction) -> None:
        if p:
            raise SyntaxError(f"Syntax error at '{p.value}' (line {p.lineno})")
        else:
            raise SyntaxError("Syntax error at end of input")

    def build(self, **kwargs: Any) -> None:
        """Build the parser."""
        self.parser = yacc.yacc(module=self, start="schema_file", **kwargs)

    def parse(self, data: str, registry: SchemaRegistry | None = None) -> SchemaRegistry:
        """Parse schema declarations into a registry.

        Args:
            data: DSL text.
            registry: Existing registry to extend. A new one is created
                when omitted.

        Returns:
            The registry holding every declared schema.

        Raises:
            SyntaxError: On malformed input.
            SchemaError: On unknown kinds, bad defaults, duplicate names
                or relationships to undeclared schemas.
        """
        if self.parser is None:
            self.build(debug=False, write_tables=False)

        if registry is None:
            registry = SchemaRegistry()

        self.lexer.lexer.lineno = 1
        decls = self.parser.parse(data, lexer=self.lexer.lexer)
        if decls is None:
            decls = []

        descriptors = [self._resolve_decl(decl) for decl in decls]
        for descriptor in descriptors:
            registry.register(descriptor)

        # Relationships may point forward, so they are checked once all are registered
        for descriptor in descriptors:
            for rel in descriptor.relationships:
                try:
                    registry.resolve_relationship(descriptor, rel.name)
                except KeyError as e:
                    raise SchemaError(
                        f"Schema '{descriptor.name}': cannot resolve relationship "
                        f"'{rel.name}': {e.args[0]}"
                    ) from None

        return registry

    def _resolve_decl(self, decl: SchemaDecl) -> SchemaDescriptor:
        """Resolve a parsed schema declaration into a descriptor."""
        fields: list[FieldSpec] = []
        relationships: list[Relationship] = []

        for member in decl.members:
            if isinstance(member, FieldDecl):
                fields.append(self._resolve_field(decl.name, member))
            elif isinstance(member, TimestampsDecl):
                fields.append(FieldSpec("inserted_at", FieldKind.TIMESTAMP))
                fields.append(FieldSpec("updated_at", FieldKind.TIMESTAMP))
            elif member.kind is RelationshipKind.BELONGS_TO:
                relationships.append(
                    Relationship.belongs_to(member.name, member.related, member.foreign_key)
                )
            else:
                pk = next(
                    (m.name for m in decl.members if isinstance(m, FieldDecl) and m.primary_key),
                    "id",
                )
                factory = (
                    Relationship.has_many
                    if member.kind is RelationshipKind.HAS_MANY
                    else Relationship.has_one
                )
                relationships.append(
                    factory(member.name, member.related, decl.name, member.foreign_key, owner_key=pk)
                )

        return SchemaDescriptor.define(
            decl.name, fields, relation=decl.relation, relationships=relationships
        )

    def _resolve_field(self, schema_name: str, decl: FieldDecl) -> FieldSpec:
        """Resolve a field declaration, checking its kind and default."""
        kind = FIELD_KIND_NAMES.get(decl.kind_name)
        if kind is None:
            raise SchemaError(
                f"Schema '{schema_name}': unknown kind '{decl.kind_name}' "
                f"for field '{decl.name}' (line {decl.lineno})"
            )
        try:
            default = cast_value(kind, decl.default)
        except CastFailure:
            raise SchemaError(
                f"Schema '{schema_name}': default {decl.default!r} is not a valid "
                f"{kind.value} for field '{decl.name}'"
            ) from None
        return FieldSpec(
            name=decl.name,
            kind=kind,
            virtual=decl.virtual,
            default=default,
            primary_key=decl.primary_key,
        )
