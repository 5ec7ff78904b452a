"""Parsing module for the schema DSL and raw query fragments."""

from typed_records.parsing.fragment_lexer import FragmentLexer, Placeholder
from typed_records.parsing.schema_parser import SchemaParser

__all__ = [
    "FragmentLexer",
    "Placeholder",
    "SchemaParser",
]
