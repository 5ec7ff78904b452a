"""Tests for the raw fragment lexer."""

import pytest

from typed_records.parsing import FragmentLexer, Placeholder


@pytest.fixture
def lexer():
    """Create a built fragment lexer."""
    lexer = FragmentLexer()
    lexer.build()
    return lexer


class TestFragmentLexer:
    """Tests for FragmentLexer."""

    def test_tokenize(self, lexer):
        """Test token types for text and placeholders."""
        tokens = lexer.tokenize("lower(?) = ?")
        assert [t.type for t in tokens] == ["TEXT", "PLACEHOLDER", "TEXT", "PLACEHOLDER"]

    def test_split(self, lexer):
        """Test splitting text around numbered placeholders."""
        parts = lexer.split("lower(?) = ?")
        assert parts == ["lower(", Placeholder(0), ") = ", Placeholder(1)]

    def test_question_mark_in_string(self, lexer):
        """Test that a question mark inside a string literal is text."""
        parts = lexer.split("title <> 'why?' AND id = ?")
        assert parts == ["title <> 'why?' AND id = ", Placeholder(0)]

    def test_question_mark_in_quoted_identifier(self, lexer):
        """Test that a question mark inside a quoted identifier is text."""
        assert lexer.split('"odd?col" IS NULL') == ['"odd?col" IS NULL']

    def test_doubled_quote(self, lexer):
        """Test that doubled quotes stay inside the literal."""
        parts = lexer.split("name = 'it''s?' OR name = ?")
        assert parts == ["name = 'it''s?' OR name = ", Placeholder(0)]

    def test_escaped_placeholder(self, lexer):
        """Test that a backslash-escaped question mark is emitted literally."""
        parts = lexer.split("data \\? 'key' AND id = ?")
        assert parts == ["data ? 'key' AND id = ", Placeholder(0)]

    def test_lone_backslash(self, lexer):
        """Test that other backslashes are kept as text."""
        assert lexer.split("a \\ b") == ["a \\ b"]

    def test_count_placeholders(self, lexer):
        """Test counting parameter slots."""
        assert lexer.count_placeholders("? + ? * '?'") == 2
        assert lexer.count_placeholders("now()") == 0
        assert lexer.count_placeholders("") == 0

    def test_unterminated_string(self, lexer):
        """Test that an unterminated literal is rejected."""
        with pytest.raises(SyntaxError, match="Unterminated quote"):
            lexer.split("name = 'oops")

    def test_reentrant(self, lexer):
        """Test that splitting one fragment does not disturb another."""
        first = lexer.split("a = ?")
        second = lexer.split("b = ? AND c = ?")
        assert first == ["a = ", Placeholder(0)]
        assert second == ["b = ", Placeholder(0), " AND c = ", Placeholder(1)]

    def test_lazy_build(self):
        """Test that tokenizing builds the lexer on first use."""
        assert FragmentLexer().split("?") == [Placeholder(0)]
