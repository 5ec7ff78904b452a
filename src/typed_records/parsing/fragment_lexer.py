"""Lexer for raw SQL fragments with positional placeholders.

A fragment is target-language text in which ``?`` marks a parameter
slot. Question marks inside single-quoted string literals or
double-quoted identifiers are part of the text, and ``\\?`` produces a
literal question mark.
"""

from __future__ import annotations

from dataclasses import dataclass

import ply.lex as lex


@dataclass(frozen=True)
class Placeholder:
    """A parameter slot within a fragment."""

    position: int


class FragmentLexer:
    """Lexer for splitting fragment text around placeholders."""

    tokens = [
        "ESCAPED_PLACEHOLDER",
        "PLACEHOLDER",
        "STRING",
        "QUOTED_IDENTIFIER",
        "TEXT",
    ]

    t_ignore = ""

    def __init__(self) -> None:
        self.lexer: lex.LexToken = None  # type: ignore

    def t_ESCAPED_PLACEHOLDER(self, t: lex.LexToken) -> lex.LexToken:
        r"\\\?"
        t.value = "?"
        return t

    def t_PLACEHOLDER(self, t: lex.LexToken) -> lex.LexToken:
        r"\?"
        return t

    def t_STRING(self, t: lex.LexToken) -> lex.LexToken:
        r"'([^']|'')*'"
        return t

    def t_QUOTED_IDENTIFIER(self, t: lex.LexToken) -> lex.LexToken:
        r'"([^"]|"")*"'
        return t

    def t_TEXT(self, t: lex.LexToken) -> lex.LexToken:
        r"[^?'\"\\]+|\\"
        return t

    def t_error(self, t: lex.LexToken) -> None:
        raise SyntaxError(f"Unterminated quote '{t.value[0]}' at position {t.lexpos}")

    def build(self, **kwargs) -> None:  # type: ignore
        """Build the lexer."""
        self.lexer = lex.lex(module=self, **kwargs)

    def tokenize(self, data: str) -> list[lex.LexToken]:
        """Tokenize the input and return all tokens."""
        if self.lexer is None:
            self.build()
        # Clones share the compiled master regex, so tokenizing is reentrant
        lexer = self.lexer.clone()
        lexer.input(data)
        tokens = []
        while True:
            tok = lexer.token()
            if tok is None:
                break
            tokens.append(tok)
        return tokens

    def split(self, data: str) -> list[str | Placeholder]:
        """Split fragment text into literal text chunks and placeholders.

        Adjacent text tokens are merged, so the result alternates between
        strings and ``Placeholder`` markers.
        """
        parts: list[str | Placeholder] = []
        buffer: list[str] = []
        count = 0
        for tok in self.tokenize(data):
            if tok.type == "PLACEHOLDER":
                if buffer:
                    parts.append("".join(buffer))
                    buffer = []
                parts.append(Placeholder(count))
                count += 1
            else:
                buffer.append(tok.value)
        if buffer:
            parts.append("".join(buffer))
        return parts

    def count_placeholders(self, data: str) -> int:
        """Return the number of parameter slots in the fragment."""
        return sum(1 for part in self.split(data) if isinstance(part, Placeholder))
