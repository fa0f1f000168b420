from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterator


class WSError(Exception):
    """Base class for interpreter errors."""


class WSParseError(WSError):
    """Raised when decoding fails."""

    def __init__(self, message: str, *, line: int = 0, column: int = 0) -> None:
        super().__init__(message)
        self.message = message
        self.line = line
        self.column = column


class TokenKind(Enum):
    SPACE = "S"
    TAB = "T"
    LF = "L"


@dataclass(frozen=True)
class Token:
    kind: TokenKind
    line: int
    column: int


class SourceType(Enum):
    WHITESPACE = "whitespace"
    STL = "stl"

    @classmethod
    def from_name(cls, name: str) -> "SourceType":
        key = name.strip().lower()
        if key in _SOURCE_TYPE_ALIASES:
            return _SOURCE_TYPE_ALIASES[key]
        choices = ", ".join(sorted(_SOURCE_TYPE_ALIASES))
        raise ValueError(f"Unknown source type '{name}' (expected one of: {choices})")


_SOURCE_TYPE_ALIASES: Dict[str, SourceType] = {
    "whitespace": SourceType.WHITESPACE,
    "ws": SourceType.WHITESPACE,
    "stl": SourceType.STL,
}

ALPHABETS: Dict[SourceType, Dict[str, TokenKind]] = {
    SourceType.WHITESPACE: {" ": TokenKind.SPACE, "\t": TokenKind.TAB, "\n": TokenKind.LF},
    SourceType.STL: {"S": TokenKind.SPACE, "T": TokenKind.TAB, "L": TokenKind.LF},
}


class Lexer:
    """Turns source text into the three-valued token stream.

    Every character outside the alphabet of the selected encoding is a
    comment and is skipped. Tokens are produced lazily, so a decoding pass
    consumes the lexer; create a new one to decode again.
    """

    def __init__(self, text: str, filename: str = "<string>", source_type: SourceType = SourceType.WHITESPACE) -> None:
        self.text = text
        self.filename = filename
        self.source_type = source_type
        self.index = 0
        self.line = 1
        self.column = 1

    def __iter__(self) -> Iterator[Token]:
        return self.tokens()

    def tokens(self) -> Iterator[Token]:
        alphabet = ALPHABETS[self.source_type]
        text = self.text
        n = len(text)
        while self.index < n:
            ch = text[self.index]
            kind = alphabet.get(ch)
            line, col = self.line, self.column
            self._advance()
            if kind is not None:
                yield Token(kind, line, col)

    def _advance(self) -> None:
        # Line numbers follow the physical text, also for the STL encoding.
        if self.text[self.index] == "\n":
            self.line += 1
            self.column = 1
        else:
            self.column += 1
        self.index += 1


def to_stl(text: str, source_type: SourceType = SourceType.WHITESPACE) -> str:
    """Render a program's significant tokens in the STL mnemonic encoding."""
    return "".join(tok.kind.value for tok in Lexer(text, source_type=source_type))
