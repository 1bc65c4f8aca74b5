from __future__ import annotations
from dataclasses import dataclass
from typing import Iterator, List, Optional


class TBError(Exception):
    """Base class for Taebaek errors."""

    kind = "Error"

    def __init__(self, message: str, *, kind: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind

    @property
    def fatal(self) -> bool:
        return self.kind in FATAL_KINDS


class TBParseError(TBError):
    """Raised when the tokenizer cannot classify the input."""

    kind = "MalformedKeyword"


# Error kinds that end the whole run instead of the current statement.
FATAL_KINDS = frozenset(
    {
        "MalformedKeyword",
        "UnknownToken",
        "StepLimitExceeded",
        "NestingLimitExceeded",
        "Internal",
    }
)


@dataclass
class Token:
    type: str
    value: str
    line: int
    column: int


TEXT = "TEXT"
VAR_DECL = "VAR_DECL"
VAR_ASSIGN = "VAR_ASSIGN"
ADD = "ADD"
SUB = "SUB"
MUL = "MUL"
DIV = "DIV"
MOD = "MOD"
IF = "IF"
ELSE = "ELSE"
ELSEIF = "ELSEIF"
FOR = "FOR"
IMPORT = "IMPORT"
END = "END"

SYMBOLS = {
    "&": VAR_DECL,
    ":": VAR_ASSIGN,
    "+": ADD,
    "-": SUB,
    "*": MUL,
    "/": DIV,
    "%": MOD,
}

KEYWORDS = {
    "if": IF,
    "else": ELSE,
    "elseif": ELSEIF,
    "for": FOR,
    "import": IMPORT,
}

# Leading character -> candidate spellings, longest first.
KEYWORD_LEADERS = {}
for _spelling in sorted(KEYWORDS, key=len, reverse=True):
    KEYWORD_LEADERS.setdefault(_spelling[0], []).append(_spelling)
del _spelling

WHITESPACE = " \t\n\v\f\r"
ALNUM = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"


class Lexer:
    """Lazy tokenizer. ``next_token`` produces one token per call and keeps
    returning END once the input is exhausted."""

    def __init__(self, text: str, filename: str) -> None:
        self.text = text
        self.filename = filename
        self.index = 0
        self.line = 1
        self.column = 1

    def __iter__(self) -> Iterator[Token]:
        while True:
            token = self.next_token()
            yield token
            if token.type == END:
                return

    def tokenize(self) -> List[Token]:
        return list(self)

    def next_token(self) -> Token:
        text = self.text
        n = len(text)
        _advance = self._advance

        while self.index < n and text[self.index] in WHITESPACE:
            _advance()
        if self.index >= n:
            return Token(END, "", self.line, self.column)

        ch: str = text[self.index]
        line, col = self.line, self.column
        if ch in SYMBOLS:
            _advance()
            return Token(SYMBOLS[ch], ch, line, col)
        if ch in KEYWORD_LEADERS:
            return self._consume_keyword(ch)
        return self._consume_text()

    def _consume_keyword(self, leader: str) -> Token:
        line, col = self.line, self.column
        for spelling in KEYWORD_LEADERS[leader]:
            if self.text.startswith(spelling, self.index):
                for _ in spelling:
                    self._advance()
                return Token(KEYWORDS[spelling], spelling, line, col)
        # Report the first character that breaks every candidate spelling.
        matched = 0
        for spelling in KEYWORD_LEADERS[leader]:
            k = 0
            while k < len(spelling) and self.index + k < len(self.text) and self.text[self.index + k] == spelling[k]:
                k += 1
            matched = max(matched, k)
        found = self.text[self.index : self.index + matched + 1]
        expected = ", ".join(f"'{s}'" for s in KEYWORD_LEADERS[leader])
        raise TBParseError(
            f"Malformed keyword '{found}' (expected one of {expected}) at {self.filename}:{line}:{col}"
        )

    def _consume_text(self) -> Token:
        line, col = self.line, self.column
        text = self.text
        n = len(text)
        _advance = self._advance
        start = self.index
        _advance()
        while self.index < n and text[self.index] in ALNUM:
            _advance()
        return Token(TEXT, text[start : self.index], line, col)

    def _advance(self) -> None:
        if self.text[self.index] == "\n":
            self.line += 1
            self.column = 1
        else:
            self.column += 1
        self.index += 1
