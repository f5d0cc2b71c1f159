"""Tokenizer for SDL source text.

Keywords are contextual: every word is lexed as IDENT and the parser decides
what it means from its position, so names such as ``value`` or ``source``
stay usable as identifiers.
"""

import bisect
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Tuple

from sdl.core.types import DateValue, Diagnostic, Duration, Span, error


class TokenType(Enum):
    NUMBER = "number"
    PERCENTAGE = "percentage"
    CURRENCY = "currency"
    STRING = "string"
    DATE = "date"
    DURATION = "duration"
    IDENT = "identifier"

    LBRACE = "{"
    RBRACE = "}"
    LBRACKET = "["
    RBRACKET = "]"
    LPAREN = "("
    RPAREN = ")"
    COLON = ":"
    SEMICOLON = ";"
    COMMA = ","
    DOT = "."
    ARROW = "->"
    PLUS_MINUS = "±"

    PLUS = "+"
    MINUS = "-"
    STAR = "*"
    SLASH = "/"
    CARET = "^"
    PERCENT = "%"

    ASSIGN = "="
    EQ = "=="
    NEQ = "!="
    LT = "<"
    LE = "<="
    GT = ">"
    GE = ">="

    EOF = "end of input"


@dataclass(frozen=True)
class Token:
    type: TokenType
    text: str
    span: Span
    value: Any = None  # decoded payload for literal tokens

    def is_word(self, *words: str) -> bool:
        return self.type == TokenType.IDENT and self.text in words


CURRENCY_CODES = frozenset(["EUR", "USD", "GBP", "CHF", "JPY", "CNY"])
MAGNITUDES = {"K": 1e3, "M": 1e6, "B": 1e9, "T": 1e12}

_DATE_RE = re.compile(r"(\d{4})-(\d{2})(?:-(\d{2}))?(?![\d.])")
_NUMBER_RE = re.compile(r"\d+(?:\.\d+)?(?:[eE][+-]?\d+)?")
_IDENT_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_CURRENCY_RE = re.compile(r"[ \t]*([A-Z]{3})(?![A-Za-z0-9_])")
_WORD_BOUNDARY = re.compile(r"(?![A-Za-z0-9_])")

_OPERATORS: List[Tuple[str, TokenType]] = [
    ("+/-", TokenType.PLUS_MINUS),
    ("->", TokenType.ARROW),
    ("→", TokenType.ARROW),
    ("==", TokenType.EQ),
    ("!=", TokenType.NEQ),
    ("<=", TokenType.LE),
    (">=", TokenType.GE),
    ("±", TokenType.PLUS_MINUS),
    ("{", TokenType.LBRACE),
    ("}", TokenType.RBRACE),
    ("[", TokenType.LBRACKET),
    ("]", TokenType.RBRACKET),
    ("(", TokenType.LPAREN),
    (")", TokenType.RPAREN),
    (":", TokenType.COLON),
    (";", TokenType.SEMICOLON),
    (",", TokenType.COMMA),
    (".", TokenType.DOT),
    ("+", TokenType.PLUS),
    ("-", TokenType.MINUS),
    ("*", TokenType.STAR),
    ("/", TokenType.SLASH),
    ("^", TokenType.CARET),
    ("%", TokenType.PERCENT),
    ("=", TokenType.ASSIGN),
    ("<", TokenType.LT),
    (">", TokenType.GT),
]

_ESCAPES = {"n": "\n", "t": "\t", '"': '"', "\\": "\\"}


class Lexer:
    """Single-pass scanner producing tokens plus SDL-E001 diagnostics."""

    def __init__(self, source: str):
        self.source = source
        self.pos = 0
        self.tokens: List[Token] = []
        self.diagnostics: List[Diagnostic] = []
        self._line_starts = [0] + [m.end() for m in re.finditer(r"\n", source)]

    def span_at(self, offset: int) -> Span:
        line = bisect.bisect_right(self._line_starts, offset)
        return Span(line, offset - self._line_starts[line - 1] + 1)

    def tokenize(self) -> List[Token]:
        src = self.source
        while True:
            self._skip_trivia()
            if self.pos >= len(src):
                break
            start = self.pos
            ch = src[start]
            ident = _IDENT_RE.match(src, start)

            if "0" <= ch <= "9":
                self._lex_number(start)
            elif ch == '"':
                self._lex_string(start)
            elif ident:
                self._emit(TokenType.IDENT, start, ident.end())
            else:
                for text, token_type in _OPERATORS:
                    if src.startswith(text, start):
                        self._emit(token_type, start, start + len(text))
                        break
                else:
                    self.diagnostics.append(error(
                        "SDL-E001", f"Unexpected character {ch!r}", self.span_at(start)))
                    self.pos += 1

        self.tokens.append(Token(TokenType.EOF, "", self.span_at(len(src))))
        return self.tokens

    # ------------------------------------------------------------------

    def _emit(self, token_type: TokenType, start: int, end: int, value: Any = None) -> None:
        self.tokens.append(Token(token_type, self.source[start:end], self.span_at(start), value))
        self.pos = end

    def _skip_trivia(self) -> None:
        src = self.source
        while self.pos < len(src):
            ch = src[self.pos]
            if ch.isspace():
                self.pos += 1
            elif src.startswith("//", self.pos):
                newline = src.find("\n", self.pos)
                self.pos = len(src) if newline == -1 else newline + 1
            elif src.startswith("/*", self.pos):
                close = src.find("*/", self.pos + 2)
                if close == -1:
                    self.diagnostics.append(error(
                        "SDL-E001", "Unterminated block comment", self.span_at(self.pos)))
                    self.pos = len(src)
                else:
                    self.pos = close + 2
            else:
                return

    def _lex_number(self, start: int) -> None:
        src = self.source

        date = _DATE_RE.match(src, start)
        if date:
            year, month, day = date.groups()
            value = DateValue(int(year), int(month), int(day) if day else None)
            try:
                value.to_date()
            except ValueError:
                self.diagnostics.append(error(
                    "SDL-E001", f"Invalid date {date.group()!r}", self.span_at(start)))
                value = DateValue(int(year))
            self._emit(TokenType.DATE, start, date.end(), value)
            return

        number = _NUMBER_RE.match(src, start)
        end = number.end()
        amount = float(number.group())

        suffix = src[end:end + 1]
        if suffix == "%":
            self._emit(TokenType.PERCENTAGE, start, end + 1, amount)
            return

        if suffix in ("y", "m", "w", "d", "s") and _WORD_BOUNDARY.match(src, end + 1):
            self._emit(TokenType.DURATION, start, end + 1, Duration(amount, suffix))
            return

        magnitude = None
        if suffix in MAGNITUDES and _WORD_BOUNDARY.match(src, end + 1):
            magnitude = suffix
            amount *= MAGNITUDES[suffix]
            end += 1

        currency = _CURRENCY_RE.match(src, end)
        if currency and currency.group(1) in CURRENCY_CODES:
            self._emit(TokenType.CURRENCY, start, currency.end(),
                       (amount, currency.group(1), magnitude))
            return

        self._emit(TokenType.NUMBER, start, end, amount)

    def _lex_string(self, start: int) -> None:
        src = self.source
        chars = []
        pos = start + 1
        while pos < len(src):
            ch = src[pos]
            if ch == '"':
                self._emit(TokenType.STRING, start, pos + 1, "".join(chars))
                return
            if ch == "\n":
                break
            if ch == "\\" and pos + 1 < len(src):
                chars.append(_ESCAPES.get(src[pos + 1], src[pos + 1]))
                pos += 2
                continue
            chars.append(ch)
            pos += 1

        self.diagnostics.append(error(
            "SDL-E001", "Unterminated string literal", self.span_at(start),
            hint='Close the string with a double quote (") on the same line.'))
        self._emit(TokenType.STRING, start, pos, "".join(chars))


def tokenize(source: str) -> Tuple[List[Token], List[Diagnostic]]:
    lexer = Lexer(source)
    tokens = lexer.tokenize()
    return tokens, lexer.diagnostics
