"""
SQL Filter Lexical Analyzer.

Tokenizes the SQL-92 subset used by subscription rule filters and actions.

Supports:
- String literals with doubled-quote escapes ('can''t')
- Integer and floating-point literals (including exponents)
- TRUE / FALSE / NULL
- Property references: sys.Label, user.color, color, [name with spaces]
- Parameters: @threshold
- Operators: = <> != < > <= >= + - * / %
- Keywords: AND OR NOT IN IS LIKE ESCAPE EXISTS SET REMOVE

Example:
    >>> tokens = SqlLexer("sys.Label = 'urgent' AND quantity > 10").tokenize()
    >>> [t.type for t in tokens][:3]
    [TokenType.IDENTIFIER, TokenType.EQ, TokenType.STRING]

Author: LocalBus Team
Date: 2026-03-06
"""

from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, List, Optional

from ..exceptions import FilterSyntaxError


class TokenType(Enum):
    """SQL filter token types."""

    # Literals
    STRING = auto()
    INTEGER = auto()
    FLOAT = auto()
    BOOLEAN = auto()
    NULL = auto()

    # Names
    IDENTIFIER = auto()
    PARAMETER = auto()

    # Comparison
    EQ = auto()
    NE = auto()
    LT = auto()
    LE = auto()
    GT = auto()
    GE = auto()

    # Arithmetic
    PLUS = auto()
    MINUS = auto()
    STAR = auto()
    SLASH = auto()
    PERCENT = auto()

    # Keywords
    AND = auto()
    OR = auto()
    NOT = auto()
    IN = auto()
    IS = auto()
    LIKE = auto()
    ESCAPE = auto()
    EXISTS = auto()
    SET = auto()
    REMOVE = auto()

    # Punctuation
    LPAREN = auto()
    RPAREN = auto()
    COMMA = auto()
    SEMICOLON = auto()

    EOF = auto()

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class Position:
    """Source position; offset is 0-indexed, column 1-indexed."""
    offset: int
    column: int

    def __str__(self) -> str:
        return f"column {self.column}"


@dataclass(frozen=True)
class Token:
    """Lexical token with type, parsed value, and source position."""
    type: TokenType
    value: Any
    position: Position

    def __str__(self) -> str:
        if self.type == TokenType.EOF:
            return f"EOF at {self.position}"
        return f"{self.type.name}({self.value!r}) at {self.position}"


class SqlLexer:
    """
    Single-pass lexer for rule filter and action expressions.

    Keywords are case-insensitive. Identifier text is kept verbatim so the
    evaluator can apply its own case rules (system properties are matched
    case-insensitively, user properties are not).
    """

    KEYWORDS = {
        'and': TokenType.AND,
        'or': TokenType.OR,
        'not': TokenType.NOT,
        'in': TokenType.IN,
        'is': TokenType.IS,
        'like': TokenType.LIKE,
        'escape': TokenType.ESCAPE,
        'exists': TokenType.EXISTS,
        'set': TokenType.SET,
        'remove': TokenType.REMOVE,
        'true': TokenType.BOOLEAN,
        'false': TokenType.BOOLEAN,
        'null': TokenType.NULL,
    }

    SINGLE_CHAR_TOKENS = {
        '(': TokenType.LPAREN,
        ')': TokenType.RPAREN,
        ',': TokenType.COMMA,
        ';': TokenType.SEMICOLON,
        '+': TokenType.PLUS,
        '-': TokenType.MINUS,
        '*': TokenType.STAR,
        '/': TokenType.SLASH,
        '%': TokenType.PERCENT,
        '=': TokenType.EQ,
    }

    def __init__(self, input_str: str):
        self.input = input_str
        self.pos = 0

    def _position(self, offset: Optional[int] = None) -> Position:
        offset = self.pos if offset is None else offset
        return Position(offset=offset, column=offset + 1)

    def _peek(self, offset: int = 0) -> Optional[str]:
        pos = self.pos + offset
        if pos < len(self.input):
            return self.input[pos]
        return None

    def _advance(self) -> Optional[str]:
        if self.pos >= len(self.input):
            return None
        char = self.input[self.pos]
        self.pos += 1
        return char

    def _error(self, reason: str, offset: Optional[int] = None) -> FilterSyntaxError:
        offset = self.pos if offset is None else offset
        return FilterSyntaxError(self.input, f"{reason} at column {offset + 1}", offset=offset)

    def _read_string(self) -> Token:
        """Read 'text' where '' stands for a single quote."""
        start = self.pos
        self._advance()

        chars = []
        while True:
            char = self._peek()
            if char is None:
                raise self._error("Unclosed string literal", start)
            self._advance()
            if char == "'":
                if self._peek() == "'":
                    chars.append("'")
                    self._advance()
                else:
                    break
            else:
                chars.append(char)

        return Token(TokenType.STRING, ''.join(chars), self._position(start))

    def _read_number(self) -> Token:
        """Read integer or float; signs are handled by the parser."""
        start = self.pos
        chars = []
        has_dot = False
        has_exp = False

        while True:
            char = self._peek()
            if char is None:
                break
            if char.isdigit():
                chars.append(self._advance())
            elif char == '.' and not has_dot and not has_exp:
                has_dot = True
                chars.append(self._advance())
            elif char in 'eE' and not has_exp and chars:
                has_exp = True
                chars.append(self._advance())
                if self._peek() in ('+', '-'):
                    chars.append(self._advance())
            else:
                break

        value_str = ''.join(chars)
        try:
            if has_dot or has_exp:
                return Token(TokenType.FLOAT, float(value_str), self._position(start))
            return Token(TokenType.INTEGER, int(value_str), self._position(start))
        except ValueError:
            raise self._error(f"Invalid number '{value_str}'", start)

    def _read_word(self) -> Token:
        """Read keyword or (possibly dotted) identifier."""
        start = self.pos
        chars = []
        while True:
            char = self._peek()
            if char is not None and (char.isalnum() or char in '_.$'):
                chars.append(self._advance())
            elif char == '[' and chars and chars[-1] == '.':
                # user.[my prop]
                chars.append(self._read_bracketed_name())
            else:
                break

        value = ''.join(chars)
        lower_value = value.lower()
        token_type = self.KEYWORDS.get(lower_value)

        if token_type == TokenType.BOOLEAN:
            return Token(token_type, lower_value == 'true', self._position(start))
        if token_type == TokenType.NULL:
            return Token(token_type, None, self._position(start))
        if token_type is not None:
            return Token(token_type, value, self._position(start))

        if value.endswith('.'):
            raise self._error(f"Incomplete property name '{value}'", start)
        return Token(TokenType.IDENTIFIER, value, self._position(start))

    def _read_bracketed_name(self) -> str:
        """Read [name] and return the text between the brackets."""
        start = self.pos
        self._advance()
        chars = []
        while True:
            char = self._advance()
            if char is None:
                raise self._error("Unclosed bracketed name", start)
            if char == ']':
                break
            chars.append(char)
        if not chars:
            raise self._error("Empty bracketed name", start)
        return ''.join(chars)

    def _read_parameter(self) -> Token:
        start = self.pos
        self._advance()
        chars = []
        while True:
            char = self._peek()
            if char is not None and (char.isalnum() or char == '_'):
                chars.append(self._advance())
            else:
                break
        if not chars:
            raise self._error("Parameter name expected after '@'", start)
        return Token(TokenType.PARAMETER, ''.join(chars), self._position(start))

    def _read_operator(self) -> Token:
        """Read comparison operators that may span two characters."""
        start = self.pos
        char = self._advance()
        nxt = self._peek()

        if char == '<':
            if nxt == '=':
                self._advance()
                return Token(TokenType.LE, '<=', self._position(start))
            if nxt == '>':
                self._advance()
                return Token(TokenType.NE, '<>', self._position(start))
            return Token(TokenType.LT, '<', self._position(start))

        if char == '>':
            if nxt == '=':
                self._advance()
                return Token(TokenType.GE, '>=', self._position(start))
            return Token(TokenType.GT, '>', self._position(start))

        # '!' is only valid as part of '!='
        if nxt == '=':
            self._advance()
            return Token(TokenType.NE, '!=', self._position(start))
        raise self._error("Unexpected character '!'", start)

    def tokenize(self) -> List[Token]:
        """
        Tokenize the whole input.

        Returns:
            Tokens including a trailing EOF token

        Raises:
            FilterSyntaxError: On an unexpected or malformed token
        """
        tokens = []

        while self.pos < len(self.input):
            char = self._peek()

            if char in ' \t\r\n':
                self._advance()
            elif char == "'":
                tokens.append(self._read_string())
            elif char.isdigit() or (char == '.' and (self._peek(1) or '').isdigit()):
                tokens.append(self._read_number())
            elif char.isalpha() or char == '_':
                tokens.append(self._read_word())
            elif char == '[':
                start = self.pos
                name = self._read_bracketed_name()
                # Bracketed names are always taken literally
                tokens.append(Token(TokenType.IDENTIFIER, f"[{name}]", self._position(start)))
            elif char == '@':
                tokens.append(self._read_parameter())
            elif char in '<>!':
                tokens.append(self._read_operator())
            elif char in self.SINGLE_CHAR_TOKENS:
                start = self.pos
                self._advance()
                tokens.append(Token(self.SINGLE_CHAR_TOKENS[char], char, self._position(start)))
            else:
                raise self._error(f"Unexpected character {char!r}")

        tokens.append(Token(TokenType.EOF, None, self._position()))
        return tokens
