"""
SQL Filter Parser with Abstract Syntax Tree.

Recursive descent parser that turns lexer tokens into immutable AST nodes
for rule filters (boolean expressions) and rule actions (SET/REMOVE
statements).

Grammar (EBNF):
    filter      = or_expr EOF
    or_expr     = and_expr { "OR" and_expr }
    and_expr    = not_expr { "AND" not_expr }
    not_expr    = "NOT" not_expr | predicate
    predicate   = "EXISTS" "(" property ")"
                | additive [ comp_op additive
                           | [ "NOT" ] "IN" "(" additive { "," additive } ")"
                           | "IS" [ "NOT" ] "NULL"
                           | [ "NOT" ] "LIKE" additive [ "ESCAPE" string ] ]
    additive    = multiplicative { ("+" | "-") multiplicative }
    multiplicative = unary { ("*" | "/" | "%") unary }
    unary       = ("-" | "+") unary | primary
    primary     = literal | property | parameter | "(" or_expr ")"

    action      = statement { ";" statement } [ ";" ] EOF
    statement   = "SET" property "=" or_expr | "REMOVE" property

Author: LocalBus Team
Date: 2026-03-06
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple, Union

from ..exceptions import FilterSyntaxError
from .lexer import Position, SqlLexer, Token, TokenType


SYSTEM_SCOPE = "sys"
USER_SCOPE = "user"


@dataclass(frozen=True)
class ASTNode(ABC):
    """Base class for all AST nodes."""
    position: Position

    @abstractmethod
    def accept(self, visitor: 'ASTVisitor') -> Any:
        pass


@dataclass(frozen=True)
class LiteralNode(ASTNode):
    value: Any

    def accept(self, visitor: 'ASTVisitor') -> Any:
        return visitor.visit_literal(self)


@dataclass(frozen=True)
class PropertyNode(ASTNode):
    """
    Property reference.

    Attributes:
        scope: "sys" for broker properties, "user" for application properties
        name: Property name without the scope prefix
    """
    scope: str
    name: str

    def accept(self, visitor: 'ASTVisitor') -> Any:
        return visitor.visit_property(self)

    def __str__(self) -> str:
        return f"{self.scope}.{self.name}"


@dataclass(frozen=True)
class ParameterNode(ASTNode):
    name: str

    def accept(self, visitor: 'ASTVisitor') -> Any:
        return visitor.visit_parameter(self)


@dataclass(frozen=True)
class UnaryOpNode(ASTNode):
    """NOT or arithmetic negation."""
    operator: str
    operand: ASTNode

    def accept(self, visitor: 'ASTVisitor') -> Any:
        return visitor.visit_unary_op(self)


@dataclass(frozen=True)
class BinaryOpNode(ASTNode):
    """Logical, comparison, or arithmetic operation."""
    operator: str
    left: ASTNode
    right: ASTNode

    def accept(self, visitor: 'ASTVisitor') -> Any:
        return visitor.visit_binary_op(self)


@dataclass(frozen=True)
class InNode(ASTNode):
    operand: ASTNode
    values: Tuple[ASTNode, ...]
    negated: bool = False

    def accept(self, visitor: 'ASTVisitor') -> Any:
        return visitor.visit_in(self)


@dataclass(frozen=True)
class IsNullNode(ASTNode):
    operand: ASTNode
    negated: bool = False

    def accept(self, visitor: 'ASTVisitor') -> Any:
        return visitor.visit_is_null(self)


@dataclass(frozen=True)
class LikeNode(ASTNode):
    operand: ASTNode
    pattern: ASTNode
    escape: Optional[str] = None
    negated: bool = False

    def accept(self, visitor: 'ASTVisitor') -> Any:
        return visitor.visit_like(self)


@dataclass(frozen=True)
class ExistsNode(ASTNode):
    property: PropertyNode

    def accept(self, visitor: 'ASTVisitor') -> Any:
        return visitor.visit_exists(self)


@dataclass(frozen=True)
class SetStatement:
    property: PropertyNode
    expression: ASTNode


@dataclass(frozen=True)
class RemoveStatement:
    property: PropertyNode


ActionStatement = Union[SetStatement, RemoveStatement]


class ASTVisitor(ABC):
    """Interface for AST traversal."""

    @abstractmethod
    def visit_literal(self, node: LiteralNode) -> Any:
        pass

    @abstractmethod
    def visit_property(self, node: PropertyNode) -> Any:
        pass

    @abstractmethod
    def visit_parameter(self, node: ParameterNode) -> Any:
        pass

    @abstractmethod
    def visit_unary_op(self, node: UnaryOpNode) -> Any:
        pass

    @abstractmethod
    def visit_binary_op(self, node: BinaryOpNode) -> Any:
        pass

    @abstractmethod
    def visit_in(self, node: InNode) -> Any:
        pass

    @abstractmethod
    def visit_is_null(self, node: IsNullNode) -> Any:
        pass

    @abstractmethod
    def visit_like(self, node: LikeNode) -> Any:
        pass

    @abstractmethod
    def visit_exists(self, node: ExistsNode) -> Any:
        pass


class SqlParser:
    """
    Recursive descent parser for rule filters and actions.

    Operator precedence (highest to lowest):
        1. Unary: -, +
        2. Multiplicative: *, /, %
        3. Additive: +, -
        4. Predicates: comparison, IN, IS NULL, LIKE, EXISTS
        5. NOT
        6. AND
        7. OR
    """

    COMPARISON_OPS = {
        TokenType.EQ: '=',
        TokenType.NE: '<>',
        TokenType.LT: '<',
        TokenType.LE: '<=',
        TokenType.GT: '>',
        TokenType.GE: '>=',
    }

    ADDITIVE_OPS = {
        TokenType.PLUS: '+',
        TokenType.MINUS: '-',
    }

    MULTIPLICATIVE_OPS = {
        TokenType.STAR: '*',
        TokenType.SLASH: '/',
        TokenType.PERCENT: '%',
    }

    LITERAL_TYPES = (
        TokenType.STRING,
        TokenType.INTEGER,
        TokenType.FLOAT,
        TokenType.BOOLEAN,
        TokenType.NULL,
    )

    def __init__(self, tokens: List[Token], source: str = ""):
        self.tokens = tokens
        self.source = source
        self.pos = 0

    # ----- token helpers -----

    def _current(self) -> Token:
        if self.pos < len(self.tokens):
            return self.tokens[self.pos]
        return self.tokens[-1]

    def _peek_type(self, offset: int = 1) -> TokenType:
        pos = self.pos + offset
        if pos < len(self.tokens):
            return self.tokens[pos].type
        return TokenType.EOF

    def _advance(self) -> Token:
        token = self._current()
        if not self._is_at_end():
            self.pos += 1
        return token

    def _is_at_end(self) -> bool:
        return self._current().type == TokenType.EOF

    def _check(self, token_type: TokenType) -> bool:
        return self._current().type == token_type

    def _match(self, *token_types: TokenType) -> Optional[Token]:
        for token_type in token_types:
            if self._check(token_type):
                return self._advance()
        return None

    def _error(self, reason: str, token: Optional[Token] = None) -> FilterSyntaxError:
        token = token or self._current()
        return FilterSyntaxError(
            self.source,
            f"{reason} at {token.position}",
            offset=token.position.offset
        )

    def _consume(self, token_type: TokenType, reason: str) -> Token:
        if self._check(token_type):
            return self._advance()
        raise self._error(reason)

    # ----- entry points -----

    def parse_filter(self) -> ASTNode:
        """
        Parse a boolean filter expression.

        Raises:
            FilterSyntaxError: If the expression is empty or malformed
        """
        if self._is_at_end():
            raise self._error("Empty filter expression")

        ast = self._parse_or_expression()
        if not self._is_at_end():
            raise self._error(f"Unexpected token {self._current()}")
        return ast

    def parse_action(self) -> Tuple[ActionStatement, ...]:
        """
        Parse a rule action.

        Raises:
            FilterSyntaxError: If the action is empty or malformed
        """
        statements: List[ActionStatement] = []
        while not self._is_at_end():
            statements.append(self._parse_statement())
            if not self._match(TokenType.SEMICOLON) and not self._is_at_end():
                raise self._error("Expected ';' between action statements")

        if not statements:
            raise self._error("Empty action expression")
        return tuple(statements)

    # ----- actions -----

    def _parse_statement(self) -> ActionStatement:
        if self._match(TokenType.SET):
            prop = self._parse_property_reference()
            self._consume(TokenType.EQ, "Expected '=' after SET target")
            return SetStatement(property=prop, expression=self._parse_or_expression())

        if self._match(TokenType.REMOVE):
            return RemoveStatement(property=self._parse_property_reference())

        raise self._error("Expected SET or REMOVE")

    # ----- boolean layer -----

    def _parse_or_expression(self) -> ASTNode:
        left = self._parse_and_expression()
        while True:
            op_token = self._match(TokenType.OR)
            if not op_token:
                return left
            right = self._parse_and_expression()
            left = BinaryOpNode(op_token.position, 'OR', left, right)

    def _parse_and_expression(self) -> ASTNode:
        left = self._parse_not_expression()
        while True:
            op_token = self._match(TokenType.AND)
            if not op_token:
                return left
            right = self._parse_not_expression()
            left = BinaryOpNode(op_token.position, 'AND', left, right)

    def _parse_not_expression(self) -> ASTNode:
        op_token = self._match(TokenType.NOT)
        if op_token:
            return UnaryOpNode(op_token.position, 'NOT', self._parse_not_expression())
        return self._parse_predicate()

    def _parse_predicate(self) -> ASTNode:
        exists_token = self._match(TokenType.EXISTS)
        if exists_token:
            self._consume(TokenType.LPAREN, "Expected '(' after EXISTS")
            prop = self._parse_property_reference()
            self._consume(TokenType.RPAREN, "Expected ')' after EXISTS property")
            return ExistsNode(exists_token.position, prop)

        left = self._parse_additive_expression()
        token = self._current()

        if token.type in self.COMPARISON_OPS:
            self._advance()
            right = self._parse_additive_expression()
            return BinaryOpNode(token.position, self.COMPARISON_OPS[token.type], left, right)

        negated = False
        if token.type == TokenType.NOT and self._peek_type() in (TokenType.IN, TokenType.LIKE):
            self._advance()
            negated = True
            token = self._current()

        if self._match(TokenType.IN):
            return InNode(token.position, left, self._parse_value_list(), negated)

        if self._match(TokenType.LIKE):
            pattern = self._parse_additive_expression()
            escape = None
            if self._match(TokenType.ESCAPE):
                escape_token = self._consume(TokenType.STRING, "Expected string after ESCAPE")
                if len(escape_token.value) != 1:
                    raise self._error("ESCAPE must be a single character", escape_token)
                escape = escape_token.value
            return LikeNode(token.position, left, pattern, escape, negated)

        if self._match(TokenType.IS):
            is_not = bool(self._match(TokenType.NOT))
            self._consume(TokenType.NULL, "Expected NULL after IS")
            return IsNullNode(token.position, left, is_not)

        return left

    def _parse_value_list(self) -> Tuple[ASTNode, ...]:
        self._consume(TokenType.LPAREN, "Expected '(' after IN")
        values = [self._parse_additive_expression()]
        while self._match(TokenType.COMMA):
            values.append(self._parse_additive_expression())
        self._consume(TokenType.RPAREN, "Expected ')' to close IN list")
        return tuple(values)

    # ----- arithmetic layer -----

    def _parse_additive_expression(self) -> ASTNode:
        left = self._parse_multiplicative_expression()
        while self._current().type in self.ADDITIVE_OPS:
            op_token = self._advance()
            right = self._parse_multiplicative_expression()
            left = BinaryOpNode(op_token.position, self.ADDITIVE_OPS[op_token.type], left, right)
        return left

    def _parse_multiplicative_expression(self) -> ASTNode:
        left = self._parse_unary_value()
        while self._current().type in self.MULTIPLICATIVE_OPS:
            op_token = self._advance()
            right = self._parse_unary_value()
            left = BinaryOpNode(op_token.position, self.MULTIPLICATIVE_OPS[op_token.type], left, right)
        return left

    def _parse_unary_value(self) -> ASTNode:
        op_token = self._match(TokenType.MINUS, TokenType.PLUS)
        if op_token:
            operand = self._parse_unary_value()
            if op_token.type == TokenType.PLUS:
                return operand
            if isinstance(operand, LiteralNode) and isinstance(operand.value, (int, float)) \
                    and not isinstance(operand.value, bool):
                return LiteralNode(op_token.position, -operand.value)
            return UnaryOpNode(op_token.position, '-', operand)
        return self._parse_primary()

    def _parse_primary(self) -> ASTNode:
        token = self._current()

        if token.type in self.LITERAL_TYPES:
            self._advance()
            return LiteralNode(token.position, token.value)

        if token.type == TokenType.IDENTIFIER:
            return self._parse_property_reference()

        if token.type == TokenType.PARAMETER:
            self._advance()
            return ParameterNode(token.position, token.value)

        if self._match(TokenType.LPAREN):
            expr = self._parse_or_expression()
            self._consume(TokenType.RPAREN, "Expected closing parenthesis ')'")
            return expr

        if token.type == TokenType.EOF:
            raise self._error("Unexpected end of expression")
        raise self._error(f"Expected literal, property, or parameter, got {token.type}")

    def _parse_property_reference(self) -> PropertyNode:
        token = self._consume(TokenType.IDENTIFIER, "Expected property name")
        return PropertyNode(token.position, *split_property_name(token.value))


def split_property_name(raw: str) -> Tuple[str, str]:
    """
    Split a property reference into (scope, name).

    ``sys.Label`` -> ("sys", "Label"); ``user.color`` and ``color`` ->
    ("user", "color"); ``[sys.x]`` is a user property literally named ``sys.x``.
    """
    if raw.startswith('[') and raw.endswith(']'):
        return USER_SCOPE, raw[1:-1]

    prefix, sep, rest = raw.partition('.')
    if sep and rest:
        if prefix.lower() == SYSTEM_SCOPE:
            return SYSTEM_SCOPE, rest
        if prefix.lower() == USER_SCOPE:
            return USER_SCOPE, rest
    return USER_SCOPE, raw


def parse_filter(expression: str) -> ASTNode:
    """Tokenize and parse a filter expression."""
    return SqlParser(SqlLexer(expression).tokenize(), expression).parse_filter()


def parse_action(expression: str) -> Tuple[ActionStatement, ...]:
    """Tokenize and parse an action expression."""
    return SqlParser(SqlLexer(expression).tokenize(), expression).parse_action()
