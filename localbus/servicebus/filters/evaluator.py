"""
SQL Filter Evaluator.

AST visitor that evaluates rule filters against a message and executes rule
actions on a subscription's copy of a message.

Three-valued logic:
- True: condition satisfied
- False: condition not satisfied
- None: unknown (a NULL operand or a missing property)

A filter matches only when it evaluates to exactly True.

Author: LocalBus Team
Date: 2026-03-06
"""

import math
import re
from functools import lru_cache
from typing import Any, Dict, Optional, Sequence

from ..exceptions import FilterEvaluationError
from ..models import ServiceBusMessage
from .parser import (
    ActionStatement,
    ASTNode,
    ASTVisitor,
    BinaryOpNode,
    ExistsNode,
    InNode,
    IsNullNode,
    LikeNode,
    LiteralNode,
    ParameterNode,
    PropertyNode,
    RemoveStatement,
    SetStatement,
    SYSTEM_SCOPE,
    UnaryOpNode,
)


# Lower-cased sys.* name -> message attribute
SYSTEM_PROPERTIES = {
    'messageid': 'message_id',
    'correlationid': 'correlation_id',
    'sessionid': 'session_id',
    'replytosessionid': 'reply_to_session_id',
    'contenttype': 'content_type',
    'label': 'subject',
    'subject': 'subject',
    'to': 'to',
    'replyto': 'reply_to',
    'timetolive': 'time_to_live',
    'scheduledenqueuetimeutc': 'scheduled_enqueue_time_utc',
    'sequencenumber': 'sequence_number',
    'enqueuedtimeutc': 'enqueued_time_utc',
    'expiresatutc': 'expires_at_utc',
    'deliverycount': 'delivery_count',
    'deadlettersource': 'dead_letter_source',
}

# System properties an action may SET
WRITABLE_SYSTEM_PROPERTIES = frozenset({
    'correlationid', 'contenttype', 'label', 'subject', 'to', 'replyto', 'replytosessionid',
})

NUMERIC_TYPES = (int, float)


def _is_number(value: Any) -> bool:
    return isinstance(value, NUMERIC_TYPES) and not isinstance(value, bool)


@lru_cache(maxsize=256)
def like_to_regex(pattern: str, escape: Optional[str] = None) -> 're.Pattern[str]':
    """Translate a LIKE pattern (% and _) into an anchored regex."""
    parts = []
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if escape is not None and char == escape:
            if i + 1 >= len(pattern):
                raise FilterEvaluationError(f"LIKE pattern '{pattern}' ends with the escape character")
            parts.append(re.escape(pattern[i + 1]))
            i += 2
            continue
        if char == '%':
            parts.append('.*')
        elif char == '_':
            parts.append('.')
        else:
            parts.append(re.escape(char))
        i += 1
    return re.compile(''.join(parts), re.DOTALL)


class SqlFilterEvaluator(ASTVisitor):
    """
    Evaluates an AST against one message.

    System property names are matched case-insensitively; user (application)
    property names are case-sensitive. String comparison is case-sensitive.
    """

    def __init__(
        self,
        message: ServiceBusMessage,
        parameters: Optional[Dict[str, Any]] = None,
        expression: Optional[str] = None
    ):
        self.message = message
        self.parameters = normalize_parameters(parameters)
        self.expression = expression

    def _error(self, reason: str) -> FilterEvaluationError:
        return FilterEvaluationError(reason, self.expression)

    def evaluate(self, ast: ASTNode) -> Any:
        return ast.accept(self)

    # ----- leaves -----

    def visit_literal(self, node: LiteralNode) -> Any:
        return node.value

    def visit_property(self, node: PropertyNode) -> Any:
        if node.scope == SYSTEM_SCOPE:
            attribute = SYSTEM_PROPERTIES.get(node.name.lower())
            if attribute is None:
                return None
            return getattr(self.message, attribute, None)
        return self.message.application_properties.get(node.name)

    def visit_parameter(self, node: ParameterNode) -> Any:
        if node.name not in self.parameters:
            raise self._error(f"Parameter '@{node.name}' is not defined")
        return self.parameters[node.name]

    # ----- operators -----

    def visit_unary_op(self, node: UnaryOpNode) -> Any:
        operand = node.operand.accept(self)

        if node.operator == 'NOT':
            if operand is None:
                return None
            if not isinstance(operand, bool):
                raise self._error(f"NOT requires a boolean operand, got {type(operand).__name__}")
            return not operand

        if operand is None:
            return None
        if not _is_number(operand):
            raise self._error(f"Cannot negate {type(operand).__name__}")
        return -operand

    def visit_binary_op(self, node: BinaryOpNode) -> Any:
        operator = node.operator

        if operator == 'AND':
            return self._eval_and(node)
        if operator == 'OR':
            return self._eval_or(node)

        left = node.left.accept(self)
        right = node.right.accept(self)

        # NULL propagates through comparison and arithmetic
        if left is None or right is None:
            return None

        if operator == '=':
            return self._equals(left, right)
        if operator == '<>':
            return not self._equals(left, right)
        if operator in ('<', '<=', '>', '>='):
            return self._compare(operator, left, right)
        return self._arithmetic(operator, left, right)

    def _eval_and(self, node: BinaryOpNode) -> Optional[bool]:
        left = self._as_condition(node.left.accept(self))
        if left is False:
            return False
        right = self._as_condition(node.right.accept(self))
        if right is False:
            return False
        if left is True and right is True:
            return True
        return None

    def _eval_or(self, node: BinaryOpNode) -> Optional[bool]:
        left = self._as_condition(node.left.accept(self))
        if left is True:
            return True
        right = self._as_condition(node.right.accept(self))
        if right is True:
            return True
        if left is False and right is False:
            return False
        return None

    def _as_condition(self, value: Any) -> Optional[bool]:
        if value is None or isinstance(value, bool):
            return value
        raise self._error(f"Expected a boolean condition, got {type(value).__name__}")

    def _equals(self, left: Any, right: Any) -> bool:
        if _is_number(left) and _is_number(right):
            return float(left) == float(right)
        if type(left) is not type(right):
            return False
        return left == right

    def _compare(self, operator: str, left: Any, right: Any) -> bool:
        if _is_number(left) and _is_number(right):
            left, right = float(left), float(right)
        elif isinstance(left, bool) or type(left) is not type(right):
            raise self._error(
                f"Cannot compare {type(left).__name__} {operator} {type(right).__name__}"
            )

        try:
            if operator == '<':
                return left < right
            if operator == '<=':
                return left <= right
            if operator == '>':
                return left > right
            return left >= right
        except TypeError:
            raise self._error(
                f"Cannot compare {type(left).__name__} {operator} {type(right).__name__}"
            )

    def _arithmetic(self, operator: str, left: Any, right: Any) -> Any:
        if operator == '+' and isinstance(left, str) and isinstance(right, str):
            return left + right

        if not (_is_number(left) and _is_number(right)):
            raise self._error(
                f"Operator '{operator}' requires numeric operands, got "
                f"{type(left).__name__} and {type(right).__name__}"
            )

        both_int = isinstance(left, int) and isinstance(right, int)

        if operator == '+':
            return left + right
        if operator == '-':
            return left - right
        if operator == '*':
            return left * right

        if right == 0:
            raise self._error("Division by zero")

        if operator == '/':
            if both_int:
                # Integer division truncates toward zero
                quotient = abs(left) // abs(right)
                return quotient if (left >= 0) == (right >= 0) else -quotient
            return left / right

        # '%' takes the sign of the dividend
        result = math.fmod(left, right)
        return int(result) if both_int else result

    # ----- predicates -----

    def visit_in(self, node: InNode) -> Optional[bool]:
        operand = node.operand.accept(self)
        if operand is None:
            return None

        saw_null = False
        result: Optional[bool] = False
        for value_node in node.values:
            value = value_node.accept(self)
            if value is None:
                saw_null = True
            elif self._equals(operand, value):
                result = True
                break
        else:
            if saw_null:
                result = None

        if result is None:
            return None
        return not result if node.negated else result

    def visit_is_null(self, node: IsNullNode) -> bool:
        is_null = node.operand.accept(self) is None
        return not is_null if node.negated else is_null

    def visit_like(self, node: LikeNode) -> Optional[bool]:
        operand = node.operand.accept(self)
        pattern = node.pattern.accept(self)
        if operand is None or pattern is None:
            return None
        if not isinstance(pattern, str):
            raise self._error("LIKE pattern must be a string")
        if not isinstance(operand, str):
            return None

        matched = like_to_regex(pattern, node.escape).fullmatch(operand) is not None
        return not matched if node.negated else matched

    def visit_exists(self, node: ExistsNode) -> bool:
        prop = node.property
        if prop.scope == SYSTEM_SCOPE:
            attribute = SYSTEM_PROPERTIES.get(prop.name.lower())
            return attribute is not None and getattr(self.message, attribute, None) is not None
        return prop.name in self.message.application_properties


class SqlActionExecutor:
    """Applies SET/REMOVE statements to a message in place."""

    ALLOWED_VALUE_TYPES = (str, int, float, bool)

    def __init__(
        self,
        message: ServiceBusMessage,
        parameters: Optional[Dict[str, Any]] = None,
        expression: Optional[str] = None
    ):
        self.message = message
        self.parameters = parameters
        self.expression = expression

    def execute(self, statements: Sequence[ActionStatement]) -> ServiceBusMessage:
        for statement in statements:
            if isinstance(statement, SetStatement):
                self._set(statement)
            elif isinstance(statement, RemoveStatement):
                self._remove(statement)
        return self.message

    def _set(self, statement: SetStatement) -> None:
        # Each statement sees the effects of the ones before it
        evaluator = SqlFilterEvaluator(self.message, self.parameters, self.expression)
        value = evaluator.evaluate(statement.expression)
        prop = statement.property

        if prop.scope == SYSTEM_SCOPE:
            key = prop.name.lower()
            if key not in WRITABLE_SYSTEM_PROPERTIES:
                raise FilterEvaluationError(f"sys.{prop.name} cannot be modified", self.expression)
            if value is not None and not isinstance(value, str):
                value = str(value)
            setattr(self.message, SYSTEM_PROPERTIES[key], value)
            return

        if value is not None and not isinstance(value, self.ALLOWED_VALUE_TYPES):
            raise FilterEvaluationError(
                f"Cannot assign {type(value).__name__} to user.{prop.name}", self.expression
            )
        properties = dict(self.message.application_properties)
        properties[prop.name] = value
        self.message.application_properties = properties

    def _remove(self, statement: RemoveStatement) -> None:
        prop = statement.property
        if prop.scope == SYSTEM_SCOPE:
            raise FilterEvaluationError(f"sys.{prop.name} cannot be removed", self.expression)
        if prop.name in self.message.application_properties:
            properties = dict(self.message.application_properties)
            del properties[prop.name]
            self.message.application_properties = properties


def normalize_parameters(parameters: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Accept parameter names with or without a leading '@'."""
    if not parameters:
        return {}
    return {name.lstrip('@'): value for name, value in parameters.items()}

