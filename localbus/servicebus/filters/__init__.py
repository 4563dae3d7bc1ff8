"""
Subscription rule filters and actions.

Compiles SQL filter/action text once (cached by expression) and evaluates
rule filters of every kind against a message.
"""

from functools import lru_cache
from typing import Any, Dict, Optional, Tuple

from ..exceptions import FilterEvaluationError
from ..models import (
    CORRELATION_SYSTEM_FIELDS,
    CorrelationRuleFilter,
    FalseRuleFilter,
    RuleFilter,
    ServiceBusMessage,
    SqlRuleAction,
    SqlRuleFilter,
    TrueRuleFilter,
)
from ..validation import SqlFilterLimits
from .evaluator import SqlActionExecutor, SqlFilterEvaluator
from .parser import ActionStatement, ASTNode, parse_action, parse_filter


class CompiledSqlFilter:
    """A parsed filter expression bound to its parameters."""

    def __init__(self, expression: str, ast: ASTNode, parameters: Optional[Dict[str, Any]] = None):
        self.expression = expression
        self.ast = ast
        self.parameters = parameters or {}

    def evaluate(self, message: ServiceBusMessage) -> Optional[bool]:
        """Raw three-valued result."""
        return SqlFilterEvaluator(message, self.parameters, self.expression).evaluate(self.ast)

    def matches(self, message: ServiceBusMessage) -> bool:
        return self.evaluate(message) is True


class CompiledSqlAction:
    """A parsed action bound to its parameters."""

    def __init__(
        self,
        expression: str,
        statements: Tuple[ActionStatement, ...],
        parameters: Optional[Dict[str, Any]] = None
    ):
        self.expression = expression
        self.statements = statements
        self.parameters = parameters or {}

    def apply(self, message: ServiceBusMessage) -> ServiceBusMessage:
        """Apply the statements to ``message`` in place and return it."""
        return SqlActionExecutor(message, self.parameters, self.expression).execute(self.statements)


@lru_cache(maxsize=1024)
def _parse_filter_cached(expression: str) -> ASTNode:
    SqlFilterLimits.validate(expression)
    return parse_filter(expression)


@lru_cache(maxsize=1024)
def _parse_action_cached(expression: str) -> Tuple[ActionStatement, ...]:
    SqlFilterLimits.validate(expression)
    return parse_action(expression)


def compile_sql_filter(expression: str, parameters: Optional[Dict[str, Any]] = None) -> CompiledSqlFilter:
    """
    Parse a SQL filter expression.

    Raises:
        FilterSyntaxError: If the expression is malformed
        InvalidOperationError: If the expression exceeds length or nesting limits
    """
    return CompiledSqlFilter(expression, _parse_filter_cached(expression), parameters)


def compile_sql_action(expression: str, parameters: Optional[Dict[str, Any]] = None) -> CompiledSqlAction:
    """Parse a SQL rule action (SET / REMOVE statements)."""
    return CompiledSqlAction(expression, _parse_action_cached(expression), parameters)


def matches_correlation_filter(rule_filter: CorrelationRuleFilter, message: ServiceBusMessage) -> bool:
    """Every field set on the filter must equal the message's value."""
    for field_name in CORRELATION_SYSTEM_FIELDS:
        expected = getattr(rule_filter, field_name)
        if expected is not None and getattr(message, field_name) != expected:
            return False

    for key, expected in rule_filter.properties.items():
        if key not in message.application_properties:
            return False
        if message.application_properties[key] != expected:
            return False
    return True


def evaluate_rule_filter(rule_filter: RuleFilter, message: ServiceBusMessage) -> bool:
    """
    Evaluate any rule filter against a message.

    Raises:
        FilterEvaluationError: If a SQL filter fails at runtime
    """
    if isinstance(rule_filter, TrueRuleFilter):
        return True
    if isinstance(rule_filter, FalseRuleFilter):
        return False
    if isinstance(rule_filter, CorrelationRuleFilter):
        return matches_correlation_filter(rule_filter, message)
    if isinstance(rule_filter, SqlRuleFilter):
        return compile_sql_filter(rule_filter.sql_expression, rule_filter.parameters).matches(message)
    raise FilterEvaluationError(f"Unsupported filter type {type(rule_filter).__name__}")


def apply_rule_action(action: SqlRuleAction, message: ServiceBusMessage) -> ServiceBusMessage:
    """Apply a rule action to ``message`` in place."""
    return compile_sql_action(action.sql_expression, action.parameters).apply(message)


def validate_rule(rule_filter: RuleFilter, action: Optional[SqlRuleAction] = None) -> None:
    """Parse SQL text up front so a bad rule is rejected at creation time."""
    if isinstance(rule_filter, SqlRuleFilter):
        compile_sql_filter(rule_filter.sql_expression, rule_filter.parameters)
    if action is not None:
        compile_sql_action(action.sql_expression, action.parameters)


__all__ = [
    'CompiledSqlAction',
    'CompiledSqlFilter',
    'apply_rule_action',
    'compile_sql_action',
    'compile_sql_filter',
    'evaluate_rule_filter',
    'matches_correlation_filter',
    'validate_rule',
]
