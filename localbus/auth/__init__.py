"""
Connection strings and shared access authorization for LocalBus.
"""

from .connection_string import (
    ServiceBusConnectionStringProperties,
    build_connection_string,
    fully_qualified_namespace_for,
    parse_connection_string,
)
from .credentials import AnonymousDevelopmentCredential, ServiceBusSharedKeyCredential, check_access
from .rules import AccessRights, AuthorizationRule, AuthorizationRuleSet, generate_key

__all__ = [
    'AccessRights',
    'AnonymousDevelopmentCredential',
    'AuthorizationRule',
    'AuthorizationRuleSet',
    'ServiceBusConnectionStringProperties',
    'ServiceBusSharedKeyCredential',
    'build_connection_string',
    'check_access',
    'fully_qualified_namespace_for',
    'generate_key',
    'parse_connection_string',
]
