"""
Shared access authorization rules.

Namespace- and entity-level rules granting Manage, Send and Listen claims.
Keys are compared in constant time. No tokens are issued; a client presents
its key name and key (from the connection string) on every call.

Author: LocalBus Team
Date: 2026-03-07
"""

import base64
import hmac
import logging
import secrets
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set

from localbus.servicebus.constants import DEVELOPMENT_SHARED_ACCESS_KEY, ROOT_KEY_NAME
from localbus.servicebus.exceptions import (
    InvalidOperationError,
    ServiceBusAuthenticationError,
    ServiceBusAuthorizationError,
)

logger = logging.getLogger(__name__)


class AccessRights(str, Enum):
    """Claims an authorization rule can grant."""
    MANAGE = "Manage"
    SEND = "Send"
    LISTEN = "Listen"


def generate_key() -> str:
    """Random 256-bit key, base64-encoded like portal-generated keys."""
    return base64.b64encode(secrets.token_bytes(32)).decode('ascii')


@dataclass
class AuthorizationRule:
    """Shared access authorization rule."""

    key_name: str
    primary_key: str = field(default_factory=generate_key)
    secondary_key: str = field(default_factory=generate_key)
    rights: Set[AccessRights] = field(default_factory=lambda: {AccessRights.LISTEN})

    def __post_init__(self):
        self.rights = {AccessRights(right) for right in self.rights}
        if AccessRights.MANAGE in self.rights:
            # Manage always implies Send and Listen
            self.rights |= {AccessRights.SEND, AccessRights.LISTEN}

    def grants(self, right: AccessRights) -> bool:
        return AccessRights(right) in self.rights

    def key_matches(self, key: str) -> bool:
        """Check ``key`` against both keys in constant time."""
        candidate = key.encode('utf-8')
        primary_ok = hmac.compare_digest(candidate, self.primary_key.encode('utf-8'))
        secondary_ok = hmac.compare_digest(candidate, self.secondary_key.encode('utf-8'))
        return primary_ok or secondary_ok

    def to_dict(self) -> Dict[str, object]:
        return {
            "key_name": self.key_name,
            "rights": sorted(right.value for right in self.rights),
        }


class AuthorizationRuleSet:
    """
    Authorization rules for one namespace.

    Entity-level rules are keyed by queue or topic name; subscriptions are
    authorized through their topic.
    """

    def __init__(self, root_key: str = DEVELOPMENT_SHARED_ACCESS_KEY):
        self._namespace_rules: Dict[str, AuthorizationRule] = {}
        self._entity_rules: Dict[str, Dict[str, AuthorizationRule]] = {}
        self.add_rule(AuthorizationRule(
            key_name=ROOT_KEY_NAME,
            primary_key=root_key,
            rights={AccessRights.MANAGE},
        ))

    def add_rule(self, rule: AuthorizationRule, entity_name: Optional[str] = None) -> None:
        """Add or replace a rule on the namespace or on one entity."""
        if entity_name is None:
            self._namespace_rules[rule.key_name] = rule
        else:
            self._entity_rules.setdefault(entity_name, {})[rule.key_name] = rule
        logger.info(
            f"Authorization rule '{rule.key_name}' set on "
            f"{entity_name or 'namespace'} with rights {sorted(r.value for r in rule.rights)}"
        )

    def remove_rule(self, key_name: str, entity_name: Optional[str] = None) -> None:
        rules = self._namespace_rules if entity_name is None else self._entity_rules.get(entity_name, {})
        if key_name == ROOT_KEY_NAME and entity_name is None:
            raise InvalidOperationError("remove_rule", f"'{ROOT_KEY_NAME}' cannot be removed")
        rules.pop(key_name, None)

    def remove_entity(self, entity_name: str) -> None:
        """Drop all rules scoped to a deleted entity."""
        self._entity_rules.pop(entity_name, None)

    def list_rules(self, entity_name: Optional[str] = None) -> List[AuthorizationRule]:
        if entity_name is None:
            return list(self._namespace_rules.values())
        return list(self._entity_rules.get(entity_name, {}).values())

    def get_rule(self, key_name: str, entity_name: Optional[str] = None) -> Optional[AuthorizationRule]:
        if entity_name is not None:
            rule = self._entity_rules.get(entity_name, {}).get(key_name)
            if rule is not None:
                return rule
        return self._namespace_rules.get(key_name)

    def authenticate(self, key_name: str, key: str, entity_name: Optional[str] = None) -> AuthorizationRule:
        """
        Resolve the rule for a key name and verify the key.

        Raises:
            ServiceBusAuthenticationError: Unknown key name or wrong key
        """
        rule = self.get_rule(key_name, entity_name)
        if rule is None or not rule.key_matches(key or ""):
            logger.warning(f"Authentication failed for key '{key_name}'")
            raise ServiceBusAuthenticationError(key_name)
        return rule

    def authorize(
        self,
        key_name: str,
        key: str,
        right: AccessRights,
        entity_name: Optional[str] = None
    ) -> AuthorizationRule:
        """
        Authenticate and check that the rule grants ``right``.

        Raises:
            ServiceBusAuthenticationError: Unknown key name or wrong key
            ServiceBusAuthorizationError: Rule lacks the claim
        """
        rule = self.authenticate(key_name, key, entity_name)
        if not rule.grants(right):
            logger.warning(
                f"Key '{key_name}' denied '{AccessRights(right).value}'"
                + (f" on '{entity_name}'" if entity_name else "")
            )
            raise ServiceBusAuthorizationError(key_name, AccessRights(right).value, entity_name)
        return rule
