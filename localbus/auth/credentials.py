"""
Client credentials.

A shared key credential carries a key name and key; every call made through
a client holding one is checked against the namespace's authorization rules.

Author: LocalBus Team
Date: 2026-03-09
"""

from dataclasses import dataclass
from typing import Optional

from .rules import AccessRights, AuthorizationRuleSet


@dataclass(frozen=True)
class ServiceBusSharedKeyCredential:
    """Key name and key of a shared access authorization rule."""

    policy: str
    key: str

    def __repr__(self) -> str:
        return f"ServiceBusSharedKeyCredential(policy={self.policy!r}, key='***')"


class AnonymousDevelopmentCredential:
    """
    Trusted local identity.

    Stands in for token credentials (managed identity, developer login) that
    course code passes to the client; all claims are granted.
    """

    def __repr__(self) -> str:
        return "AnonymousDevelopmentCredential()"


def check_access(
    rules: AuthorizationRuleSet,
    credential: object,
    right: AccessRights,
    entity_name: Optional[str] = None
) -> None:
    """
    Enforce ``right`` for ``credential`` on ``entity_name``.

    Raises:
        ServiceBusAuthenticationError: Unknown key name or wrong key
        ServiceBusAuthorizationError: The rule lacks the claim
    """
    if isinstance(credential, ServiceBusSharedKeyCredential):
        rules.authorize(credential.policy, credential.key, right, entity_name)
