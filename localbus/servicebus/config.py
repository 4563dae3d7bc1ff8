"""
Service Bus Namespace Provisioning

Builds an in-memory namespace from a LocalBusConfig: authorization rules,
queues, topics, subscriptions and their rules, the way the Service Bus
emulator reads its entity configuration file at start-up.

Author: LocalBus Team
Date: 2026-03-12
"""

import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from localbus.auth.connection_string import build_connection_string, fully_qualified_namespace_for
from localbus.auth.rules import AuthorizationRule, AuthorizationRuleSet
from localbus.core.config_manager import AuthorizationRuleConfig, LocalBusConfig

from .backend import ServiceBusBackend, register_backend, subscription_path
from .constants import CONNECTION_STRING_ENV_VAR, ROOT_KEY_NAME
from .exceptions import EntityAlreadyExistsError
from .logging_utils import StructuredLogger


logger = StructuredLogger('localbus.servicebus.config')


@dataclass
class ProvisionSummary:
    """What ``provision`` created, by entity type."""
    queues: List[str] = field(default_factory=list)
    topics: List[str] = field(default_factory=list)
    subscriptions: List[str] = field(default_factory=list)
    rules: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, List[str]]:
        return {
            "queues": list(self.queues),
            "topics": list(self.topics),
            "subscriptions": list(self.subscriptions),
            "rules": list(self.rules),
            "skipped": list(self.skipped),
        }


def _authorization_rule(rule_config: AuthorizationRuleConfig) -> AuthorizationRule:
    kwargs = {"key_name": rule_config.key_name, "rights": set(rule_config.rights)}
    if rule_config.primary_key:
        kwargs["primary_key"] = rule_config.primary_key
    if rule_config.secondary_key:
        kwargs["secondary_key"] = rule_config.secondary_key
    return AuthorizationRule(**kwargs)


def create_backend(config: LocalBusConfig, register: bool = True, **kwargs) -> ServiceBusBackend:
    """
    Build an empty namespace with the configured root key and rules.

    With ``register`` the namespace becomes reachable through connection
    strings naming its host.
    """
    authorization = AuthorizationRuleSet(root_key=config.namespace.shared_access_key)
    for rule_config in config.authorization_rules:
        authorization.add_rule(_authorization_rule(rule_config), rule_config.entity)

    backend = ServiceBusBackend(
        namespace=config.namespace.name,
        authorization=authorization,
        **kwargs
    )
    if register:
        register_backend(backend)
    return backend


async def provision(
    backend: ServiceBusBackend,
    config: LocalBusConfig,
    skip_existing: bool = True,
) -> ProvisionSummary:
    """
    Create every queue, topic, subscription and rule the config declares.

    A subscription declaring rules gets exactly those rules, in order; one
    declaring none keeps the match-all ``$Default`` rule.

    Raises:
        EntityAlreadyExistsError: An entity exists and ``skip_existing`` is False
    """
    summary = ProvisionSummary()

    def _skip(kind: str, name: str, error: EntityAlreadyExistsError) -> None:
        if not skip_existing:
            raise error
        summary.skipped.append(name)
        logger.info(f"Skipping existing {kind}: {name}", entity_type=kind, entity_name=name)

    for queue in config.queues:
        try:
            await backend.create_queue(queue.name, queue.properties)
            summary.queues.append(queue.name)
        except EntityAlreadyExistsError as e:
            _skip("queue", queue.name, e)

    for topic in config.topics:
        try:
            await backend.create_topic(topic.name, topic.properties)
            summary.topics.append(topic.name)
        except EntityAlreadyExistsError as e:
            _skip("topic", topic.name, e)

        for subscription in topic.subscriptions:
            path = subscription_path(topic.name, subscription.name)
            rules = [rule.to_rule_properties() for rule in subscription.rules]
            try:
                await backend.create_subscription(
                    topic.name,
                    subscription.name,
                    subscription.properties,
                    default_rule=rules[0] if rules else None,
                )
                summary.subscriptions.append(path)
            except EntityAlreadyExistsError as e:
                _skip("subscription", path, e)
                continue

            for index, rule in enumerate(rules):
                if index > 0:
                    await backend.create_rule(topic.name, subscription.name, rule.name, rule.filter, rule.action)
                summary.rules.append(f"{path}/Rules/{rule.name}")

    logger.info(
        "Namespace provisioned",
        namespace=backend.namespace,
        queues=len(summary.queues),
        topics=len(summary.topics),
        subscriptions=len(summary.subscriptions),
        skipped=len(summary.skipped),
    )
    return summary


def connection_string_for(
    config: LocalBusConfig,
    entity_path: Optional[str] = None,
    key_name: str = ROOT_KEY_NAME,
    key: Optional[str] = None,
) -> str:
    """Connection string for the configured namespace (root key by default)."""
    return build_connection_string(
        fully_qualified_namespace_for(config.namespace.name),
        shared_access_key_name=key_name,
        shared_access_key=key or config.namespace.shared_access_key,
        entity_path=entity_path,
    )


def connection_string_from_env() -> Optional[str]:
    """The connection string samples read from ``SERVICEBUS_CONNECTION_STRING``."""
    return os.getenv(CONNECTION_STRING_ENV_VAR)


def client_kwargs(config: LocalBusConfig) -> Dict[str, float]:
    """Keyword arguments that give a ServiceBusClient the configured retry policy."""
    return {
        "retry_total": config.retry.total,
        "retry_backoff_factor": config.retry.backoff_factor,
        "retry_backoff_max": config.retry.backoff_max,
    }
