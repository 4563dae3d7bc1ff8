"""
Service Bus connection strings.

Parses and builds the ``Endpoint=sb://...;SharedAccessKeyName=...;`` form
used by the client libraries and the local development emulator.

Author: LocalBus Team
Date: 2026-03-07
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional
from urllib.parse import urlparse

from localbus.servicebus.constants import (
    DEFAULT_NAMESPACE,
    DEVELOPMENT_SHARED_ACCESS_KEY,
    NAMESPACE_SUFFIX,
    ROOT_KEY_NAME,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServiceBusConnectionStringProperties:
    """Parsed connection string."""

    fully_qualified_namespace: str
    shared_access_key_name: Optional[str] = None
    shared_access_key: Optional[str] = None
    shared_access_signature: Optional[str] = None
    entity_path: Optional[str] = None
    use_development_emulator: bool = False

    @property
    def endpoint(self) -> str:
        return f"sb://{self.fully_qualified_namespace}/"


# Connection string keys are case-insensitive
_KNOWN_KEYS = {
    'endpoint': 'endpoint',
    'sharedaccesskeyname': 'shared_access_key_name',
    'sharedaccesskey': 'shared_access_key',
    'sharedaccesssignature': 'shared_access_signature',
    'entitypath': 'entity_path',
    'usedevelopmentemulator': 'use_development_emulator',
}


def parse_connection_string(conn_str: str) -> ServiceBusConnectionStringProperties:
    """
    Parse a Service Bus connection string.

    Args:
        conn_str: ``Endpoint=sb://<host>/;SharedAccessKeyName=<name>;SharedAccessKey=<key>``
                  with optional ``EntityPath`` and ``UseDevelopmentEmulator``

    Returns:
        Parsed properties

    Raises:
        ValueError: If the string is malformed or lacks credentials
    """
    if not conn_str or not conn_str.strip():
        raise ValueError("Connection string is empty")

    values: Dict[str, str] = {}
    for segment in conn_str.strip().split(';'):
        if not segment.strip():
            continue
        key, sep, value = segment.partition('=')
        if not sep:
            raise ValueError(f"Malformed connection string segment: '{key.strip()}'")
        normalized = _KNOWN_KEYS.get(key.strip().lower())
        if normalized is None:
            logger.debug(f"Ignoring unknown connection string key '{key.strip()}'")
            continue
        values[normalized] = value.strip()

    endpoint = values.get('endpoint')
    if not endpoint:
        raise ValueError("Connection string is missing 'Endpoint'")

    parsed = urlparse(endpoint if '://' in endpoint else f"sb://{endpoint}")
    if parsed.scheme.lower() != 'sb' or not parsed.hostname:
        raise ValueError(f"Endpoint must be of the form sb://<namespace host>/, got '{endpoint}'")

    host = parsed.hostname
    if parsed.port:
        host = f"{host}:{parsed.port}"

    key_name = values.get('shared_access_key_name')
    key = values.get('shared_access_key')
    signature = values.get('shared_access_signature')

    if signature is None:
        if not key_name or not key:
            raise ValueError(
                "Connection string must contain SharedAccessKeyName and SharedAccessKey, "
                "or SharedAccessSignature"
            )
    elif key_name or key:
        raise ValueError("SharedAccessSignature cannot be combined with SharedAccessKeyName/SharedAccessKey")

    return ServiceBusConnectionStringProperties(
        fully_qualified_namespace=host,
        shared_access_key_name=key_name,
        shared_access_key=key,
        shared_access_signature=signature,
        entity_path=values.get('entity_path') or None,
        use_development_emulator=values.get('use_development_emulator', '').lower() == 'true',
    )


def build_connection_string(
    fully_qualified_namespace: str,
    shared_access_key_name: str = ROOT_KEY_NAME,
    shared_access_key: str = DEVELOPMENT_SHARED_ACCESS_KEY,
    entity_path: Optional[str] = None,
    use_development_emulator: bool = True
) -> str:
    """Build a connection string for the given namespace and key."""
    parts = [
        f"Endpoint=sb://{fully_qualified_namespace}/",
        f"SharedAccessKeyName={shared_access_key_name}",
        f"SharedAccessKey={shared_access_key}",
    ]
    if entity_path:
        parts.append(f"EntityPath={entity_path}")
    if use_development_emulator:
        parts.append("UseDevelopmentEmulator=true")
    return ';'.join(parts)


def fully_qualified_namespace_for(namespace: str = DEFAULT_NAMESPACE) -> str:
    """``orders`` -> ``orders.servicebus.windows.net``; hosts pass through unchanged."""
    if '.' in namespace or namespace == 'localhost':
        return namespace
    return f"{namespace}{NAMESPACE_SUFFIX}"
