"""
Client connection to an in-memory namespace.

Shared by every handler a client opens: resolves the backend, carries the
credential and retry policy, and checks claims before each call.

Author: LocalBus Team
Date: 2026-03-09
"""

from typing import Optional

from localbus.auth.connection_string import ServiceBusConnectionStringProperties
from localbus.auth.credentials import ServiceBusSharedKeyCredential, check_access
from localbus.auth.rules import AccessRights

from .backend import ServiceBusBackend, get_backend, parse_entity_path
from .exceptions import InvalidOperationError
from .logging_utils import StructuredLogger
from .resilience import DEFAULT_RETRY_POLICY, RetryPolicy


logger = StructuredLogger('localbus.servicebus.connection')


def credential_from_connection_string(props: ServiceBusConnectionStringProperties) -> ServiceBusSharedKeyCredential:
    """
    Raises:
        ValueError: The string carries a SharedAccessSignature, which the
            local namespace cannot verify
    """
    if props.shared_access_signature is not None:
        raise ValueError("SharedAccessSignature connection strings are not supported; use a shared access key")
    return ServiceBusSharedKeyCredential(props.shared_access_key_name, props.shared_access_key)


class ServiceBusConnection:
    """Credential, retry policy and target namespace of one client."""

    def __init__(
        self,
        fully_qualified_namespace: str,
        credential: object,
        backend: Optional[ServiceBusBackend] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.fully_qualified_namespace = fully_qualified_namespace
        self.credential = credential
        self.backend = backend or get_backend(fully_qualified_namespace)
        self.retry_policy = retry_policy or DEFAULT_RETRY_POLICY

    def authorize(self, right: AccessRights, entity_path: Optional[str] = None) -> None:
        """Check the credential's claim; subscriptions are authorized via their topic."""
        entity_name = parse_entity_path(entity_path)[0] if entity_path else None
        check_access(self.backend.authorization, self.credential, right, entity_name)


class BaseHandler:
    """Open/closed bookkeeping shared by senders, receivers and processors."""

    def __init__(self, connection: ServiceBusConnection, entity_path: str):
        self._connection = connection
        self._backend = connection.backend
        self.entity_path = entity_path
        self._closed = False

    @property
    def fully_qualified_namespace(self) -> str:
        return self._connection.fully_qualified_namespace

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._connection.retry_policy

    @property
    def closed(self) -> bool:
        return self._closed

    def _check_open(self, operation: str) -> None:
        if self._closed:
            raise InvalidOperationError(operation, f"The handler for '{self.entity_path}' is closed")

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            logger.debug(
                f"Handler closed: {type(self).__name__} {self.entity_path}",
                handler=type(self).__name__,
                entity_name=self.entity_path,
            )

    async def __aenter__(self):
        self._check_open("open")
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
