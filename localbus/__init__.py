"""
LocalBus: In-memory Azure Service Bus test double

Queues, topics, subscriptions, peek-lock settlement, SQL/correlation filters
and dead-letter routing, behind async client objects shaped like the vendor
SDK so Service Bus code can run offline.
"""

__version__ = "0.1.0"
__author__ = "LocalBus Team"

from .servicebus.client import ServiceBusClient
from .servicebus.management import ServiceBusAdministrationClient
from .servicebus.models import (
    CorrelationRuleFilter,
    ReceiveMode,
    ServiceBusMessage,
    ServiceBusReceivedMessage,
    ServiceBusSubQueue,
    SqlRuleAction,
    SqlRuleFilter,
)
from .servicebus.session import NEXT_AVAILABLE_SESSION
from .auth.credentials import ServiceBusSharedKeyCredential

__all__ = [
    "ServiceBusClient",
    "ServiceBusAdministrationClient",
    "ServiceBusMessage",
    "ServiceBusReceivedMessage",
    "ServiceBusSubQueue",
    "ReceiveMode",
    "SqlRuleFilter",
    "SqlRuleAction",
    "CorrelationRuleFilter",
    "NEXT_AVAILABLE_SESSION",
    "ServiceBusSharedKeyCredential",
    "__version__",
]
