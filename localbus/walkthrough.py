"""
Service Bus Walkthrough

The course flows (send, peek-lock processing, dead-letter inspection, topic
fan-out, sessions, scheduled and deferred messages) written against a
``ServiceBusClient``, so they run unchanged against the in-memory namespace.

Author: LocalBus Team
Date: 2026-03-14
"""

import json
import uuid
from datetime import timedelta
from typing import Any, Dict, List, Optional

from localbus.core.config_manager import LocalBusConfig
from localbus.servicebus.backend import ServiceBusBackend
from localbus.servicebus.client import ServiceBusClient
from localbus.servicebus.config import client_kwargs, connection_string_for, create_backend, provision
from localbus.servicebus.logging_utils import StructuredLogger
from localbus.servicebus.models import MessageState, ServiceBusMessage, ServiceBusSubQueue
from localbus.servicebus.session import NEXT_AVAILABLE_SESSION


logger = StructuredLogger('localbus.walkthrough')

QUEUE_NAME = "inference-requests"
TOPIC_NAME = "inference-results"
SESSION_QUEUE_NAME = "orders-sessions"
NOTIFICATIONS_SUBSCRIPTION = "notifications"
HIGH_PRIORITY_SUBSCRIPTION = "high-priority"

MALFORMED_PAYLOAD_REASON = "MalformedPayload"
TOPIC_PRIORITIES = ["standard", "high", "standard", "high", "low"]

DEFAULT_MAX_WAIT_TIME = 0.2


def walkthrough_config() -> LocalBusConfig:
    """Entity layout the walkthrough flows expect."""
    return LocalBusConfig(
        queues=[
            {"name": QUEUE_NAME},
            {"name": SESSION_QUEUE_NAME, "properties": {"requires_session": True}},
        ],
        topics=[
            {
                "name": TOPIC_NAME,
                "subscriptions": [
                    {"name": NOTIFICATIONS_SUBSCRIPTION},
                    {
                        "name": HIGH_PRIORITY_SUBSCRIPTION,
                        "rules": [{"name": "HighPriority", "sql_filter": "priority = 'high'"}],
                    },
                ],
            }
        ],
    )


def _json_message(payload: Any, **kwargs: Any) -> ServiceBusMessage:
    body = payload if isinstance(payload, str) else json.dumps(payload)
    return ServiceBusMessage(
        body,
        content_type="application/json",
        message_id=str(uuid.uuid4()),
        **kwargs
    )


async def send_messages(client: ServiceBusClient) -> List[Dict[str, Any]]:
    """Send two valid inference requests and one malformed one to the queue."""
    requests = [
        (
            {"prompt": "Extract parties and effective date.", "model": "gpt-4o", "document_id": "doc-001"},
            "req-doc-001",
            {"priority": "standard", "document_type": "contract"},
            "valid",
        ),
        (
            {"prompt": "Summarize the key terms.", "model": "gpt-4o", "document_id": "doc-002"},
            "req-doc-002",
            {"priority": "high", "document_type": "contract"},
            "valid",
        ),
        ("not valid json: [broken", "req-doc-003", {"priority": "standard"}, "malformed"),
    ]

    results = []
    async with client.get_queue_sender(QUEUE_NAME) as sender:
        for payload, correlation_id, properties, kind in requests:
            message = _json_message(
                payload,
                correlation_id=correlation_id,
                application_properties=properties,
            )
            await sender.send_messages(message)
            results.append({"correlation_id": correlation_id, "type": kind, "status": "sent"})
    return results


async def process_messages(
    client: ServiceBusClient,
    max_wait_time: float = DEFAULT_MAX_WAIT_TIME,
) -> List[Dict[str, Any]]:
    """
    Process the queue with peek-lock.

    Valid JSON is completed; anything else is dead-lettered with reason
    ``MalformedPayload``.
    """
    results = []
    async with client.get_queue_receiver(QUEUE_NAME, max_wait_time=max_wait_time) as receiver:
        async for message in receiver:
            try:
                payload = json.loads(str(message))
            except json.JSONDecodeError:
                await receiver.dead_letter_message(
                    message,
                    reason=MALFORMED_PAYLOAD_REASON,
                    error_description="Message body is not valid JSON",
                )
                results.append({
                    "correlation_id": message.correlation_id,
                    "document_id": None,
                    "model": None,
                    "prompt": str(message)[:50],
                    "status": "dead-lettered",
                })
                continue

            await receiver.complete_message(message)
            results.append({
                "correlation_id": message.correlation_id,
                "document_id": payload.get("document_id"),
                "model": payload.get("model"),
                "prompt": payload.get("prompt", "")[:50],
                "status": "completed",
            })
    return results


async def inspect_dead_letter_queue(
    client: ServiceBusClient,
    max_wait_time: float = DEFAULT_MAX_WAIT_TIME,
) -> List[Dict[str, Any]]:
    """Drain the queue's dead-letter sub-queue, reporting why each message landed there."""
    results = []
    async with client.get_queue_receiver(
        QUEUE_NAME,
        sub_queue=ServiceBusSubQueue.DEAD_LETTER,
        max_wait_time=max_wait_time,
    ) as receiver:
        async for message in receiver:
            results.append({
                "message_id": message.message_id,
                "correlation_id": message.correlation_id,
                "dead_letter_reason": message.dead_letter_reason,
                "error_description": message.dead_letter_error_description,
                "delivery_count": message.delivery_count,
                "body": str(message)[:100],
            })
            await receiver.complete_message(message)
    return results


async def _drain_subscription(
    client: ServiceBusClient,
    subscription_name: str,
    max_wait_time: float,
) -> List[Dict[str, Any]]:
    received = []
    async with client.get_subscription_receiver(
        TOPIC_NAME,
        subscription_name,
        max_wait_time=max_wait_time,
    ) as receiver:
        async for message in receiver:
            body = json.loads(str(message))
            received.append({
                "document_id": body["document_id"],
                "priority": message.application_properties.get("priority", "unknown"),
            })
            await receiver.complete_message(message)
    return received


async def topic_messaging(
    client: ServiceBusClient,
    max_wait_time: float = DEFAULT_MAX_WAIT_TIME,
) -> Dict[str, List[Dict[str, Any]]]:
    """
    Publish five results to the topic and read both subscriptions.

    ``notifications`` keeps the match-all rule and sees every message;
    ``high-priority`` only sees messages matching ``priority = 'high'``.
    """
    sent = []
    async with client.get_topic_sender(TOPIC_NAME) as sender:
        for i, priority in enumerate(TOPIC_PRIORITIES):
            document_id = f"doc-{i + 1:03d}"
            message = _json_message(
                {"document_id": document_id, "status": "completed", "confidence": 0.95},
                application_properties={"priority": priority},
            )
            await sender.send_messages(message)
            sent.append({"document_id": document_id, "priority": priority})

    return {
        "sent": sent,
        "notifications": await _drain_subscription(client, NOTIFICATIONS_SUBSCRIPTION, max_wait_time),
        "high_priority": await _drain_subscription(client, HIGH_PRIORITY_SUBSCRIPTION, max_wait_time),
    }


async def session_messaging(
    client: ServiceBusClient,
    max_wait_time: float = DEFAULT_MAX_WAIT_TIME,
) -> Dict[str, Any]:
    """
    Send interleaved order events for two customers, then process one
    session at a time, recording the last step in the session state.
    """
    events = [
        ("customer-a", "created"),
        ("customer-b", "created"),
        ("customer-a", "paid"),
        ("customer-b", "paid"),
        ("customer-a", "shipped"),
    ]
    async with client.get_queue_sender(SESSION_QUEUE_NAME) as sender:
        await sender.send_messages([
            _json_message({"customer": session_id, "step": step}, session_id=session_id)
            for session_id, step in events
        ])

    sessions: Dict[str, Dict[str, Any]] = {}
    for _ in range(len({session_id for session_id, _ in events})):
        async with client.get_queue_receiver(
            SESSION_QUEUE_NAME,
            session_id=NEXT_AVAILABLE_SESSION,
            max_wait_time=max_wait_time,
        ) as receiver:
            session = receiver.session
            steps = []
            async for message in receiver:
                steps.append(json.loads(str(message))["step"])
                await receiver.complete_message(message)
            await session.set_state(json.dumps({"last_step": steps[-1] if steps else None}))
            state = await session.get_state()
            sessions[session.session_id] = {
                "steps": steps,
                "state": json.loads(state) if state else None,
            }
    return {"sent": len(events), "sessions": sessions}


async def scheduled_and_deferred(
    client: ServiceBusClient,
    backend: ServiceBusBackend,
    schedule_delay: float = 0.1,
    max_wait_time: float = 1.0,
) -> Dict[str, Any]:
    """
    Schedule two reminders and cancel one; defer a message and fetch it back
    by sequence number.

    ``backend`` supplies the namespace clock the schedule time is computed from.
    """
    async with client.get_queue_sender(QUEUE_NAME) as sender:
        at = backend.now() + timedelta(seconds=schedule_delay)
        kept, cancelled = await sender.schedule_messages(
            [
                _json_message({"reminder": "review contract", "document_id": "doc-010"}),
                _json_message({"reminder": "archive contract", "document_id": "doc-011"}),
            ],
            at,
        )
        await sender.cancel_scheduled_messages(cancelled)
        await sender.send_messages(_json_message({"document_id": "doc-020", "needs": "approval"}))

    async with client.get_queue_receiver(QUEUE_NAME, max_wait_time=max_wait_time) as receiver:
        pending = await receiver.peek_messages(max_message_count=10)
        scheduled = [m.sequence_number for m in pending if m.state == MessageState.SCHEDULED]

        deferred_seq: Optional[int] = None
        delivered = []
        while not delivered or deferred_seq is None:
            messages = await receiver.receive_messages(max_message_count=1)
            if not messages:
                break
            message = messages[0]
            payload = json.loads(str(message))
            if "needs" in payload and deferred_seq is None:
                deferred_seq = message.sequence_number
                await receiver.defer_message(message)
                continue
            await receiver.complete_message(message)
            delivered.append(payload["document_id"])

        recovered = []
        if deferred_seq is not None:
            for message in await receiver.receive_deferred_messages(deferred_seq):
                recovered.append(json.loads(str(message))["document_id"])
                await receiver.complete_message(message)

    return {
        "scheduled": kept,
        "cancelled": cancelled,
        "pending_scheduled": scheduled,
        "delivered": delivered,
        "deferred": recovered,
    }


async def run_walkthrough(
    config: Optional[LocalBusConfig] = None,
    max_wait_time: float = DEFAULT_MAX_WAIT_TIME,
) -> Dict[str, Any]:
    """
    Run every flow against a fresh in-memory namespace.

    Entities from ``config`` are provisioned first; the walkthrough layout
    is added on top, skipping anything already declared.
    """
    layout = walkthrough_config()
    config = config or layout
    backend = create_backend(config, register=False)
    if config is not layout:
        await provision(backend, config)
    await provision(backend, layout, skip_existing=True)

    logger.info("Running walkthrough", namespace=backend.namespace)
    results: Dict[str, Any] = {}
    async with ServiceBusClient.from_connection_string(
        connection_string_for(config),
        backend=backend,
        **client_kwargs(config),
    ) as client:
        results["send"] = await send_messages(client)
        results["process"] = await process_messages(client, max_wait_time)
        results["dead_letter"] = await inspect_dead_letter_queue(client, max_wait_time)
        results["topic"] = await topic_messaging(client, max_wait_time)
        results["sessions"] = await session_messaging(client, max_wait_time)
        results["scheduled_and_deferred"] = await scheduled_and_deferred(client, backend)
    return results
