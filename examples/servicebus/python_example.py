"""
LocalBus Service Bus - Python Example

Queue, topic and session operations written the way they would be against
the azure-servicebus SDK, running on an in-memory namespace.

Usage:
    python create_entities.py   # or: localbus walkthrough
    python python_example.py
"""

import asyncio
from datetime import timedelta

from localbus import (
    NEXT_AVAILABLE_SESSION,
    ServiceBusAdministrationClient,
    ServiceBusClient,
    ServiceBusMessage,
    ServiceBusSubQueue,
)
from localbus.servicebus.models import SqlRuleFilter

from create_entities import CLIENT_KWARGS, CONNECTION_STRING, create_entities


async def queue_example():
    """
    Demonstrates basic queue operations:
    - Send message
    - Receive message with peek-lock
    - Complete message
    - Dead-letter message
    """
    print("\n=== Queue Example ===\n")

    async with ServiceBusClient.from_connection_string(CONNECTION_STRING, **CLIENT_KWARGS) as client:
        print("Sending messages to 'orders' queue...")
        async with client.get_queue_sender("orders") as sender:
            await sender.send_messages([
                ServiceBusMessage("Order 1001", application_properties={"order_id": 1001, "priority": "high"}),
                ServiceBusMessage("Order 1002", application_properties={"order_id": 1002, "priority": "normal"}),
                ServiceBusMessage("Order 1003 (will be dead-lettered)", application_properties={"order_id": 1003}),
            ])

        print("Receiving messages...")
        async with client.get_queue_receiver("orders", max_wait_time=1) as receiver:
            async for message in receiver:
                order_id = message.application_properties["order_id"]
                if order_id == 1003:
                    await receiver.dead_letter_message(
                        message,
                        reason="InvalidOrder",
                        error_description="Order failed validation",
                    )
                    print(f"  dead-lettered order {order_id}")
                else:
                    await receiver.complete_message(message)
                    print(f"  completed order {order_id}: {message}")

        async with client.get_queue_receiver("orders", sub_queue=ServiceBusSubQueue.DEAD_LETTER) as dlq:
            for message in await dlq.receive_messages(max_message_count=10):
                print(f"  DLQ: {message} ({message.dead_letter_reason})")
                await dlq.complete_message(message)


async def topic_example():
    """Publish to a topic and read filtered subscriptions."""
    print("\n=== Topic Example ===\n")

    async with ServiceBusAdministrationClient.from_connection_string(CONNECTION_STRING) as admin:
        await admin.create_rule("events", "high-priority", "Critical", SqlRuleFilter("priority = 'critical'"))

    async with ServiceBusClient.from_connection_string(CONNECTION_STRING, **CLIENT_KWARGS) as client:
        async with client.get_topic_sender("events") as sender:
            for priority in ("low", "high", "critical"):
                await sender.send_messages(
                    ServiceBusMessage(f"{priority} event", application_properties={"priority": priority})
                )

        for subscription in ("all-events", "high-priority"):
            async with client.get_subscription_receiver("events", subscription) as receiver:
                messages = await receiver.receive_messages(max_message_count=10)
                for message in messages:
                    await receiver.complete_message(message)
                print(f"  {subscription}: {[str(m) for m in messages]}")


async def session_example():
    """Process two interleaved sessions in order."""
    print("\n=== Session Example ===\n")

    async with ServiceBusClient.from_connection_string(CONNECTION_STRING, **CLIENT_KWARGS) as client:
        async with client.get_queue_sender("session-orders") as sender:
            await sender.send_messages([
                ServiceBusMessage(f"{customer} step {step}", session_id=customer)
                for step in range(1, 4)
                for customer in ("customer-1", "customer-2")
            ])

        for _ in range(2):
            async with client.get_queue_receiver("session-orders", session_id=NEXT_AVAILABLE_SESSION) as receiver:
                messages = await receiver.receive_messages(max_message_count=10)
                for message in messages:
                    await receiver.complete_message(message)
                await receiver.session.set_state(f"processed {len(messages)}")
                print(f"  {receiver.session.session_id}: {[str(m) for m in messages]}")


async def scheduled_example():
    """Schedule a message a second ahead and wait for it."""
    print("\n=== Scheduled Example ===\n")

    async with ServiceBusClient.from_connection_string(CONNECTION_STRING, **CLIENT_KWARGS) as client:
        async with client.get_queue_sender("orders") as sender:
            at = client.backend.now() + timedelta(seconds=1)
            sequence_numbers = await sender.schedule_messages(ServiceBusMessage("Reminder"), at)
            print(f"  scheduled #{sequence_numbers[0]} for {at.isoformat()}")

        async with client.get_queue_receiver("orders", max_wait_time=3) as receiver:
            messages = await receiver.receive_messages()
            for message in messages:
                await receiver.complete_message(message)
            print(f"  received: {[str(m) for m in messages]}")


async def main():
    await create_entities()
    await queue_example()
    await topic_example()
    await session_example()
    await scheduled_example()


if __name__ == "__main__":
    asyncio.run(main())
