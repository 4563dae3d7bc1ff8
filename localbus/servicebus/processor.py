"""
Service Bus Processor

Message pump over a receiver: receives messages, dispatches them to a
handler with bounded concurrency, and settles them when ``auto_complete``
is on (complete on success, abandon on handler error).

Author: LocalBus Team
Date: 2026-03-10
"""

import asyncio
from typing import Awaitable, Callable, Optional, Set

from .exceptions import NoSessionAvailableError, ServiceBusError
from .logging_utils import StructuredLogger
from .models import ReceiveMode, ServiceBusReceivedMessage
from .receiver import ServiceBusReceiver


logger = StructuredLogger('localbus.servicebus.processor')

MessageHandler = Callable[[ServiceBusReceivedMessage, ServiceBusReceiver], Awaitable[None]]
ErrorHandler = Callable[[Exception, Optional[ServiceBusReceivedMessage]], Awaitable[None]]


class ServiceBusProcessor:
    """
    Message pump.

    Args:
        receiver_factory: Opens a fresh receiver (called again when a session
            receiver drains its session)
        on_message: ``async def handler(message, receiver)``
        on_error: ``async def on_error(error, message_or_none)``
        max_concurrent_calls: Handlers allowed to run at once
        auto_complete: Settle messages after the handler returns or raises
        idle_wait: Seconds each receive waits before checking for stop
    """

    def __init__(
        self,
        receiver_factory: Callable[[], ServiceBusReceiver],
        on_message: MessageHandler,
        on_error: Optional[ErrorHandler] = None,
        max_concurrent_calls: int = 1,
        auto_complete: bool = True,
        idle_wait: float = 0.1,
    ):
        if max_concurrent_calls < 1:
            raise ValueError("max_concurrent_calls must be at least 1")
        self._receiver_factory = receiver_factory
        self._on_message = on_message
        self._on_error = on_error
        self.max_concurrent_calls = max_concurrent_calls
        self.auto_complete = auto_complete
        self._idle_wait = idle_wait

        self._receiver: Optional[ServiceBusReceiver] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._active_tasks: Set[asyncio.Task] = set()
        self._stop_event = asyncio.Event()
        self._semaphore = asyncio.Semaphore(max_concurrent_calls)

        # Stats
        self.messages_processed = 0
        self.messages_failed = 0

    @property
    def is_running(self) -> bool:
        return self._pump_task is not None and not self._pump_task.done()

    async def start(self) -> None:
        """Start pumping in the background."""
        if self.is_running:
            logger.warning("Processor already running")
            return
        self._stop_event.clear()
        self._receiver = self._receiver_factory()
        self._pump_task = asyncio.create_task(self._pump())
        logger.info(
            f"Processor started: {self._receiver.entity_path}",
            entity_name=self._receiver.entity_path,
            max_concurrent_calls=self.max_concurrent_calls,
        )

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Stop receiving, wait for in-flight handlers, close the receiver."""
        if self._pump_task is None:
            return
        self._stop_event.set()
        await self._pump_task
        self._pump_task = None

        if self._active_tasks:
            logger.info(f"Waiting for {len(self._active_tasks)} active handlers")
            pending = asyncio.gather(*self._active_tasks, return_exceptions=True)
            try:
                await asyncio.wait_for(pending, timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("Shutdown timeout - cancelling remaining handlers")
                for task in self._active_tasks:
                    task.cancel()

        await self._close_receiver()
        logger.info(
            f"Processor stopped. Stats: processed={self.messages_processed}, failed={self.messages_failed}",
            messages_processed=self.messages_processed,
            messages_failed=self.messages_failed,
        )

    async def __aenter__(self) -> 'ServiceBusProcessor':
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def _close_receiver(self) -> None:
        if self._receiver is not None:
            await self._receiver.close()
            self._receiver = None

    async def _pump(self) -> None:
        while not self._stop_event.is_set():
            await self._semaphore.acquire()
            if self._stop_event.is_set():
                self._semaphore.release()
                break

            try:
                messages = await self._receiver.receive_messages(
                    max_message_count=1,
                    max_wait_time=self._idle_wait,
                )
            except NoSessionAvailableError:
                self._semaphore.release()
                await self._recycle_receiver()
                await asyncio.sleep(self._idle_wait)
                continue
            except Exception as e:
                self._semaphore.release()
                await self._report_error(e, None)
                await asyncio.sleep(self._idle_wait)
                continue

            if not messages:
                self._semaphore.release()
                # A drained session is released so the next one can be accepted
                if self._receiver.session is not None and not self._active_tasks:
                    await self._recycle_receiver()
                continue

            task = asyncio.create_task(self._dispatch(self._receiver, messages[0]))
            self._active_tasks.add(task)
            task.add_done_callback(self._active_tasks.discard)

    async def _recycle_receiver(self) -> None:
        await self._close_receiver()
        self._receiver = self._receiver_factory()

    async def _dispatch(self, receiver: ServiceBusReceiver, message: ServiceBusReceivedMessage) -> None:
        settle = self.auto_complete and receiver.receive_mode == ReceiveMode.PEEK_LOCK
        try:
            await self._on_message(message, receiver)
        except Exception as e:
            self.messages_failed += 1
            await self._report_error(e, message)
            if settle and not receiver._is_settled(message):
                await self._try_settle(receiver.abandon_message, message)
        else:
            self.messages_processed += 1
            if settle and not receiver._is_settled(message):
                await self._try_settle(receiver.complete_message, message)
        finally:
            self._semaphore.release()

    async def _try_settle(self, settle, message: ServiceBusReceivedMessage) -> None:
        try:
            await settle(message)
        except ServiceBusError as e:
            await self._report_error(e, message)

    async def _report_error(self, error: Exception, message: Optional[ServiceBusReceivedMessage]) -> None:
        logger.log_error(
            operation="process_message",
            error_type=type(error).__name__,
            error_message=str(error),
            message_id=message.message_id if message else None,
        )
        if self._on_error is None:
            return
        try:
            await self._on_error(error, message)
        except Exception:
            logger.error("on_error callback raised", exc_info=True)
