"""
Service Bus sessions as seen by a session receiver.

Author: LocalBus Team
Date: 2026-03-10
"""

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Optional, Union

from localbus.auth.rules import AccessRights

from .backend import SessionLock
from .exceptions import InvalidOperationError
from .resilience import retry_async

if TYPE_CHECKING:
    from .receiver import ServiceBusReceiver


class ServiceBusSessionFilter(Enum):
    NEXT_AVAILABLE = 0


NEXT_AVAILABLE_SESSION = ServiceBusSessionFilter.NEXT_AVAILABLE


class ServiceBusSession:
    """
    The session a receiver holds a lock on.

    Before the receiver opens, ``session_id`` is the requested id (None for
    ``NEXT_AVAILABLE_SESSION``); afterwards it is the accepted session's id.
    """

    def __init__(self, receiver: 'ServiceBusReceiver', session_id: Union[str, ServiceBusSessionFilter]):
        self._receiver = receiver
        self._requested = None if session_id is NEXT_AVAILABLE_SESSION else session_id
        self._lock: Optional[SessionLock] = None

    @property
    def session_id(self) -> Optional[str]:
        return self._lock.session_id if self._lock else self._requested

    @property
    def requested_session_id(self) -> Optional[str]:
        return self._requested

    @property
    def lock_token(self) -> Optional[str]:
        return self._lock.lock_token if self._lock else None

    @property
    def locked_until_utc(self) -> Optional[datetime]:
        return self._lock.locked_until_utc if self._lock else None

    @property
    def accepted(self) -> bool:
        return self._lock is not None

    def _bind(self, lock: SessionLock) -> None:
        self._lock = lock

    def _release(self) -> None:
        self._lock = None

    async def _ready(self, operation: str) -> str:
        receiver = self._receiver
        receiver._check_open(operation)
        receiver._connection.authorize(AccessRights.LISTEN, receiver.entity_path)
        await receiver._open()
        if self._lock is None:
            raise InvalidOperationError(operation, "The session is not locked")
        return self._lock.lock_token

    async def get_state(self) -> Optional[bytes]:
        token = await self._ready("get_session_state")
        return await retry_async(
            self._receiver._backend.get_session_state,
            self._receiver.entity_path,
            token,
            policy=self._receiver.retry_policy,
        )

    async def set_state(self, state: Union[str, bytes, None]) -> None:
        token = await self._ready("set_session_state")
        await retry_async(
            self._receiver._backend.set_session_state,
            self._receiver.entity_path,
            token,
            state,
            policy=self._receiver.retry_policy,
        )

    async def renew_lock(self) -> datetime:
        token = await self._ready("renew_session_lock")
        locked_until = await retry_async(
            self._receiver._backend.renew_session_lock,
            self._receiver.entity_path,
            token,
            policy=self._receiver.retry_policy,
        )
        self._lock = SessionLock(self._lock.session_id, token, locked_until)
        return locked_until

    def __repr__(self) -> str:
        return f"ServiceBusSession(session_id={self.session_id!r}, locked_until_utc={self.locked_until_utc})"
