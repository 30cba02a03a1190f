"""Process-local push channels for connected notification subscribers.

Responsibilities:
- One ``LiveChannel`` per subscribed client session (CONNECTING -> OPEN -> CLOSED)
- Thread-safe, non-blocking ``push`` so sync request handlers and the audit
  dispatch worker can fan out without awaiting the event loop
- FIFO delivery per channel (one bounded asyncio queue per channel)
- Exactly-once cleanup: a channel is unregistered and its reader woken once,
  whichever of disconnect, write failure, stall or shutdown happens first

A channel is only ever obtained through ``ChannelManager.open``, an async
context manager that closes it on every exit path.
"""
import asyncio
import enum
import json
import logging
import threading
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Awaitable, Callable, Optional

from app.auth import GUEST_SENTINELS
from app.models.user import Role

logger = logging.getLogger(__name__)

_CLOSE = object()


class ChannelState(str, enum.Enum):
    connecting = "CONNECTING"
    open = "OPEN"
    closed = "CLOSED"


class UnauthorizedSubscription(Exception):
    """Raised when an anonymous or guest principal tries to subscribe."""


class ChannelClosed(Exception):
    """Raised to the reader once its channel has been closed."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_sse(payload: dict) -> str:
    """Serialize one message as a Server-Sent Events ``data:`` frame."""
    return f"data: {json.dumps(payload, default=str)}\n\n"


class LiveChannel:
    """An open push transport to one connected client session."""

    def __init__(
        self,
        user_id: str,
        loop: asyncio.AbstractEventLoop,
        queue_size: int,
        on_close: Callable[["LiveChannel"], None],
    ):
        self.channel_id = str(uuid.uuid4())
        self.user_id = user_id
        self.state = ChannelState.connecting
        self.opened_at = _utcnow()
        self.last_heartbeat = self.opened_at
        self._loop = loop
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._on_close = on_close
        self._state_lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        return self.state is ChannelState.open

    def push(self, message: str) -> bool:
        """Schedule ``message`` for delivery. Safe from any thread; never blocks or raises.

        Returns False when the channel is not open or its loop is gone, in which
        case the channel is closed.
        """
        if not self.is_open:
            return False
        try:
            self._loop.call_soon_threadsafe(self._enqueue, message)
        except RuntimeError:
            # Event loop already closed: the transport is dead.
            logger.info("Channel %s for user %s lost its event loop", self.channel_id, self.user_id)
            self.close()
            return False
        return True

    def _enqueue(self, message: str) -> None:
        if not self.is_open:
            return
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning(
                "Channel %s for user %s stalled (%d queued); closing",
                self.channel_id, self.user_id, self._queue.qsize(),
            )
            self.close()

    async def receive(self, timeout: Optional[float] = None) -> Optional[str]:
        """Next queued message, or None if ``timeout`` elapses first.

        Raises ChannelClosed once the channel is closed.
        """
        if self.state is ChannelState.closed:
            raise ChannelClosed(self.channel_id)
        try:
            item = await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None
        if item is _CLOSE:
            raise ChannelClosed(self.channel_id)
        return item

    def heartbeat(self) -> str:
        self.last_heartbeat = _utcnow()
        return format_sse({"type": "heartbeat", "timestamp": self.last_heartbeat.isoformat()})

    def close(self) -> bool:
        """Transition to CLOSED. Returns True only for the call that performed the transition."""
        with self._state_lock:
            if self.state is ChannelState.closed:
                return False
            self.state = ChannelState.closed
        self._on_close(self)
        if not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._wake_reader)
        return True

    def _wake_reader(self) -> None:
        # Undelivered messages are dropped; clients re-query history on reconnect.
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSE)


class ChannelManager:
    """Owns every open LiveChannel of this process.

    Constructed at application startup and torn down with ``close_all`` at
    shutdown; handed to the notification dispatcher explicitly.
    """

    def __init__(self, heartbeat_interval: float = 30.0, queue_size: int = 100):
        self.heartbeat_interval = heartbeat_interval
        self.queue_size = queue_size
        self._channels: dict[str, LiveChannel] = {}
        self._user_channels: dict[str, set[str]] = {}
        self._lock = threading.Lock()

    @staticmethod
    def check_subscriber(user_id: Optional[str], role: Optional[str] = None) -> None:
        if not user_id or user_id.strip().lower() in GUEST_SENTINELS:
            raise UnauthorizedSubscription("A concrete user id is required to subscribe")
        if role is not None and role.upper() == Role.guest.value:
            raise UnauthorizedSubscription("Guests cannot subscribe to notifications")

    @asynccontextmanager
    async def open(self, user_id: Optional[str], role: Optional[str] = None) -> AsyncIterator[LiveChannel]:
        """Open a channel for ``user_id``; it is closed when the block exits, however it exits."""
        self.check_subscriber(user_id, role)
        channel = LiveChannel(user_id, asyncio.get_running_loop(), self.queue_size, self._unregister)
        with self._lock:
            self._channels[channel.channel_id] = channel
            self._user_channels.setdefault(user_id, set()).add(channel.channel_id)
            channel.state = ChannelState.open
        logger.info("Opened channel %s for user %s", channel.channel_id, user_id)
        try:
            yield channel
        finally:
            channel.close()

    def _unregister(self, channel: LiveChannel) -> None:
        with self._lock:
            self._channels.pop(channel.channel_id, None)
            user_set = self._user_channels.get(channel.user_id)
            if user_set is not None:
                user_set.discard(channel.channel_id)
                if not user_set:
                    del self._user_channels[channel.user_id]
        logger.info("Closed channel %s for user %s", channel.channel_id, channel.user_id)

    def channels_for(self, user_id: str) -> list[LiveChannel]:
        with self._lock:
            ids = self._user_channels.get(user_id, set())
            return [self._channels[cid] for cid in ids if cid in self._channels]

    def push_to_user(self, user_id: str, payload: dict) -> int:
        """Push to every open channel of ``user_id``; returns how many accepted it."""
        message = format_sse(payload)
        return sum(1 for channel in self.channels_for(user_id) if channel.push(message))

    def push_to_users(self, user_ids, payload: dict) -> int:
        message = format_sse(payload)
        delivered = 0
        for user_id in user_ids:
            for channel in self.channels_for(user_id):
                if channel.push(message):
                    delivered += 1
        return delivered

    def broadcast(self, payload: dict) -> int:
        message = format_sse(payload)
        with self._lock:
            channels = list(self._channels.values())
        return sum(1 for channel in channels if channel.push(message))

    def connected_user_ids(self) -> set[str]:
        with self._lock:
            return set(self._user_channels)

    def channel_count(self) -> int:
        with self._lock:
            return len(self._channels)

    def close_all(self) -> int:
        with self._lock:
            channels = list(self._channels.values())
        closed = sum(1 for channel in channels if channel.close())
        if closed:
            logger.info("Closed %d live channel(s) on shutdown", closed)
        return closed


async def event_stream(
    manager: ChannelManager,
    user_id: str,
    role: Optional[str] = None,
    is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
) -> AsyncIterator[str]:
    """SSE body for one subscriber: a ``connected`` frame, then notifications and heartbeats."""
    async with manager.open(user_id, role) as channel:
        yield format_sse({
            "type": "connected",
            "timestamp": _utcnow().isoformat(),
            "userId": user_id,
            "channelId": channel.channel_id,
        })
        while True:
            if is_disconnected is not None and await is_disconnected():
                break
            # Heartbeats keep their cadence on busy channels too.
            due_in = manager.heartbeat_interval - (_utcnow() - channel.last_heartbeat).total_seconds()
            if due_in <= 0:
                yield channel.heartbeat()
                continue
            try:
                message = await channel.receive(timeout=due_in)
            except ChannelClosed:
                break
            yield channel.heartbeat() if message is None else message
