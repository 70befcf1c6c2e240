# Per-token publish/subscribe bridge between the session issuer and the
# waiting clients.

import asyncio
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field

from qrlogin.core.config import settings

logger = logging.getLogger(__name__)

STATUS_UPDATE = "qr-status-update"
AUTH_SUCCESS = "qr-auth-success"
CODE_REFRESHED = "qr-code-refreshed"
ERROR = "error"


@dataclass
class ChannelEvent:
    name: str
    data: dict = field(default_factory=dict)

    def to_message(self, token: str, seq: int) -> dict:
        return {"event": self.name, "token": token, "seq": seq, "data": self.data}


def status_event(status: str) -> ChannelEvent:
    return ChannelEvent(STATUS_UPDATE, {"status": status})


def auth_success_event(credential: str) -> ChannelEvent:
    return ChannelEvent(AUTH_SUCCESS, {"credential": {"token": credential}})


def code_refreshed_event(new_token: str, renderable_code: str) -> ChannelEvent:
    return ChannelEvent(CODE_REFRESHED, {"renderableCode": renderable_code, "token": new_token})


def error_event(message_key: str) -> dict:
    """Connection-level error. Not tied to a token sequence."""
    return {"event": ERROR, "token": None, "seq": 0, "data": {"message": message_key}}


class QueueConnection:
    """
    Physical subscriber living on an asyncio loop. send() never blocks and
    may be called from any thread; a writer task drains the queue.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None):
        self.loop = loop or asyncio.get_running_loop()
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def send(self, message: dict) -> None:
        if self.closed:
            return
        self.loop.call_soon_threadsafe(self.queue.put_nowait, message)

    def close(self) -> None:
        self.closed = True


@dataclass(eq=False)
class Subscription:
    token: str
    connection: object
    active: bool = True


class RealtimeChannel:
    def __init__(self, buffer_grace_seconds: float | None = None, clock=time.monotonic):
        if buffer_grace_seconds is None:
            buffer_grace_seconds = settings.CHANNEL_BUFFER_GRACE_SECONDS
        self.buffer_grace_seconds = buffer_grace_seconds
        self._clock = clock
        self._lock = threading.RLock()
        self._groups: dict[str, list[Subscription]] = {}
        self._pending: dict[str, deque] = {}
        self._seq: dict[str, int] = {}

    def subscribe(self, token: str, connection) -> Subscription:
        with self._lock:
            group = self._groups.setdefault(token, [])
            for sub in group:
                if sub.connection is connection and sub.active:
                    return sub

            sub = Subscription(token=token, connection=connection)
            group.append(sub)
            logger.info(f"Channel join: token={token}, subscribers={len(group)}")

            self._expire_pending()
            backlog = self._pending.pop(token, None)
            if backlog:
                logger.info(f"Flushing {len(backlog)} buffered event(s): token={token}")
                for _, message in backlog:
                    self._deliver(sub, message)
            return sub

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if not subscription.active:
                return
            subscription.active = False
            group = self._groups.get(subscription.token)
            if group is None:
                return
            if subscription in group:
                group.remove(subscription)
            if not group:
                del self._groups[subscription.token]
            logger.info(f"Channel leave: token={subscription.token}")

    def leave(self, token: str, connection) -> bool:
        with self._lock:
            for sub in list(self._groups.get(token, [])):
                if sub.connection is connection:
                    self.unsubscribe(sub)
                    return True
            return False

    def release_connection(self, connection) -> int:
        """Drops every subscription held by a physical connection."""
        released = 0
        with self._lock:
            for group in list(self._groups.values()):
                for sub in list(group):
                    if sub.connection is connection:
                        self.unsubscribe(sub)
                        released += 1
        return released

    def publish(self, token: str, event: ChannelEvent) -> int:
        """
        Delivers an event to every live subscriber of token, in commit order.
        Returns the number of connections reached; 0 means it was buffered.
        """
        with self._lock:
            seq = self._seq.get(token, 0) + 1
            self._seq[token] = seq
            message = event.to_message(token, seq)

            live = self._live_subscribers(token)
            if not live:
                self._expire_pending()
                self._pending.setdefault(token, deque()).append((self._clock(), message))
                logger.info(f"Buffered {event.name}: token={token}, seq={seq}")
                return 0

            delivered = 0
            for sub in live:
                if self._deliver(sub, message):
                    delivered += 1
            return delivered

    def transfer(self, old_token: str, new_token: str) -> list:
        """Attaches the subscribers of old_token to new_token as well."""
        with self._lock:
            moved = [self.subscribe(new_token, sub.connection) for sub in self._live_subscribers(old_token)]
            if moved:
                logger.info(f"Channel transfer: {old_token} -> {new_token}, subscribers={len(moved)}")
            return moved

    def discard(self, token: str) -> None:
        with self._lock:
            for sub in self._groups.pop(token, []):
                sub.active = False
            self._pending.pop(token, None)
            self._seq.pop(token, None)

    def subscriber_count(self, token: str) -> int:
        with self._lock:
            return len(self._live_subscribers(token))

    def pending_count(self, token: str) -> int:
        with self._lock:
            self._expire_pending()
            return len(self._pending.get(token, ()))

    def _live_subscribers(self, token: str) -> list:
        group = self._groups.get(token, [])
        for sub in [s for s in group if getattr(s.connection, "closed", False)]:
            self.unsubscribe(sub)
        return list(self._groups.get(token, []))

    def _deliver(self, sub: Subscription, message: dict) -> bool:
        try:
            sub.connection.send(message)
            return True
        except RuntimeError as e:
            # Loop already closed on the subscriber's side
            logger.warning(f"Dropping dead subscriber: token={sub.token}, error={e}")
            self.unsubscribe(sub)
            return False

    def _expire_pending(self) -> None:
        cutoff = self._clock() - self.buffer_grace_seconds
        for token in list(self._pending):
            backlog = self._pending[token]
            while backlog and backlog[0][0] < cutoff:
                _, message = backlog.popleft()
                logger.info(f"Dropped unclaimed {message['event']}: token={token}")
            if not backlog:
                del self._pending[token]
