# Client end of the realtime channel: one logical connection, join/leave by
# token, reconnect with exponential backoff.

import asyncio
import json
import logging
from typing import Callable, Optional

import websockets

from qrlogin.core.config import settings
from qrlogin.core.errors import ChannelConnectionError, HandshakeError, ProtocolError

logger = logging.getLogger(__name__)


def channel_url(server_url: str) -> str:
    base = server_url.rstrip("/")
    if base.startswith("https://"):
        base = "wss://" + base[len("https://"):]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://"):]
    return f"{base}/auth/qr/ws"


class WebSocketTransport:
    def __init__(self, url: str):
        self.url = url
        self._ws = None

    async def connect(self) -> None:
        try:
            self._ws = await websockets.connect(self.url)
        except (OSError, websockets.exceptions.WebSocketException) as e:
            raise ChannelConnectionError(f"Connect to {self.url} failed: {e}") from e

    async def send(self, message: dict) -> None:
        try:
            await self._ws.send(json.dumps(message))
        except websockets.exceptions.WebSocketException as e:
            raise ChannelConnectionError(str(e)) from e

    async def recv(self) -> str:
        try:
            return await self._ws.recv()
        except websockets.exceptions.WebSocketException as e:
            raise ChannelConnectionError(str(e)) from e

    async def close(self) -> None:
        if self._ws is not None:
            await self._ws.close()
            self._ws = None


class Subscription:
    """Owned handle on one token's events. release() is idempotent."""

    def __init__(self, client: "ChannelClient", token: str):
        self.client = client
        self.token = token
        self.released = False

    def release(self) -> None:
        if self.released:
            return
        self.released = True
        self.client._leave(self)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.release()


class ChannelClient:
    def __init__(
        self,
        transport,
        on_event: Callable[[dict], None] = None,
        on_error: Callable[[HandshakeError], None] = None,
        reconnect_attempts: Optional[int] = None,
        reconnect_base_delay_ms: Optional[int] = None,
        sleep=asyncio.sleep,
        client_session_id: Optional[str] = None,
    ):
        self.transport = transport
        self.on_event = on_event
        self.on_error = on_error
        self.reconnect_attempts = (
            reconnect_attempts if reconnect_attempts is not None else settings.CHANNEL_RECONNECT_ATTEMPTS
        )
        self.reconnect_base_delay = (
            reconnect_base_delay_ms if reconnect_base_delay_ms is not None
            else settings.CHANNEL_RECONNECT_BASE_DELAY_MS
        ) / 1000
        self._sleep = sleep
        # Sent with every join; the server only lets the session's creator listen
        self.client_session_id = client_session_id
        self._subscriptions: dict[str, Subscription] = {}
        self._outbox: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def connected(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def tokens(self) -> list:
        return list(self._subscriptions)

    async def start(self) -> None:
        if self.connected:
            return
        try:
            await self.transport.connect()
        except ChannelConnectionError:
            logger.warning("Initial channel connect failed, retrying")
            if not await self._reconnect():
                raise ChannelConnectionError("Realtime channel unavailable")
        self._task = asyncio.ensure_future(self._run())

    def subscribe(self, token: str) -> Subscription:
        sub = self._subscriptions.get(token)
        if sub is not None:
            return sub
        sub = Subscription(self, token)
        self._subscriptions[token] = sub
        self._outbox.put_nowait(self._join_frame(token))
        return sub

    def _join_frame(self, token: str) -> dict:
        return {"action": "join", "token": token, "clientSessionId": self.client_session_id}

    def _leave(self, sub: Subscription) -> None:
        if self._subscriptions.get(sub.token) is sub:
            del self._subscriptions[sub.token]
            if not self._closed:
                self._outbox.put_nowait({"action": "leave", "token": sub.token})

    async def close(self) -> None:
        self._closed = True
        for sub in list(self._subscriptions.values()):
            sub.release()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.transport.close()

    async def _run(self) -> None:
        while not self._closed:
            try:
                await self._pump()
            except ChannelConnectionError as e:
                if self._closed:
                    return
                logger.warning(f"Channel dropped: {e}")
                if not await self._reconnect():
                    self._report(ChannelConnectionError("Channel reconnect attempts exhausted"))
                    return

    async def _pump(self) -> None:
        reader = asyncio.ensure_future(self._read_loop())
        writer = asyncio.ensure_future(self._write_loop())
        try:
            done, _ = await asyncio.wait({reader, writer}, return_when=asyncio.FIRST_EXCEPTION)
        finally:
            reader.cancel()
            writer.cancel()
        for task in done:
            task.result()

    async def _read_loop(self) -> None:
        while True:
            raw = await self.transport.recv()
            try:
                message = json.loads(raw)
            except (TypeError, ValueError):
                self._report(ProtocolError("Malformed channel frame"))
                continue
            if self.on_event is None:
                continue
            try:
                self.on_event(message)
            except HandshakeError as e:
                logger.error(f"Event handler failed: {type(e).__name__}: {e}")
                self._report(e)

    async def _write_loop(self) -> None:
        while True:
            message = await self._outbox.get()
            await self.transport.send(message)

    async def _reconnect(self) -> bool:
        for attempt in range(self.reconnect_attempts):
            await self._sleep(self.reconnect_base_delay * (2 ** attempt))
            if self._closed:
                return False
            try:
                await self.transport.connect()
            except ChannelConnectionError as e:
                logger.warning(f"Reconnect attempt {attempt + 1} failed: {e}")
                continue

            # Fresh socket: the server knows none of our tokens
            while not self._outbox.empty():
                self._outbox.get_nowait()
            for token in self._subscriptions:
                self._outbox.put_nowait(self._join_frame(token))
            logger.info(f"Channel reconnected, rejoined {len(self._subscriptions)} token(s)")
            return True
        return False

    def _report(self, error: HandshakeError) -> None:
        if self.on_error is not None:
            self.on_error(error)
