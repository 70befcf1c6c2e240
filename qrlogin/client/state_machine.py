"""Client-side driver of one QR login handshake.

The machine owns the creation request, the channel subscription for the
current token and the local expiry timer. It runs on a single asyncio loop
and only suspends while creating a session or connecting the channel.
"""

import asyncio
import logging
import secrets
from enum import Enum
from typing import Callable, Optional

from qrlogin.client.api import HttpSessionCreator
from qrlogin.client.channel_client import ChannelClient, WebSocketTransport, channel_url
from qrlogin.client.handoff import CredentialHandoff
from qrlogin.core.config import settings
from qrlogin.core.errors import (
    AuthError,
    ChannelConnectionError,
    HandshakeError,
    NetworkError,
    ProtocolError,
)
from qrlogin.services.channel import AUTH_SUCCESS, CODE_REFRESHED, ERROR, STATUS_UPDATE

logger = logging.getLogger(__name__)


class HandshakeState(str, Enum):
    GENERATING = "generating"
    WAITING = "waiting"
    SCANNED = "scanned"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"
    ERROR = "error"


S = HandshakeState

TRANSITIONS = {
    S.GENERATING: {S.WAITING, S.ERROR},
    S.WAITING: {S.WAITING, S.SCANNED, S.AUTHENTICATED, S.EXPIRED, S.ERROR},
    S.SCANNED: {S.AUTHENTICATED, S.EXPIRED, S.ERROR},
    S.AUTHENTICATED: set(),
    S.EXPIRED: {S.GENERATING},
    S.ERROR: {S.GENERATING},
}

ACTIVE = (S.WAITING, S.SCANNED)


class InvalidTransition(ProtocolError):
    pass


class ClientStateMachine:
    def __init__(
        self,
        creator,
        channel: ChannelClient,
        handoff_factory: Callable[[Callable[[], None]], CredentialHandoff],
        client_session_id: Optional[str] = None,
        device_metadata: str = "",
        create_timeout_ms: Optional[int] = None,
        session_ttl_seconds: Optional[float] = None,
        on_change: Optional[Callable[["ClientStateMachine"], None]] = None,
    ):
        self.creator = creator
        self.channel = channel
        self.channel.on_event = self.handle_event
        self.channel.on_error = self._fail
        self.handoff_factory = handoff_factory
        self.client_session_id = client_session_id or f"client-session-{secrets.token_urlsafe(16)}"
        self.channel.client_session_id = self.client_session_id
        self.device_metadata = device_metadata
        self.create_timeout = (
            create_timeout_ms if create_timeout_ms is not None else settings.CREATE_TIMEOUT_MS
        ) / 1000
        self.session_ttl = (
            session_ttl_seconds if session_ttl_seconds is not None else settings.SESSION_TTL_SECONDS
        )
        self.on_change = on_change

        self.state = S.GENERATING
        self.token: Optional[str] = None
        self.renderable_code: Optional[str] = None
        self.error: Optional[HandshakeError] = None
        self.handoff: Optional[CredentialHandoff] = None
        self.history = [S.GENERATING]
        self._subscription = None
        self._expiry_handle = None
        self._create_task: Optional[asyncio.Future] = None
        self._attempt = 0
        self._closed = False

    @property
    def message_key(self) -> Optional[str]:
        if self.state == S.ERROR and self.error is not None:
            return self.error.message_key
        if self.state == S.EXPIRED:
            return "qr_code_expired"
        return None

    async def start(self) -> None:
        if self._attempt:
            raise InvalidTransition("Handshake already started; use retry()")
        await self._generate()

    async def retry(self) -> None:
        """User-initiated regeneration from expired or error."""
        previous = self.token
        self._transition(S.GENERATING)
        await self._retire(previous)
        await self._generate()

    async def close(self) -> None:
        """View teardown: nothing may outlive the attempt."""
        self._closed = True
        self._teardown()
        if self.state != S.AUTHENTICATED:
            await self._retire(self.token)
        await self.channel.close()
        aclose = getattr(self.creator, "aclose", None)
        if aclose is not None:
            await aclose()

    def handle_event(self, message) -> None:
        if self._closed:
            return
        if not isinstance(message, dict) or not isinstance(message.get("event"), str):
            self._fail(ProtocolError("Malformed channel event"))
            return

        name = message["event"]
        data = message.get("data") if isinstance(message.get("data"), dict) else {}

        if name == ERROR:
            self._fail(ChannelConnectionError(
                "Server reported a channel error",
                message_key=data.get("message") or "websocket_error",
            ))
            return

        if message.get("token") != self.token:
            logger.debug(f"Ignoring {name} for stale token {message.get('token')}")
            return

        if name == STATUS_UPDATE:
            status = data.get("status")
            if status == "scanned":
                self._advance(S.SCANNED)
            elif status in ("expired", "cancelled"):
                # Cancelled is presented the same way as expired
                if self._advance(S.EXPIRED):
                    self._teardown()
            else:
                self._fail(ProtocolError(f"Unknown status {status!r}"))
        elif name == AUTH_SUCCESS:
            self._on_authenticated(data)
        elif name == CODE_REFRESHED:
            self._on_refreshed(data)
        else:
            self._fail(ProtocolError(f"Unknown event {name!r}"))

    async def _generate(self) -> None:
        self._attempt += 1
        attempt = self._attempt
        self.token = None
        self.renderable_code = None
        self.error = None
        self.handoff = self.handoff_factory(self._release_subscription)

        request = {"clientSessionId": self.client_session_id, "deviceMetadata": self.device_metadata}
        self._create_task = asyncio.ensure_future(self.creator.create(request))
        try:
            response = await asyncio.wait_for(self._create_task, timeout=self.create_timeout)
        except asyncio.TimeoutError:
            # wait_for has already cancelled the request
            logger.warning(f"QR generation timed out after {self.create_timeout}s")
            self._fail(NetworkError(
                "Request timed out. Please check if the backend is running.",
                message_key="qr_generation_timed_out",
            ))
            return
        except HandshakeError as e:
            self._fail(e)
            return
        except asyncio.CancelledError:
            if self._closed:
                return
            raise
        finally:
            self._create_task = None

        if self._closed or attempt != self._attempt:
            return

        token = response.get("token") if isinstance(response, dict) else None
        code = response.get("renderableCode") if isinstance(response, dict) else None
        if not isinstance(token, str) or not token or not isinstance(code, str):
            self._fail(ProtocolError("Generate response missing token", message_key="qr_generation_failed"))
            return

        self.token = token
        self.renderable_code = code
        self._transition(S.WAITING)
        self._arm_expiry()

        try:
            await self.channel.start()
        except ChannelConnectionError as e:
            self._fail(e)
            return
        if self._closed or attempt != self._attempt or self.state not in ACTIVE:
            return
        self._subscription = self.channel.subscribe(token)
        logger.info(f"Waiting for scan: token={token}")

    async def _retire(self, token: Optional[str]) -> None:
        # An abandoned code must stop being accepted by the server. Best effort:
        # the server expires it on its own deadline anyway.
        cancel = getattr(self.creator, "cancel", None)
        if token is None or cancel is None:
            return
        try:
            await cancel(token)
        except HandshakeError as e:
            logger.warning(f"Could not cancel abandoned token {token}: {e}")

    def _on_authenticated(self, data: dict) -> None:
        if self.state not in ACTIVE:
            logger.info("Duplicate authentication event absorbed")
            return

        credential = data.get("credential")
        credential = credential.get("token") if isinstance(credential, dict) else None
        try:
            self.handoff.finalize(credential)
        except AuthError as e:
            self._fail(e)
            return

        self._transition(S.AUTHENTICATED)
        self._teardown()

    def _on_refreshed(self, data: dict) -> None:
        if self.state != S.WAITING:
            logger.info(f"Code refresh absorbed in state {self.state.value}")
            return

        new_token = data.get("token")
        code = data.get("renderableCode")
        if not isinstance(new_token, str) or not new_token or not isinstance(code, str):
            self._fail(ProtocolError("Malformed code refresh"))
            return

        # Join the new token before leaving the old one
        old = self._subscription
        self._subscription = self.channel.subscribe(new_token)
        self.token = new_token
        self.renderable_code = code
        if old is not None:
            old.release()
        self._arm_expiry()
        self._transition(S.WAITING)
        logger.info(f"Code rotated: token={new_token}")

    def _on_local_expiry(self) -> None:
        self._expiry_handle = None
        if self.state in ACTIVE:
            logger.info(f"Local expiry reached: token={self.token}")
            self._transition(S.EXPIRED)
            self._teardown()

    def _advance(self, target: HandshakeState) -> bool:
        if target == self.state or target not in TRANSITIONS[self.state]:
            logger.debug(f"Absorbed out-of-sequence {target.value} in {self.state.value}")
            return False
        self._transition(target)
        return True

    def _fail(self, error: HandshakeError) -> None:
        if self._closed or self.state not in (S.GENERATING, S.WAITING, S.SCANNED):
            logger.info(f"Error after attempt ended absorbed: {error}")
            return
        logger.error(f"Handshake failed: {type(error).__name__}: {error}")
        self.error = error
        self._transition(S.ERROR)
        self._teardown()

    def _transition(self, target: HandshakeState) -> None:
        if target not in TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.state.value} -> {target.value}")
        self.state = target
        self.history.append(target)
        if self.on_change is not None:
            self.on_change(self)

    def _arm_expiry(self) -> None:
        if self._expiry_handle is not None:
            self._expiry_handle.cancel()
        loop = asyncio.get_running_loop()
        self._expiry_handle = loop.call_later(self.session_ttl, self._on_local_expiry)

    def _release_subscription(self) -> None:
        if self._subscription is not None:
            self._subscription.release()
            self._subscription = None

    def _teardown(self) -> None:
        if self._expiry_handle is not None:
            self._expiry_handle.cancel()
            self._expiry_handle = None
        if self._create_task is not None and not self._create_task.done():
            self._create_task.cancel()
        self._release_subscription()


def build_client(host, redirect=None, server_url: Optional[str] = None, **kwargs) -> ClientStateMachine:
    """Wires the HTTP creator, the WebSocket channel and the handoff together."""
    server_url = server_url or settings.SERVER_URL
    channel = ChannelClient(WebSocketTransport(channel_url(server_url)))
    return ClientStateMachine(
        HttpSessionCreator(server_url),
        channel,
        lambda release: CredentialHandoff(host, release=release, redirect=redirect),
        **kwargs,
    )
