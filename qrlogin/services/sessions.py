# In-memory QR login session management (creation, scan, completion,
# expiry, refresh and cleanup).

import logging
import secrets
import threading
import time
from dataclasses import dataclass
from enum import Enum

from qrlogin.core.config import settings
from qrlogin.core.errors import (
    AlreadyCompletedError,
    AuthError,
    NotFoundError,
    ResourceError,
    TerminalStateError,
)
from qrlogin.services.channel import auth_success_event, code_refreshed_event, status_event
from qrlogin.services.logger import log_event
from qrlogin.services.qr_service import QRService

logger = logging.getLogger(__name__)


class SessionStatus(str, Enum):
    PENDING = "pending"
    SCANNED = "scanned"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    SessionStatus.AUTHENTICATED,
    SessionStatus.EXPIRED,
    SessionStatus.CANCELLED,
})

# Forward lattice; anything not listed is refused.
ALLOWED_TRANSITIONS = {
    SessionStatus.PENDING: {SessionStatus.SCANNED, SessionStatus.AUTHENTICATED,
                            SessionStatus.EXPIRED, SessionStatus.CANCELLED},
    SessionStatus.SCANNED: {SessionStatus.AUTHENTICATED, SessionStatus.EXPIRED,
                            SessionStatus.CANCELLED},
    SessionStatus.AUTHENTICATED: set(),
    SessionStatus.EXPIRED: set(),
    SessionStatus.CANCELLED: set(),
}


@dataclass
class QRSession:
    token: str
    created_at: float
    expires_at: float
    bound_subscriber: str = ""
    device_metadata: str = ""
    scan_nonce: str = ""
    status: SessionStatus = SessionStatus.PENDING
    credential: str | None = None
    terminal_at: float | None = None
    replaced_by: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class SessionIssuer:
    """
    Authoritative store and state machine for QR sessions.

    Every transition is a compare-and-set under one lock, and the matching
    channel event is published before the lock is released, so subscribers
    see events in commit order.
    """

    def __init__(
        self,
        channel,
        ttl_seconds: int | None = None,
        gc_grace_seconds: int | None = None,
        max_sessions: int | None = None,
        clock=time.time,
        timer_factory=threading.Timer,
        render=QRService.renderable_code,
    ):
        self.channel = channel
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.SESSION_TTL_SECONDS
        self.gc_grace_seconds = (
            gc_grace_seconds if gc_grace_seconds is not None else settings.SESSION_GC_GRACE_SECONDS
        )
        self.max_sessions = max_sessions if max_sessions is not None else settings.MAX_ACTIVE_SESSIONS
        self._clock = clock
        self._timer_factory = timer_factory
        self._render = render
        self._lock = threading.RLock()
        self._sessions: dict[str, QRSession] = {}
        self._timers: dict = {}

    def _now(self) -> float:
        return self._clock()

    def create_session(self, device_metadata: str = "", bound_subscriber: str = "") -> tuple[str, str]:
        with self._lock:
            self.collect_garbage()
            active = sum(1 for s in self._sessions.values() if not s.is_terminal)
            if active >= self.max_sessions:
                logger.error(f"Session creation refused: {active} active sessions")
                raise ResourceError("Session capacity exhausted")

            session = self._new_session(device_metadata, bound_subscriber)
            code = self._render(session.token, session.scan_nonce)

        logger.info(f"Session created: token={session.token}, subscriber={bound_subscriber}")
        log_event("created", session.token, "pending")
        return session.token, code

    def get(self, token: str) -> QRSession | None:
        with self._lock:
            session = self._sessions.get(token)
            if session is not None:
                self._check_expiry(session)
            return session

    def status(self, token: str) -> SessionStatus:
        session = self.get(token)
        if session is None:
            raise NotFoundError(f"Unknown token {token}")
        return session.status

    def mark_scanned(self, token: str) -> bool:
        """
        pending -> scanned. A repeated scan is a no-op and returns False.
        """
        with self._lock:
            session = self._require(token)
            if session.status == SessionStatus.SCANNED:
                logger.info(f"Duplicate scan ignored: token={token}")
                return False
            if session.is_terminal:
                logger.warning(f"Scan refused: token={token} is {session.status.value}")
                raise TerminalStateError(f"Session is {session.status.value}")

            self._transition(session, SessionStatus.SCANNED)
            self.channel.publish(token, status_event(SessionStatus.SCANNED.value))
        return True

    def complete_authentication(self, token: str, credential: str) -> None:
        if not isinstance(credential, str) or not credential.strip():
            raise AuthError("Credential must be a non-empty string")

        with self._lock:
            session = self._require(token)
            if session.status == SessionStatus.AUTHENTICATED:
                logger.warning(f"Second completion rejected: token={token}")
                raise AlreadyCompletedError("Session already completed")
            if session.is_terminal:
                logger.warning(f"Completion refused: token={token} is {session.status.value}")
                raise TerminalStateError(f"Session is {session.status.value}")

            session.credential = credential
            self._transition(session, SessionStatus.AUTHENTICATED)
            self.channel.publish(token, auth_success_event(credential))

    def cancel(self, token: str) -> bool:
        with self._lock:
            session = self._require(token)
            return self._close(session, SessionStatus.CANCELLED)

    def expire(self, token: str) -> bool:
        """Timer callback. Unknown or already-closed tokens are ignored."""
        with self._lock:
            session = self._sessions.get(token)
            if session is None:
                return False
            return self._close(session, SessionStatus.EXPIRED)

    def refresh(self, token: str) -> tuple[str, str]:
        """
        Replaces a live session with a new token bound to the same subscriber.
        The old token is expired in the same critical section.
        """
        with self._lock:
            old = self._require(token)
            if old.is_terminal:
                raise TerminalStateError(f"Session is {old.status.value}")

            new = self._new_session(old.device_metadata, old.bound_subscriber)
            code = self._render(new.token, new.scan_nonce)

            # Subscribers of the old token start receiving the new token's
            # events before the old session closes.
            self.channel.transfer(token, new.token)
            old.replaced_by = new.token
            self._transition(old, SessionStatus.EXPIRED)
            self.channel.publish(token, code_refreshed_event(new.token, code))

        logger.info(f"Session refreshed: {token} -> {new.token}")
        return new.token, code

    def collect_garbage(self) -> int:
        with self._lock:
            now = self._now()
            stale = [
                t for t, s in self._sessions.items()
                if s.terminal_at is not None and now - s.terminal_at >= self.gc_grace_seconds
            ]
            for t in stale:
                del self._sessions[t]
                self.channel.discard(t)
            if stale:
                logger.info(f"Collected {len(stale)} closed session(s)")
            return len(stale)

    def shutdown(self) -> None:
        with self._lock:
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()

    def _new_session(self, device_metadata: str, bound_subscriber: str) -> QRSession:
        token = secrets.token_urlsafe(24)
        while token in self._sessions:
            token = secrets.token_urlsafe(24)

        now = self._now()
        session = QRSession(
            token=token,
            created_at=now,
            expires_at=now + self.ttl_seconds,
            bound_subscriber=bound_subscriber,
            device_metadata=device_metadata,
            scan_nonce=secrets.token_hex(16),
        )
        self._sessions[token] = session

        timer = self._timer_factory(self.ttl_seconds, self.expire, args=[token])
        timer.daemon = True
        timer.start()
        self._timers[token] = timer
        return session

    def _require(self, token: str) -> QRSession:
        session = self._sessions.get(token)
        if session is None:
            logger.warning(f"Unknown token: {token}")
            raise NotFoundError(f"Unknown token {token}")
        self._check_expiry(session)
        return session

    def _check_expiry(self, session: QRSession) -> None:
        # Timers can lag; the deadline itself is authoritative
        if not session.is_terminal and self._now() >= session.expires_at:
            self._close(session, SessionStatus.EXPIRED)

    def _close(self, session: QRSession, status: SessionStatus) -> bool:
        if session.is_terminal:
            return False
        self._transition(session, status)
        self.channel.publish(session.token, status_event(status.value))
        return True

    def _transition(self, session: QRSession, new_status: SessionStatus) -> None:
        if new_status not in ALLOWED_TRANSITIONS[session.status]:
            raise TerminalStateError(
                f"Illegal transition {session.status.value} -> {new_status.value}"
            )
        previous = session.status
        session.status = new_status
        now = self._now()
        if session.is_terminal:
            session.terminal_at = now
            timer = self._timers.pop(session.token, None)
            if timer is not None:
                timer.cancel()

        latency_ms = int((now - session.created_at) * 1000)
        logger.info(f"Transition: token={session.token}, {previous.value} -> {new_status.value}")
        log_event(new_status.value, session.token, previous.value, latency_ms)
