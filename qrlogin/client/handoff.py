# Terminal step of a handshake attempt: hand the delivered credential to
# the host application exactly once.

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

import jwt

from qrlogin.core.config import settings
from qrlogin.core.errors import AuthError
from qrlogin.core.security import is_well_formed_token

logger = logging.getLogger(__name__)


class HostSession(Protocol):
    def establish_session(self, credential: str) -> None: ...

    def notify_user(self, message_key: str, severity: str) -> None: ...


@dataclass(frozen=True)
class Established:
    credential: str
    subject: Optional[str] = None


def _call_later(delay: float, callback: Callable[[], None]):
    return asyncio.get_running_loop().call_later(delay, callback)


class CredentialHandoff:
    """
    One instance per attempt. finalize() establishes the host session, releases
    the channel subscription and schedules the post-login redirect; calling it
    again returns the first result and does nothing else.
    """

    def __init__(
        self,
        host: HostSession,
        release: Optional[Callable[[], None]] = None,
        redirect: Optional[Callable[[], None]] = None,
        schedule=_call_later,
        redirect_delay_ms: Optional[int] = None,
    ):
        self.host = host
        self._release = release
        self._redirect = redirect
        self._schedule = schedule
        self.redirect_delay_ms = (
            redirect_delay_ms if redirect_delay_ms is not None else settings.REDIRECT_DELAY_MS
        )
        self._result: Optional[Established] = None
        self.redirect_handle = None

    @property
    def established(self) -> Optional[Established]:
        return self._result

    def finalize(self, credential) -> Established:
        if self._result is not None:
            logger.info("Duplicate credential delivery ignored")
            return self._result

        if not isinstance(credential, str) or not credential.strip():
            logger.warning("Rejected credential: missing or empty")
            raise AuthError("Authentication failed to return a session.")

        # The credential is opaque; a JWT only contributes its subject
        subject = None
        if is_well_formed_token(credential):
            subject = jwt.decode(credential, options={"verify_signature": False}).get("sub")

        self.host.establish_session(credential)
        self._result = Established(credential=credential, subject=subject)
        logger.info(f"Host session established: sub={self._result.subject}")

        if self._release is not None:
            self._release()
        self.host.notify_user("login_successful", "success")
        if self._redirect is not None:
            self.redirect_handle = self._schedule(self.redirect_delay_ms / 1000, self._redirect)
        return self._result
