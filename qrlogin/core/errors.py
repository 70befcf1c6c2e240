# Error taxonomy shared by the issuer, the channel and the client.
# Every error carries a message key the client can display.


class HandshakeError(Exception):
    message_key = "qr_login_failed"

    def __init__(self, message: str = "", message_key: str | None = None):
        super().__init__(message or self.__class__.__name__)
        if message_key:
            self.message_key = message_key


class NetworkError(HandshakeError):
    """Session creation request failed or timed out."""
    message_key = "qr_generation_failed"


class ChannelConnectionError(HandshakeError):
    """Realtime channel could not connect, or gave up reconnecting."""
    message_key = "websocket_connection_failed"


class ProtocolError(HandshakeError):
    """Malformed or out-of-sequence channel event."""
    message_key = "websocket_error"


class AuthError(HandshakeError):
    """Credential missing from the success event or structurally invalid."""
    message_key = "authentication_failed"


# Issuer side. The client never retries a specific token after these.

class NotFoundError(HandshakeError):
    message_key = "qr_session_not_found"


class TerminalStateError(HandshakeError):
    message_key = "qr_session_closed"


class AlreadyCompletedError(TerminalStateError):
    message_key = "qr_session_already_completed"


class ResourceError(HandshakeError):
    message_key = "qr_capacity_exhausted"
