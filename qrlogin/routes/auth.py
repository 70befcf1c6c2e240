# Handshake routes: QR session creation, the mobile scan/complete
# endpoints, refresh, a polling fallback and the realtime channel socket.

import asyncio
import logging

from fastapi import APIRouter, HTTPException, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from qrlogin.core.config import settings
from qrlogin.core.errors import (
    AlreadyCompletedError,
    AuthError,
    HandshakeError,
    NotFoundError,
    ResourceError,
    TerminalStateError,
)
from qrlogin.core.security import create_access_token
from qrlogin.db import db
from qrlogin.services.channel import QueueConnection, RealtimeChannel, error_event
from qrlogin.services.crypto_utils import CryptoUtils
from qrlogin.services.limiter import limiter
from qrlogin.services.qr_service import QRService
from qrlogin.services.sessions import SessionIssuer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth/qr", tags=["auth"])
channel = RealtimeChannel(buffer_grace_seconds=settings.CHANNEL_BUFFER_GRACE_SECONDS)
issuer = SessionIssuer(channel, ttl_seconds=settings.SESSION_TTL_SECONDS)


class GenerateReq(BaseModel):
    clientSessionId: str
    deviceMetadata: str = ""


class GenerateResp(BaseModel):
    token: str
    renderableCode: str


class ScanReq(BaseModel):
    qr_payload: str


class CompleteReq(BaseModel):
    qr_payload: str
    user_id: str
    device_id: str | None = None
    signature: str | None = None


class TokenReq(BaseModel):
    token: str


class ActionResp(BaseModel):
    status: str
    accepted: bool


class StatusResp(BaseModel):
    status: str


def _http_error(e: HandshakeError) -> HTTPException:
    # Generic details only; internal messages stay in the log
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail="Session not found")
    if isinstance(e, TerminalStateError):
        return HTTPException(status_code=409, detail="Session is no longer active")
    if isinstance(e, ResourceError):
        return HTTPException(status_code=503, detail="Login temporarily unavailable")
    if isinstance(e, AuthError):
        return HTTPException(status_code=400, detail="Invalid credential")
    return HTTPException(status_code=400, detail="Request rejected")


def _token_from_payload(raw: str) -> str:
    data = QRService.verify_qr_payload(raw)
    if not data or not isinstance(data.get("token"), str):
        logger.warning("Rejected QR payload: bad signature or structure")
        raise HTTPException(status_code=400, detail="Invalid QR payload")

    token = data["token"]
    session = issuer.get(token)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    if data.get("nonce") != session.scan_nonce:
        logger.warning(f"Rejected QR payload: nonce mismatch for token={token}")
        raise HTTPException(status_code=400, detail="Invalid QR payload")
    return token


@router.post("/generate", response_model=GenerateResp)
def generate(req: GenerateReq, request: Request):
    limiter.check(request)
    try:
        token, code = issuer.create_session(req.deviceMetadata, req.clientSessionId)
    except ResourceError as e:
        raise _http_error(e)
    return GenerateResp(token=token, renderableCode=code)


@router.post("/scan", response_model=ActionResp)
def scan(req: ScanReq):
    # Mobile app reports that it read the code
    token = _token_from_payload(req.qr_payload)
    try:
        changed = issuer.mark_scanned(token)
    except HandshakeError as e:
        raise _http_error(e)
    return ActionResp(status="scanned", accepted=changed)


@router.post("/complete", response_model=ActionResp)
def complete(req: CompleteReq):
    # Mobile app approves the login for user_id
    token = _token_from_payload(req.qr_payload)

    if settings.REQUIRE_DEVICE_SIGNATURE:
        key = db.device_key(req.device_id) if req.device_id else None
        if key is None or not req.signature:
            raise HTTPException(status_code=403, detail="Unknown device")
        if not CryptoUtils.verify_raw_signature(key, token, req.signature):
            raise HTTPException(status_code=403, detail="Invalid device signature")

    credential = create_access_token(req.user_id, extra={"amr": ["qr"]})
    try:
        issuer.complete_authentication(token, credential)
    except AlreadyCompletedError:
        # Racing devices: the first completion won, this one is a no-op
        return ActionResp(status="already_completed", accepted=False)
    except HandshakeError as e:
        raise _http_error(e)
    return ActionResp(status="authenticated", accepted=True)


@router.post("/cancel", response_model=ActionResp)
def cancel(req: TokenReq):
    try:
        changed = issuer.cancel(req.token)
    except HandshakeError as e:
        raise _http_error(e)
    return ActionResp(status="cancelled", accepted=changed)


@router.post("/refresh", response_model=GenerateResp)
def refresh(req: TokenReq):
    try:
        token, code = issuer.refresh(req.token)
    except HandshakeError as e:
        raise _http_error(e)
    return GenerateResp(token=token, renderableCode=code)


@router.get("/{token}/status", response_model=StatusResp)
def status(token: str):
    # Polling fallback; never carries the credential
    session = issuer.get(token)
    if session is None:
        return StatusResp(status="not_found")
    return StatusResp(status=session.status.value)


async def _pump(websocket: WebSocket, connection: QueueConnection):
    while True:
        message = await connection.queue.get()
        try:
            await websocket.send_json(message)
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.info(f"Channel writer stopped: {type(e).__name__}")
            connection.close()
            return


@router.websocket("/ws")
async def qr_channel(websocket: WebSocket):
    await websocket.accept()
    connection = QueueConnection()
    writer = asyncio.create_task(_pump(websocket, connection))

    try:
        while True:
            try:
                msg = await websocket.receive_json()
            except ValueError:
                connection.send(error_event("websocket_error"))
                continue

            action = msg.get("action") if isinstance(msg, dict) else None
            token = msg.get("token") if isinstance(msg, dict) else None
            if action not in ("join", "leave") or not isinstance(token, str):
                connection.send(error_event("websocket_error"))
                continue

            if action == "leave":
                channel.leave(token, connection)
                continue

            # Only the client that created the session may listen on it;
            # a foreign joiner is told the same thing as for an unknown token
            session = issuer.get(token)
            subscriber = msg.get("clientSessionId")
            if session is None or not subscriber or subscriber != session.bound_subscriber:
                if session is not None:
                    logger.warning(f"Join refused: token={token}, subscriber mismatch")
                connection.send(error_event("qr_session_not_found"))
            else:
                channel.subscribe(token, connection)
    except WebSocketDisconnect:
        logger.info("Channel client disconnected")
    finally:
        connection.close()
        released = channel.release_connection(connection)
        writer.cancel()
        logger.info(f"Released {released} subscription(s) on disconnect")
