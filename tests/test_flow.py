import base64

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.hazmat.primitives.serialization import load_pem_private_key
from fastapi.testclient import TestClient
from jwcrypto import jwk

from qrlogin.core.config import settings
from qrlogin.core.security import verify_access_token
from qrlogin.db import db
from qrlogin.main import app
from qrlogin.routes.auth import channel, issuer
from qrlogin.services.limiter import limiter
from qrlogin.services.qr_service import QRService

client = TestClient(app)


# ------------------------------------------------------------------------------
# HELPERS
# ------------------------------------------------------------------------------

def _generate(client_session_id="web-session-1"):
    resp = client.post("/auth/qr/generate", json={
        "clientSessionId": client_session_id,
        "deviceMetadata": "pytest",
    })
    assert resp.status_code == 200, resp.text
    return resp.json()


def _join(token: str, client_session_id="web-session-1") -> dict:
    return {"action": "join", "token": token, "clientSessionId": client_session_id}


def _scanned_payload(token: str) -> str:
    """What the mobile app reads out of the rendered code."""
    return QRService.generate_signed_payload({"token": token, "nonce": issuer.get(token).scan_nonce})


def _sign(key_pair, data: str) -> str:
    private_key = load_pem_private_key(key_pair.export_to_pem(private_key=True, password=None), password=None)
    signature = private_key.sign(data.encode("utf-8"), padding.PKCS1v15(), hashes.SHA256())
    return base64.b64encode(signature).decode("utf-8")


@pytest.fixture(scope="module")
def device_key_pair():
    return jwk.JWK.generate(kty="RSA", size=2048, alg="RS256", use="sig")


# ------------------------------------------------------------------------------
# CREATION
# ------------------------------------------------------------------------------

def test_generate_returns_token_and_renderable_code():
    data = _generate()

    assert data["token"]
    assert data["renderableCode"].startswith("data:image/png;base64,")
    assert issuer.get(data["token"]).bound_subscriber == "web-session-1"


def test_generate_is_rate_limited(monkeypatch):
    monkeypatch.setattr(settings, "RATE_LIMIT_ENABLED", True)
    monkeypatch.setattr(limiter, "max_per_minute", 2)

    _generate()
    _generate()
    resp = client.post("/auth/qr/generate", json={"clientSessionId": "web-session-1"})
    assert resp.status_code == 429


def test_generate_reports_capacity_exhaustion(monkeypatch):
    monkeypatch.setattr(issuer, "max_sessions", 0)
    resp = client.post("/auth/qr/generate", json={"clientSessionId": "web-session-1"})
    assert resp.status_code == 503


# ------------------------------------------------------------------------------
# FULL HANDSHAKE OVER THE CHANNEL
# ------------------------------------------------------------------------------

def test_scan_and_complete_are_pushed_to_the_waiting_client():
    token = _generate()["token"]
    payload = _scanned_payload(token)

    with client.websocket_connect("/auth/qr/ws") as ws:
        ws.send_json(_join(token))

        resp = client.post("/auth/qr/scan", json={"qr_payload": payload})
        assert resp.json() == {"status": "scanned", "accepted": True}

        event = ws.receive_json()
        assert event["event"] == "qr-status-update"
        assert event["token"] == token
        assert event["data"] == {"status": "scanned"}

        resp = client.post("/auth/qr/complete", json={"qr_payload": payload, "user_id": "alice"})
        assert resp.json() == {"status": "authenticated", "accepted": True}

        event = ws.receive_json()
        assert event["event"] == "qr-auth-success"
        credential = event["data"]["credential"]["token"]
        assert verify_access_token(credential)["sub"] == "alice"
        assert event["seq"] == 2


def test_code_refresh_moves_the_subscriber_to_the_new_token():
    old = _generate()["token"]

    with client.websocket_connect("/auth/qr/ws") as ws:
        ws.send_json(_join(old))

        resp = client.post("/auth/qr/refresh", json={"token": old})
        assert resp.status_code == 200
        new = resp.json()["token"]
        assert new != old

        event = ws.receive_json()
        assert event["event"] == "qr-code-refreshed"
        assert event["data"]["token"] == new

        ws.send_json(_join(new))
        ws.send_json({"action": "leave", "token": old})
        client.post("/auth/qr/scan", json={"qr_payload": _scanned_payload(new)})

        event = ws.receive_json()
        assert event["token"] == new
        assert event["data"] == {"status": "scanned"}

    # Old token is rejected immediately
    resp = client.post("/auth/qr/scan", json={"qr_payload": _scanned_payload(old)})
    assert resp.status_code == 409


def test_join_unknown_token_yields_error_event():
    with client.websocket_connect("/auth/qr/ws") as ws:
        ws.send_json(_join("does-not-exist"))
        event = ws.receive_json()
        assert event["event"] == "error"
        assert event["data"] == {"message": "qr_session_not_found"}


def test_only_the_creating_client_can_listen_on_a_token():
    token = _generate()["token"]
    payload = _scanned_payload(token)

    with client.websocket_connect("/auth/qr/ws") as owner, \
            client.websocket_connect("/auth/qr/ws") as stranger:
        # Someone who read the token off the screen
        stranger.send_json({"action": "join", "token": token})
        assert stranger.receive_json()["data"] == {"message": "qr_session_not_found"}
        stranger.send_json(_join(token, client_session_id="web-session-2"))
        assert stranger.receive_json()["data"] == {"message": "qr_session_not_found"}

        owner.send_json(_join(token))
        client.post("/auth/qr/scan", json={"qr_payload": payload})
        assert owner.receive_json()["data"] == {"status": "scanned"}
        assert channel.subscriber_count(token) == 1

        client.post("/auth/qr/complete", json={"qr_payload": payload, "user_id": "alice"})
        assert owner.receive_json()["event"] == "qr-auth-success"

        # Nothing was queued for the stranger ahead of this reply
        stranger.send_json({"action": "subscribe-all"})
        assert stranger.receive_json() == {
            "event": "error", "token": None, "seq": 0, "data": {"message": "websocket_error"},
        }


def test_malformed_channel_request_yields_error_event():
    with client.websocket_connect("/auth/qr/ws") as ws:
        ws.send_json({"action": "subscribe-all"})
        event = ws.receive_json()
        assert event["event"] == "error"
        assert event["data"] == {"message": "websocket_error"}


def test_disconnect_releases_subscriptions():
    token = _generate()["token"]
    with client.websocket_connect("/auth/qr/ws") as ws:
        ws.send_json(_join(token))
        client.post("/auth/qr/scan", json={"qr_payload": _scanned_payload(token)})
        ws.receive_json()

    client.post("/auth/qr/cancel", json={"token": token})
    assert channel.subscriber_count(token) == 0


# ------------------------------------------------------------------------------
# MOBILE ENDPOINTS
# ------------------------------------------------------------------------------

def test_duplicate_scan_is_benign():
    token = _generate()["token"]
    payload = _scanned_payload(token)

    assert client.post("/auth/qr/scan", json={"qr_payload": payload}).json()["accepted"] is True
    resp = client.post("/auth/qr/scan", json={"qr_payload": payload})
    assert resp.status_code == 200
    assert resp.json() == {"status": "scanned", "accepted": False}


def test_losing_completion_is_a_noop():
    token = _generate()["token"]
    payload = _scanned_payload(token)

    client.post("/auth/qr/complete", json={"qr_payload": payload, "user_id": "alice"})
    resp = client.post("/auth/qr/complete", json={"qr_payload": payload, "user_id": "mallory"})

    assert resp.status_code == 200
    assert resp.json() == {"status": "already_completed", "accepted": False}
    assert verify_access_token(issuer.get(token).credential)["sub"] == "alice"


def test_tampered_payload_is_rejected():
    token = _generate()["token"]
    forged = QRService.generate_signed_payload({"token": token, "nonce": "guessed"})

    assert client.post("/auth/qr/scan", json={"qr_payload": forged}).status_code == 400
    assert client.post("/auth/qr/scan", json={"qr_payload": '{"data_str": "{}", "sig": "00"}'}).status_code == 400
    assert client.post("/auth/qr/scan", json={"qr_payload": "not json"}).status_code == 400


def test_completion_after_cancel_conflicts():
    token = _generate()["token"]
    payload = _scanned_payload(token)

    assert client.post("/auth/qr/cancel", json={"token": token}).json()["accepted"] is True
    resp = client.post("/auth/qr/complete", json={"qr_payload": payload, "user_id": "alice"})
    assert resp.status_code == 409
    assert "Session" in resp.json()["detail"]


def test_status_poll_never_exposes_credential():
    token = _generate()["token"]
    payload = _scanned_payload(token)
    assert client.get(f"/auth/qr/{token}/status").json() == {"status": "pending"}

    client.post("/auth/qr/complete", json={"qr_payload": payload, "user_id": "alice"})
    assert client.get(f"/auth/qr/{token}/status").json() == {"status": "authenticated"}
    assert client.get("/auth/qr/unknown/status").json() == {"status": "not_found"}


def test_unknown_token_cancel_is_not_found():
    assert client.post("/auth/qr/cancel", json={"token": "missing"}).status_code == 404
    assert client.post("/auth/qr/refresh", json={"token": "missing"}).status_code == 404


def test_device_signature_required_when_enabled(monkeypatch, device_key_pair):
    monkeypatch.setattr(settings, "REQUIRE_DEVICE_SIGNATURE", True)
    db.pair_device("phone-1", device_key_pair.export_public())

    token = _generate()["token"]
    payload = _scanned_payload(token)

    resp = client.post("/auth/qr/complete", json={"qr_payload": payload, "user_id": "alice"})
    assert resp.status_code == 403

    attacker = jwk.JWK.generate(kty="RSA", size=2048, alg="RS256", use="sig")
    resp = client.post("/auth/qr/complete", json={
        "qr_payload": payload, "user_id": "alice",
        "device_id": "phone-1", "signature": _sign(attacker, token),
    })
    assert resp.status_code == 403

    resp = client.post("/auth/qr/complete", json={
        "qr_payload": payload, "user_id": "alice",
        "device_id": "phone-1", "signature": _sign(device_key_pair, token),
    })
    assert resp.status_code == 200
    assert resp.json()["accepted"] is True


def test_health_and_login_page():
    assert client.get("/health").json() == {"ok": True}
    page = client.get("/login")
    assert page.status_code == 200
    assert "/auth/qr/ws" in page.text
