import json

import jwt
import pytest

from qrlogin.core.config import settings
from qrlogin.core.security import create_access_token, is_well_formed_token, verify_access_token
from qrlogin.services.crypto_utils import CryptoUtils
from qrlogin.services.qr_service import QRService


# ------------------------------------------------------------------------------
# CREDENTIALS
# ------------------------------------------------------------------------------

def test_access_token_round_trip():
    token = create_access_token("alice", extra={"amr": ["qr"]})
    claims = verify_access_token(token)
    assert claims["sub"] == "alice"
    assert claims["amr"] == ["qr"]
    assert claims["exp"] - claims["iat"] == settings.CREDENTIAL_TTL_SECONDS


def test_expired_access_token_is_rejected():
    token = create_access_token("alice", exp_seconds=-10)
    with pytest.raises(jwt.ExpiredSignatureError):
        verify_access_token(token)


@pytest.mark.parametrize("value,expected", [
    (None, False),
    ("", False),
    ("   ", False),
    ("only.two", False),
    ("a.b.c", False),
    (b"a.b.c", False),
])
def test_is_well_formed_token_rejects_garbage(value, expected):
    assert is_well_formed_token(value) is expected


def test_is_well_formed_token_accepts_foreign_signature():
    token = jwt.encode({"sub": "bob"}, "some-other-secret", algorithm="HS256")
    assert is_well_formed_token(token)
    assert is_well_formed_token(create_access_token("alice"))


# ------------------------------------------------------------------------------
# QR PAYLOAD
# ------------------------------------------------------------------------------

def test_signed_payload_verifies():
    payload = QRService.generate_signed_payload({"token": "abc123", "nonce": "n1"})
    assert QRService.verify_qr_payload(payload) == {"nonce": "n1", "token": "abc123"}


def test_tampered_payload_fails_verification():
    payload = json.loads(QRService.generate_signed_payload({"token": "abc123", "nonce": "n1"}))
    payload["data_str"] = payload["data_str"].replace("abc123", "def456")

    assert QRService.verify_qr_payload(json.dumps(payload)) is None
    assert QRService.verify_qr_payload("[]") is None
    assert QRService.verify_qr_payload('{"data_str": "\\"x\\"", "sig": "00"}') is None


def test_renderable_code_is_png_data_url():
    code = QRService.renderable_code("abc123", "n1")
    assert code.startswith("data:image/png;base64,iVBOR")


# ------------------------------------------------------------------------------
# DEVICE SIGNATURES
# ------------------------------------------------------------------------------

def test_bad_key_or_signature_is_not_an_exception():
    assert CryptoUtils.verify_raw_signature({"kty": "nope"}, "abc123", "AAAA") is False
    assert CryptoUtils.verify_raw_signature({}, "abc123", "!!!") is False
