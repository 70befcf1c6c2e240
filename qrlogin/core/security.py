# Security-related helpers such as JWT creation and credential checks.
import time
import jwt
from qrlogin.core.config import settings


def create_access_token(sub: str, extra: dict | None = None, exp_seconds: int | None = None) -> str:
    now = int(time.time())
    if exp_seconds is None:
        exp_seconds = settings.CREDENTIAL_TTL_SECONDS
    payload = {
        "iss": settings.JWT_ISSUER,
        "aud": settings.JWT_AUDIENCE,
        "iat": now,
        "nbf": now,
        "exp": now + exp_seconds,
        "sub": sub,
    }

    if extra:
        payload.update(extra)
    return jwt.encode(payload, settings.JWT_SECRET, algorithm="HS256")


def is_well_formed_token(token) -> bool:
    """
    Structural check only: a non-empty compact JWT whose header and claims
    decode. The signature is verified by whoever consumes the session.
    """
    if not isinstance(token, str) or not token.strip():
        return False
    if token.count(".") != 2:
        return False
    try:
        jwt.get_unverified_header(token)
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError:
        return False
    return isinstance(claims, dict)


def verify_access_token(token: str) -> dict:
    return jwt.decode(
        token,
        settings.JWT_SECRET,
        algorithms=["HS256"],
        audience=settings.JWT_AUDIENCE,
        issuer=settings.JWT_ISSUER,
    )
