# Centralised application configuration
# (environment variables, constants, timeouts).

import os


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes", "on")


class Settings:
    APP_NAME = "QR Login Handshake"
    JWT_SECRET = os.getenv("JWT_SECRET", "dev-change-me")
    JWT_ISSUER = os.getenv("JWT_ISSUER", "qr-login-local")
    JWT_AUDIENCE = os.getenv("JWT_AUDIENCE", "qr-login-browser")
    CREDENTIAL_TTL_SECONDS = int(os.getenv("CREDENTIAL_TTL_SECONDS", "900"))
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-qr-signing-key")

    # Issuer
    SESSION_TTL_SECONDS = int(os.getenv("SESSION_TTL_SECONDS", "120"))  # 2 Minutes
    SESSION_GC_GRACE_SECONDS = int(os.getenv("SESSION_GC_GRACE_SECONDS", "60"))
    MAX_ACTIVE_SESSIONS = int(os.getenv("MAX_ACTIVE_SESSIONS", "10000"))

    # Channel
    CHANNEL_BUFFER_GRACE_SECONDS = float(os.getenv("CHANNEL_BUFFER_GRACE_SECONDS", "10"))
    CHANNEL_RECONNECT_ATTEMPTS = int(os.getenv("CHANNEL_RECONNECT_ATTEMPTS", "5"))
    CHANNEL_RECONNECT_BASE_DELAY_MS = int(os.getenv("CHANNEL_RECONNECT_BASE_DELAY_MS", "500"))

    # Client
    SERVER_URL = os.getenv("SERVER_URL", "http://127.0.0.1:8000")
    CREATE_TIMEOUT_MS = int(os.getenv("CREATE_TIMEOUT_MS", "5000"))
    REDIRECT_DELAY_MS = int(os.getenv("REDIRECT_DELAY_MS", "1500"))
    APP_WEBVIEW = _env_flag("APP_WEBVIEW", "false")

    # Abuse protection
    RATE_LIMIT_ENABLED = _env_flag("RATE_LIMIT_ENABLED", "true")
    MAX_REQUESTS_PER_MINUTE = int(os.getenv("MAX_REQUESTS_PER_MINUTE", "30"))
    REQUIRE_DEVICE_SIGNATURE = _env_flag("REQUIRE_DEVICE_SIGNATURE", "false")

    # CSV audit trail of issuer transitions, disabled when empty
    AUDIT_LOG_FILE = os.getenv("AUDIT_LOG_FILE", "")


settings = Settings()
