import logging
from typing import Optional

import httpx

from qrlogin.core.config import settings
from qrlogin.core.errors import NetworkError, ProtocolError

logger = logging.getLogger(__name__)


class HttpSessionCreator:
    """Calls the session routes. Creation timeouts are enforced by the caller."""

    def __init__(self, base_url: Optional[str] = None, client: Optional[httpx.AsyncClient] = None):
        self._client = client or httpx.AsyncClient(base_url=base_url or settings.SERVER_URL)

    async def create(self, request: dict) -> dict:
        try:
            resp = await self._client.post("/auth/qr/generate", json=request)
        except httpx.HTTPError as e:
            logger.error(f"QR generation request failed: {type(e).__name__}: {e}")
            raise NetworkError(str(e)) from e

        if resp.status_code != 200:
            logger.error(f"QR generation rejected: HTTP {resp.status_code}")
            raise NetworkError(f"HTTP {resp.status_code}", message_key="failed_to_generate_qr")

        try:
            data = resp.json()
        except ValueError as e:
            raise ProtocolError("Generate response is not JSON") from e
        return data

    async def cancel(self, token: str) -> bool:
        """
        Calls POST /auth/qr/cancel. Returns whether this call closed the
        session; an unknown or already-closed token is not an error.
        """
        try:
            resp = await self._client.post("/auth/qr/cancel", json={"token": token})
        except httpx.HTTPError as e:
            logger.error(f"QR cancel request failed: {type(e).__name__}: {e}")
            raise NetworkError(str(e)) from e

        if resp.status_code in (404, 409):
            return False
        if resp.status_code != 200:
            raise NetworkError(f"HTTP {resp.status_code}")
        try:
            return bool(resp.json().get("accepted"))
        except (ValueError, AttributeError) as e:
            raise ProtocolError("Cancel response is not a JSON object") from e

    async def aclose(self) -> None:
        await self._client.aclose()
