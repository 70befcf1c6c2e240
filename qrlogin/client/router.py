# Picks the login flow from configuration instead of probing the host
# environment: the QR handshake for regular clients, the native SSO bridge
# when running inside the companion app's webview.

import json
import logging
from enum import Enum
from typing import Optional

from qrlogin.core.config import settings

logger = logging.getLogger(__name__)


class LoginFlow(str, Enum):
    WEB_QR = "web_qr"
    MOBILE_SSO = "mobile_sso"


def choose_login_flow(app_webview: Optional[bool] = None) -> LoginFlow:
    if app_webview is None:
        app_webview = settings.APP_WEBVIEW
    flow = LoginFlow.MOBILE_SSO if app_webview else LoginFlow.WEB_QR
    logger.info(f"Login flow selected: {flow.value}")
    return flow


class MobileSSO:
    """Asks the host app, through its message bridge, to sign the user in."""

    REQUEST = {"action": "requestForumSSO"}

    def __init__(self, host, bridge=None):
        self.host = host
        self.bridge = bridge
        self.is_signing_in = False

    def sign_in(self) -> bool:
        if self.is_signing_in:
            return False
        self.is_signing_in = True

        if self.bridge is None:
            logger.error("SSO bridge not detected")
            self.host.notify_user("sso_error_bridge_not_found", "danger")
            self.is_signing_in = False
            return False

        self.bridge.post_message(json.dumps(self.REQUEST))
        return True
