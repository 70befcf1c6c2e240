import json

from qrlogin.client.router import LoginFlow, MobileSSO, choose_login_flow
from qrlogin.core.config import settings


class FakeHost:
    def __init__(self):
        self.notifications = []

    def notify_user(self, message_key, severity):
        self.notifications.append((message_key, severity))


class FakeBridge:
    def __init__(self):
        self.posted = []

    def post_message(self, message):
        self.posted.append(message)


def test_flow_follows_webview_setting(monkeypatch):
    monkeypatch.setattr(settings, "APP_WEBVIEW", False)
    assert choose_login_flow() == LoginFlow.WEB_QR

    monkeypatch.setattr(settings, "APP_WEBVIEW", True)
    assert choose_login_flow() == LoginFlow.MOBILE_SSO

    assert choose_login_flow(app_webview=False) == LoginFlow.WEB_QR


def test_sso_posts_request_to_bridge():
    host, bridge = FakeHost(), FakeBridge()
    sso = MobileSSO(host, bridge)

    assert sso.sign_in() is True
    assert [json.loads(m) for m in bridge.posted] == [{"action": "requestForumSSO"}]
    assert host.notifications == []

    # Waiting on the host app; a second tap sends nothing
    assert sso.sign_in() is False
    assert len(bridge.posted) == 1


def test_sso_without_bridge_reports_and_resets():
    host = FakeHost()
    sso = MobileSSO(host)

    assert sso.sign_in() is False
    assert host.notifications == [("sso_error_bridge_not_found", "danger")]
    assert sso.is_signing_in is False

    sso.sign_in()
    assert len(host.notifications) == 2
