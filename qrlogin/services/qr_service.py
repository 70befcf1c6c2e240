import qrcode
import io
import base64
import hmac
import hashlib
import json
from qrlogin.core.config import settings


class QRService:
    @staticmethod
    def generate_signed_payload(data: dict) -> str:
        """
        Generates the payload string the mobile app reads from the code.
        The inner data is stringified first so the signature covers the
        exact bytes the scanner sends back.
        Structure: { "data_str": "{...json...}", "sig": "..." }
        """
        data_str = json.dumps(data, separators=(',', ':'), sort_keys=True)
        signature = hmac.new(
            settings.SECRET_KEY.encode(),
            data_str.encode(),
            hashlib.sha256
        ).hexdigest()
        return json.dumps({"data_str": data_str, "sig": signature})

    @staticmethod
    def create_qr_image(data_str: str) -> str:
        """
        Creates a QR code image and returns it as a base64 string
        """
        qr = qrcode.QRCode(
            version=1,
            error_correction=qrcode.constants.ERROR_CORRECT_L,
            box_size=10,
            border=4,
        )
        qr.add_data(data_str)
        qr.make(fit=True)

        img = qr.make_image(fill_color="black", back_color="white")

        buffered = io.BytesIO()
        img.save(buffered, format="PNG")
        return base64.b64encode(buffered.getvalue()).decode()

    @staticmethod
    def renderable_code(token: str, nonce: str) -> str:
        """Data URL of the QR image for a session, ready for an <img> tag."""
        payload = QRService.generate_signed_payload({"token": token, "nonce": nonce})
        return "data:image/png;base64," + QRService.create_qr_image(payload)

    @staticmethod
    def verify_qr_payload(payload_str: str) -> dict | None:
        """
        Parses and verifies the QR payload
        Returns the data dict if valid, None otherwise
        """
        try:
            wrapper = json.loads(payload_str)
            data_str = wrapper.get("data_str")
            sig = wrapper.get("sig")

            if not data_str or not sig:
                return None

            expected_sig = hmac.new(
                settings.SECRET_KEY.encode(),
                data_str.encode(),
                hashlib.sha256
            ).hexdigest()

            if hmac.compare_digest(sig, expected_sig):
                data = json.loads(data_str)
                return data if isinstance(data, dict) else None
            return None
        except (ValueError, TypeError, AttributeError):
            return None
