import json
from typing import Dict, Optional


class InMemoryDB:
    def __init__(self):
        # device_id -> public JWK (JSON string) of a paired mobile app
        self.paired_devices: Dict[str, str] = {}

    def pair_device(self, device_id: str, public_jwk) -> None:
        if isinstance(public_jwk, dict):
            public_jwk = json.dumps(public_jwk)
        self.paired_devices[device_id] = public_jwk

    def device_key(self, device_id: str) -> Optional[dict]:
        raw = self.paired_devices.get(device_id)
        if raw is None:
            return None
        return json.loads(raw)


db = InMemoryDB()
