# CSV audit trail of handshake transitions.

import csv
import time
import os
import threading
from qrlogin.core.config import settings

HEADER = ["timestamp", "event_type", "token", "outcome", "latency_ms"]

_lock = threading.Lock()


def log_event(event_type: str, token: str, outcome: str, latency_ms: int = 0, log_file: str | None = None):
    path = log_file if log_file is not None else settings.AUDIT_LOG_FILE
    if not path:
        return

    with _lock:
        # Initialize CSV with headers if it doesn't exist
        new_file = not os.path.exists(path)
        with open(path, "a", newline="") as f:
            writer = csv.writer(f)
            if new_file:
                writer.writerow(HEADER)
            writer.writerow([time.time(), event_type, token, outcome, latency_ms])
