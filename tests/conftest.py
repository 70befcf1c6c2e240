import pytest

from qrlogin.core.security import create_access_token
from qrlogin.services.channel import RealtimeChannel
from qrlogin.services.limiter import limiter
from qrlogin.services.sessions import SessionIssuer


# ------------------------------------------------------------------------------
# FAKES
# ------------------------------------------------------------------------------

class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeTimer:
    """Stands in for threading.Timer; tests fire it by hand."""

    def __init__(self, interval, function, args=None, kwargs=None):
        self.interval = interval
        self.function = function
        self.args = args or []
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if not self.cancelled:
            self.function(*self.args)


class RecordingConnection:
    def __init__(self):
        self.messages = []
        self.closed = False

    def send(self, message):
        self.messages.append(message)

    def events(self, name=None):
        return [m for m in self.messages if name is None or m["event"] == name]


# ------------------------------------------------------------------------------
# FIXTURES
# ------------------------------------------------------------------------------

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def timers():
    return []


@pytest.fixture
def channel(clock):
    return RealtimeChannel(buffer_grace_seconds=10, clock=clock)


@pytest.fixture
def issuer(channel, clock, timers):
    def timer_factory(interval, function, args=None):
        timer = FakeTimer(interval, function, args)
        timers.append(timer)
        return timer

    return SessionIssuer(
        channel,
        ttl_seconds=120,
        gc_grace_seconds=60,
        max_sessions=100,
        clock=clock,
        timer_factory=timer_factory,
        render=lambda token, nonce: f"code:{token}",
    )


@pytest.fixture
def credential():
    return create_access_token("alice")


@pytest.fixture(autouse=True)
def reset_rate_limiter():
    limiter.reset()
    yield
    limiter.reset()
