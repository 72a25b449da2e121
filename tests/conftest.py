import pytest

from banwarden import log
from banwarden.config import WardenConfig
from banwarden.engine import Warden
from banwarden.firewall import MemoryBackend


class FakeClock:
    def __init__(self, now=1_700_000_000):
        self.now = now

    def advance(self, seconds):
        self.now += seconds

    def __call__(self):
        return self.now


@pytest.fixture(autouse=True)
def quiet_log():
    log.configure(level=0, facility="stdout")
    yield
    log.configure(level=1, facility="stdout")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return MemoryBackend(chains=["input_wan_rule", "forwarding_wan_rule"])


@pytest.fixture
def make_config(tmp_path):
    def _make(**kwargs):
        base = dict(
            attempt_count=3,
            attempt_period=60,
            ban_length=3600,
            durable_prefix=str(tmp_path / "persist" / "state"),
            volatile_prefix=str(tmp_path / "tmp" / "state"),
        )
        base.update(kwargs)
        return WardenConfig(**base)

    return _make


@pytest.fixture
def make_warden(make_config, backend, clock):
    def _make(**kwargs):
        return Warden(make_config(**kwargs), backend, clock=clock)

    return _make
