"""Shared fixtures for the Yamaha YNC client tests."""

import asyncio
import contextlib
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).parent.parent
# Client library is importable on its own, without Home Assistant
sys.path.insert(0, str(ROOT / "custom_components" / "yamaha_ync"))
# Integration modules for the Home Assistant tests
sys.path.append(str(ROOT))

from fake_device.server import FakeYamahaDevice, FakeYamahaServer  # noqa: E402
from ync_client.exceptions import ArbiterError  # noqa: E402
from ync_client.models import Capabilities  # noqa: E402


class StubSession:
    """Session handed out by StubArbiter."""

    def __init__(self, arbiter):
        self._arbiter = arbiter

    async def request(self, payload, headers=None):
        return await self._arbiter.exchange(payload, headers)

    async def fetch(self, path):
        return await self._arbiter.exchange(path, None)


class StubArbiter:
    """Call-counting arbiter answering from a FakeYamahaDevice in-process."""

    def __init__(self, device=None, host="127.0.0.1"):
        self.device = device or FakeYamahaDevice()
        self.host = host
        self.port = 80
        self.fail = None  # ArbiterErrorKind to raise, or None
        self.calls = 0
        self.payloads = []
        self.headers = []
        self._gate = asyncio.Lock()

    async def exchange(self, payload, headers):
        if self.fail is not None:
            raise ArbiterError(self.fail, "simulated failure")
        self.payloads.append(payload)
        self.headers.append(headers)
        return self.device.respond(payload)

    @contextlib.asynccontextmanager
    async def session(self):
        self.calls += 1
        if self.fail is not None:
            raise ArbiterError(self.fail, "simulated failure")
        async with self._gate:
            yield StubSession(self)

    async def with_session(self, fn):
        async with self.session() as session:
            return await fn(session)

    async def request(self, payload, headers=None):
        return await self.with_session(lambda s: s.request(payload, headers))


async def wait_until(predicate, timeout=2.0):
    """Poll predicate until true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def device():
    """Fake receiver state in normal mode."""
    return FakeYamahaDevice()


@pytest.fixture
def stub_arbiter(device):
    """In-process arbiter over the fake receiver."""
    return StubArbiter(device)


@pytest.fixture
def capabilities():
    """Capability set matching the fake receiver."""
    return Capabilities(
        zones=("main", "zone2"),
        inputs={"main": ("HDMI1", "HDMI2"), "zone2": ("HDMI1", "HDMI2")},
        sound_programs={"main": ("Straight", "Hall in Munich", "7ch Stereo")},
        features=frozenset({"pure_direct", "ypao_volume", "party_mode"}),
    )


@pytest.fixture
async def fake_server():
    """Fake receiver behind a real HTTP server on a free port."""
    server = FakeYamahaServer(FakeYamahaDevice())
    await server.start()
    yield server
    await server.stop()
