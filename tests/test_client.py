"""End-to-end tests for YncClient against the fake receiver over HTTP."""

import asyncio
import socket

from conftest import wait_until
from ync_client import YncClient
from ync_client.engine import EngineState
from ync_client.exceptions import DeviceNotFoundError
from ync_client.models import SYSTEM, DeviceDescriptor


class MemoryStore:
    """State store keeping everything in dicts."""

    def __init__(self, cached=None):
        self.cached = dict(cached or {})
        self.published = []
        self.handler = None

    def read_cached(self, zone, name):
        return self.cached.get((zone, name))

    def publish(self, zone, name, value, confirmed):
        self.published.append((zone, name, value, confirmed))

    def on_command_requested(self, handler):
        self.handler = handler

        def _unsubscribe():
            self.handler = None

        return _unsubscribe


class StaticDiscovery:
    """Discovery that always finds the same address."""

    def __init__(self, host, port=80):
        self.host = host
        self.port = port
        self.calls = 0

    async def resolve(self, device_id, timeout=5.0):
        self.calls += 1
        if device_id != "0B587073":
            raise DeviceNotFoundError(device_id)
        return DeviceDescriptor(device_id, self.host, self.port, discovered=True)


class HangingDiscovery:
    """Discovery that never answers."""

    def __init__(self):
        self.started = False
        self.cancelled = False

    async def resolve(self, device_id, timeout=5.0):
        self.started = True
        try:
            await asyncio.sleep(60)
        except asyncio.CancelledError:
            self.cancelled = True
            raise


def _client(server, **kwargs):
    return YncClient(server.host, port=server.port, timeout=2.0, **kwargs)


async def test_connect_reads_identity_and_capabilities(fake_server):
    client = _client(fake_server)
    try:
        descriptor = await client.connect()
    finally:
        await client.disconnect()

    assert descriptor.model == "RX-V671"
    assert descriptor.device_id == "0B587073"
    assert descriptor.firmware == "1.61/1.53"
    capabilities = descriptor.capabilities
    assert capabilities.zones == ("main", "zone2")
    assert capabilities.inputs_for("main") == ("HDMI1", "HDMI2")
    assert "Hall in Munich" in capabilities.programs_for("main")
    assert "party_mode" in capabilities.features
    assert client.capabilities is capabilities


async def test_zone_override_limits_declared_zones(fake_server):
    client = _client(fake_server, zones=["main"])
    try:
        await client.connect()
        await client.refresh(full=True)
    finally:
        await client.disconnect()

    assert client.capabilities.zones == ("main",)
    assert set(client.snapshot.zones) == {"main"}


async def test_connection_test(fake_server):
    client = _client(fake_server)
    try:
        assert await client.test_connection() is True
    finally:
        await client.disconnect()

    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        free_port = sock.getsockname()[1]
    unreachable = YncClient("127.0.0.1", port=free_port, timeout=1.0)
    try:
        assert await unreachable.test_connection() is False
    finally:
        await unreachable.disconnect()


async def test_store_seeds_state_and_receives_changes(fake_server):
    store = MemoryStore({("main", "power"): True, ("main", "input"): "HDMI1"})
    client = _client(fake_server, store=store, poll_interval=60)
    try:
        await client.connect()
        snapshot = client.snapshot
        assert snapshot.stale
        assert snapshot.zones["main"].input == "HDMI1"

        await client.start()
        await wait_until(lambda: client.connected)
    finally:
        await client.disconnect()

    assert ("main", "input", "HDMI2", True) in store.published
    assert (SYSTEM, "party_mode", False, True) in store.published
    # Cached value matching the device is not published again
    assert not [p for p in store.published if p[:2] == ("main", "power")]
    assert store.handler is None


async def test_store_commands_reach_the_device(fake_server):
    store = MemoryStore()
    client = _client(fake_server, store=store, poll_interval=60)
    try:
        await client.start()
        ack = await store.handler("zone2", "power", True)
    finally:
        await client.disconnect()

    assert ack.confirmed
    assert fake_server.device.status("Zone_2", "Power_Control/Power") == "On"
    assert ("zone2", "power", True, True) in store.published


async def test_concurrent_commands_and_reads_are_serialized(fake_server):
    fake_server.device.delay = 0.01
    client = _client(fake_server)
    try:
        await client.connect()
        await client.refresh(full=True)
        await asyncio.gather(
            client.set_volume("main", -40.0),
            client.set_input("zone2", "HDMI2"),
            client.refresh(),
            client.set_mute("main", True),
            client.volume_step("zone2", up=False),
        )
    finally:
        await client.disconnect()

    assert fake_server.device.max_in_flight == 1
    assert client.arbiter.max_in_flight == 1
    assert client.snapshot.zones["main"].volume == -40.0
    assert client.snapshot.zones["main"].mute is True
    assert client.snapshot.zones["zone2"].input == "HDMI2"
    assert client.snapshot.zones["zone2"].volume == -40.5


async def test_client_from_discovery(fake_server):
    discovery = StaticDiscovery(fake_server.host, fake_server.port)

    client = await YncClient.from_discovery("0B587073", discovery=discovery, timeout=2.0)
    try:
        descriptor = await client.connect()
    finally:
        await client.disconnect()

    assert descriptor.discovered
    assert descriptor.host == fake_server.host


async def test_refresh_address_follows_moved_device(fake_server):
    client = YncClient("192.0.2.1", port=fake_server.port, device_id="0B587073", discovered=True)
    try:
        moved = await client.refresh_address(StaticDiscovery(fake_server.host, fake_server.port))
        assert moved
        assert client.arbiter.host == fake_server.host
        assert await client.test_connection()
    finally:
        await client.disconnect()


async def test_stopped_client_reports_disconnected(fake_server):
    client = _client(fake_server, poll_interval=60)
    await client.start()
    await wait_until(lambda: client.connected)

    await client.disconnect()

    assert client.engine_state == EngineState.STOPPED
    assert not client.connected
    assert client.snapshot.stale


async def test_stop_waits_for_pending_rediscovery(fake_server):
    discovery = HangingDiscovery()
    client = YncClient(
        fake_server.host, port=fake_server.port, device_id="0B587073", discovered=True
    )
    refresh_address = client.refresh_address
    client.refresh_address = lambda: refresh_address(discovery)

    # Connectivity loss starts a lookup of the device's new address
    client._on_connectivity(False)
    rediscovery = client._rediscovery
    await wait_until(lambda: discovery.started)

    await client.disconnect()

    assert rediscovery.done()
    assert discovery.cancelled
    assert client._rediscovery is None
