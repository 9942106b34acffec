"""Tests for the update engine."""

import asyncio

import pytest

from conftest import StubArbiter, wait_until
from fake_device.server import FakeYamahaDevice
from ync_client.engine import EngineState, UpdateEngine
from ync_client.exceptions import ArbiterErrorKind, DecodeError
from ync_client.models import SYSTEM, Capabilities, Change
from ync_client.state import StateModel

MUTE_EVENT = (
    b'<YAMAHA_AV cmd="EVENT"><Main_Zone><Volume><Mute>On</Mute>'
    b"</Volume></Main_Zone></YAMAHA_AV>"
)


def _engine(arbiter, capabilities, **kwargs):
    options = dict(
        poll_interval=0.01,
        full_poll_every=1000,
        backoff_initial=0.01,
        backoff_max=0.02,
    )
    options.update(kwargs)
    return UpdateEngine(arbiter, StateModel(capabilities), **options)


async def test_full_refresh_reads_zones_and_system(stub_arbiter, capabilities):
    engine = _engine(stub_arbiter, capabilities)

    changes = await engine.refresh(full=True)

    assert stub_arbiter.calls == 1  # one session for the whole cycle
    assert len(stub_arbiter.payloads) == 3
    assert "<System>" in stub_arbiter.payloads[2]
    assert Change("main", "input", None, "HDMI2") in changes
    assert Change(SYSTEM, "party_mode", None, False) in changes
    assert engine.full_fetches == 1


async def test_incremental_refresh_skips_system(stub_arbiter, capabilities):
    engine = _engine(stub_arbiter, capabilities)

    await engine.refresh()

    assert len(stub_arbiter.payloads) == 2
    assert engine.full_fetches == 0


async def test_malformed_read_is_retried_once(capabilities):
    arbiter = StubArbiter(FakeYamahaDevice(mode="malformed", count=1))
    engine = _engine(arbiter, Capabilities(zones=("main",)))

    await engine.refresh()

    snapshot = engine._model.current_snapshot()
    assert snapshot.zones["main"].volume == -45.5
    assert len(arbiter.payloads) == 2


async def test_repeated_malformed_read_fails_the_cycle():
    arbiter = StubArbiter(FakeYamahaDevice(mode="malformed", count=2))
    engine = _engine(arbiter, Capabilities(zones=("main",)))

    with pytest.raises(DecodeError):
        await engine.refresh()


async def test_change_listener_sees_only_differences(stub_arbiter, capabilities, device):
    engine = _engine(stub_arbiter, capabilities)
    seen = []
    unsubscribe = engine.add_change_listener(seen.append)

    await engine.refresh()
    seen.clear()
    await engine.refresh()
    assert seen == []

    device.set_status("Main_Zone", "Volume/Lvl/Val", "-300")
    await engine.refresh()
    assert seen == [[Change("main", "volume", -45.5, -30.0)]]

    unsubscribe()
    device.set_status("Main_Zone", "Volume/Lvl/Val", "-200")
    await engine.refresh()
    assert len(seen) == 1


async def test_reconnect_marks_stale_and_runs_full_cycle(stub_arbiter, capabilities):
    engine = _engine(stub_arbiter, capabilities)
    connectivity = []
    engine.add_connectivity_listener(connectivity.append)

    await engine.start()
    try:
        await wait_until(lambda: engine.state == EngineState.POLLING)
        assert engine.connected
        assert engine.full_fetches == 1

        stub_arbiter.fail = ArbiterErrorKind.CONNECTION_REFUSED
        await wait_until(lambda: engine.state == EngineState.RECONNECTING)
        assert not engine.connected
        snapshot = engine._model.current_snapshot()
        assert snapshot.stale
        # Last known values survive the outage
        assert snapshot.zones["main"].input == "HDMI2"

        stub_arbiter.fail = None
        stub_arbiter.payloads.clear()
        await wait_until(lambda: engine.state == EngineState.POLLING)
        assert engine.connected
        assert engine.full_fetches == 2
        assert "<System>" in stub_arbiter.payloads[2]
        assert connectivity == [True, False, True]
    finally:
        await engine.stop()


async def test_periodic_full_cycle(stub_arbiter, capabilities):
    engine = _engine(stub_arbiter, capabilities, full_poll_every=2)

    await engine.start()
    try:
        await wait_until(lambda: engine.cycles >= 5)
    finally:
        await engine.stop()

    assert engine.full_fetches >= 2
    assert engine.full_fetches < engine.cycles


async def test_push_values_are_applied_without_reads(stub_arbiter, capabilities):
    engine = _engine(stub_arbiter, capabilities)
    event = (
        '<YAMAHA_AV cmd="EVENT"><Main_Zone><Volume><Lvl>'
        "<Val>-300</Val><Exp>1</Exp><Unit>dB</Unit></Lvl></Volume></Main_Zone></YAMAHA_AV>"
    )

    changes = await engine.handle_push(event)

    assert changes == [Change("main", "volume", None, -30.0)]
    assert stub_arbiter.calls == 0


async def test_property_only_push_reads_the_zone(stub_arbiter, capabilities):
    engine = _engine(stub_arbiter, capabilities)
    event = '<YAMAHA_AV cmd="EVENT"><Zone_2><Property>Input</Property></Zone_2></YAMAHA_AV>'

    changes = await engine.handle_push(event)

    assert stub_arbiter.calls == 1
    assert "<Zone_2>" in stub_arbiter.payloads[0]
    assert Change("zone2", "input", None, "HDMI1") in changes


async def test_malformed_push_falls_back_to_reading_all_zones(stub_arbiter, capabilities):
    engine = _engine(stub_arbiter, capabilities)

    await engine.handle_push(b"<YAMAHA_AV><Main_Zo")

    assert len(stub_arbiter.payloads) == 2
    assert engine._model.current_snapshot().zones["zone2"].power is False


async def _send_event(port, payload):
    loop = asyncio.get_running_loop()
    transport, _ = await loop.create_datagram_endpoint(
        asyncio.DatagramProtocol, remote_addr=("127.0.0.1", port)
    )
    transport.sendto(payload)
    transport.close()


async def test_realtime_subscribes_and_applies_datagrams(stub_arbiter, capabilities):
    engine = _engine(stub_arbiter, capabilities, realtime=True, subscription_renew=60)

    await engine.start()
    try:
        await wait_until(lambda: engine.state == EngineState.REALTIME)
        port = engine._listen_port
        assert stub_arbiter.headers[0] == {"X-AppName": "HomeAssistant", "X-AppPort": str(port)}
        # Only the first read of a cycle carries the subscription
        assert stub_arbiter.headers[1] is None

        await _send_event(port, MUTE_EVENT)

        await wait_until(lambda: engine._model.current_snapshot().zones["main"].mute)
    finally:
        await engine.stop()


async def test_realtime_accepts_events_from_a_named_host(capabilities):
    arbiter = StubArbiter(host="localhost")
    engine = _engine(arbiter, capabilities, realtime=True, subscription_renew=60)

    await engine.start()
    try:
        await wait_until(lambda: engine.state == EngineState.REALTIME)
        assert "127.0.0.1" in engine._peer_addresses

        await _send_event(engine._listen_port, MUTE_EVENT)

        await wait_until(lambda: engine._model.current_snapshot().zones["main"].mute)
    finally:
        await engine.stop()


async def test_realtime_ignores_events_from_other_hosts(capabilities):
    arbiter = StubArbiter(host="192.0.2.10")
    engine = _engine(arbiter, capabilities, realtime=True, subscription_renew=60)

    await engine.start()
    try:
        await wait_until(lambda: engine.state == EngineState.REALTIME)

        await _send_event(engine._listen_port, MUTE_EVENT)
        await asyncio.sleep(0.05)

        assert engine._model.current_snapshot().zones["main"].mute is False
    finally:
        await engine.stop()


async def test_failed_read_after_event_starts_reconnecting(stub_arbiter, capabilities):
    engine = _engine(stub_arbiter, capabilities, realtime=True, subscription_renew=60)
    connectivity = []
    engine.add_connectivity_listener(connectivity.append)

    await engine.start()
    try:
        await wait_until(lambda: engine.state == EngineState.REALTIME)

        stub_arbiter.fail = ArbiterErrorKind.UNREACHABLE
        await _send_event(
            engine._listen_port,
            b'<YAMAHA_AV cmd="EVENT"><Zone_2><Property>Input</Property></Zone_2></YAMAHA_AV>',
        )
        # Long before the next renewal
        await wait_until(lambda: engine.state == EngineState.RECONNECTING)
        assert not engine.connected
        assert engine._model.current_snapshot().stale

        stub_arbiter.fail = None
        await wait_until(lambda: engine.state == EngineState.REALTIME)
        assert engine.connected
        assert engine.full_fetches == 2
        assert connectivity == [True, False, True]
    finally:
        await engine.stop()


async def test_stop_is_terminal(stub_arbiter, capabilities):
    engine = _engine(stub_arbiter, capabilities)
    await engine.start()
    await wait_until(lambda: engine.connected)

    await engine.stop()

    assert engine.state == EngineState.STOPPED
    assert not engine.connected
    assert engine._model.current_snapshot().stale
    with pytest.raises(RuntimeError):
        await engine.start()
