"""Tests for the coordinator's command routing. Needs Home Assistant."""

from types import SimpleNamespace
from unittest.mock import Mock

import pytest

pytest.importorskip("homeassistant")

from homeassistant.exceptions import HomeAssistantError  # noqa: E402

from custom_components.yamaha_ync import coordinator as ync_coordinator  # noqa: E402
from custom_components.yamaha_ync import ync_client  # noqa: E402


class RecordingClient:
    """Client recording what the coordinator asks for."""

    def __init__(self, error=None):
        self.error = error
        self.steps = []
        self.programs = []

    async def volume_step(self, zone, up, steps=1):
        if self.error is not None:
            raise self.error
        self.steps.append((zone, up))
        return ync_client.Ack(zone, "volume", -45.0, confirmed=True)

    async def set_sound_program(self, zone, program):
        self.programs.append((zone, program))
        field = "straight" if program == ync_client.STRAIGHT else "sound_program"
        return ync_client.Ack(zone, field, program, confirmed=True)

    async def dispatch(self, zone, field, value):
        return ync_client.Ack(zone, field, value, confirmed=True)


def _coordinator(client=None, running=True):
    # Bypass DataUpdateCoordinator setup, only the store side is exercised
    coordinator = ync_coordinator.YncCoordinator.__new__(ync_coordinator.YncCoordinator)
    coordinator.hass = SimpleNamespace(loop=Mock())
    coordinator.client = client
    coordinator._values = {}
    coordinator._unconfirmed = set()
    coordinator._push_scheduled = False
    coordinator._command_handler = None
    if running and client is not None:
        coordinator.on_command_requested(client.dispatch)
    return coordinator


async def test_volume_step_uses_the_client_stepping():
    client = RecordingClient()
    coordinator = _coordinator(client)

    ack = await coordinator.async_volume_step("zone2", up=False)

    assert client.steps == [("zone2", False)]
    assert ack.field == "volume"


async def test_volume_step_errors_become_home_assistant_errors():
    error = ync_client.ArbiterError(ync_client.ArbiterErrorKind.UNREACHABLE, "no route")
    coordinator = _coordinator(RecordingClient(error=error))

    with pytest.raises(HomeAssistantError) as err:
        await coordinator.async_volume_step("main", up=True)

    assert err.value.__cause__ is error


async def test_unconfirmed_command_becomes_home_assistant_error():
    error = ync_client.CommandError(ync_client.CommandErrorKind.UNCONFIRMED, "volume")
    coordinator = _coordinator(RecordingClient(error=error))

    with pytest.raises(HomeAssistantError, match="did not confirm volume"):
        await coordinator.async_volume_step("main", up=True)


async def test_straight_goes_through_the_client():
    client = RecordingClient()
    coordinator = _coordinator(client)

    ack = await coordinator.async_sound_program("main", ync_client.STRAIGHT)

    assert client.programs == [("main", "Straight")]
    assert ack.field == "straight"


async def test_commands_need_a_running_client():
    coordinator = _coordinator(RecordingClient(), running=False)

    with pytest.raises(HomeAssistantError):
        await coordinator.async_volume_step("main", up=True)
    with pytest.raises(HomeAssistantError):
        await coordinator.async_command("main", "mute", True)


def test_device_value_clears_the_unconfirmed_mark():
    coordinator = _coordinator()

    coordinator.publish("main", "mute", True, False)
    assert not coordinator.is_confirmed("main", "mute")

    # Optimistic value did not stick, the device value comes back confirmed
    coordinator.publish("main", "mute", False, True)

    assert coordinator.is_confirmed("main", "mute")
    assert coordinator.read_cached("main", "mute") is False
    coordinator.hass.loop.call_soon.assert_called_once()
