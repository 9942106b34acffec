"""Media player platform for Yamaha YNC integration."""
from __future__ import annotations

import logging
from typing import Any

from homeassistant.components.media_player import (
    MediaPlayerEntity,
    MediaPlayerEntityFeature,
    MediaPlayerState,
)
from homeassistant.config_entries import ConfigEntry
from homeassistant.core import HomeAssistant, callback
from homeassistant.helpers.entity import DeviceInfo
from homeassistant.helpers.entity_platform import AddEntitiesCallback
from homeassistant.helpers.update_coordinator import CoordinatorEntity

from .const import DOMAIN, ZONE_NAMES
from .coordinator import YncCoordinator
from .ync_client import STRAIGHT, YncClient

_LOGGER = logging.getLogger(__name__)


def zone_device_info(client: YncClient, entry_id: str, zone: str) -> DeviceInfo:
    """Device registry entry for one zone."""
    descriptor = client.descriptor
    info = DeviceInfo(
        identifiers={(DOMAIN, f"{entry_id}_{zone}")},
        name=f"{descriptor.model} {ZONE_NAMES.get(zone, zone)}",
        model=descriptor.model,
        manufacturer="Yamaha",
        sw_version=descriptor.firmware,
    )
    if zone != "main":
        info["via_device"] = (DOMAIN, f"{entry_id}_main")
    return info


async def async_setup_entry(
    hass: HomeAssistant,
    config_entry: ConfigEntry,
    async_add_entities: AddEntitiesCallback,
) -> None:
    """Set up one media player per zone."""
    data = hass.data[DOMAIN][config_entry.entry_id]
    client: YncClient = data["client"]
    coordinator: YncCoordinator = data["coordinator"]

    async_add_entities(
        YncMediaPlayer(coordinator, client, zone, config_entry.entry_id)
        for zone in client.capabilities.zones
    )


class YncMediaPlayer(CoordinatorEntity[YncCoordinator], MediaPlayerEntity):
    """Representation of one receiver zone."""

    _attr_has_entity_name = True
    _attr_should_poll = False
    _attr_name = None

    def __init__(
        self,
        coordinator: YncCoordinator,
        client: YncClient,
        zone: str,
        entry_id: str,
    ) -> None:
        """Initialize the zone."""
        super().__init__(coordinator)
        self._client = client
        self._zone = zone
        self._attr_unique_id = f"{entry_id}_{zone}"
        self._attr_device_info = zone_device_info(client, entry_id, zone)

        features = (
            MediaPlayerEntityFeature.TURN_ON
            | MediaPlayerEntityFeature.TURN_OFF
            | MediaPlayerEntityFeature.VOLUME_SET
            | MediaPlayerEntityFeature.VOLUME_STEP
            | MediaPlayerEntityFeature.VOLUME_MUTE
            | MediaPlayerEntityFeature.SELECT_SOURCE
        )
        if client.capabilities.programs_for(zone):
            features |= MediaPlayerEntityFeature.SELECT_SOUND_MODE
        self._attr_supported_features = features

    def _value(self, name: str) -> Any:
        return self.coordinator.value(self._zone, name)

    @property
    def available(self) -> bool:
        """Return if the receiver is reachable."""
        return self.coordinator.connected

    @property
    def state(self) -> MediaPlayerState | None:
        """Return the power state of the zone."""
        power = self._value("power")
        if power is None:
            return None  # Unknown until device reports
        return MediaPlayerState.ON if power else MediaPlayerState.OFF

    @property
    def volume_level(self) -> float | None:
        """Return the volume level (0.0 to 1.0)."""
        volume = self._value("volume")
        if volume is None:
            return None
        low, high, _ = self._client.capabilities.volume_range
        return max(0.0, min(1.0, (volume - low) / (high - low)))

    @property
    def is_volume_muted(self) -> bool | None:
        """Return true if volume is muted."""
        return self._value("mute")

    @property
    def source(self) -> str | None:
        """Return the current input."""
        return self._value("input")

    @property
    def source_list(self) -> list[str] | None:
        """Return the inputs of this zone."""
        return list(self._client.capabilities.inputs_for(self._zone))

    @property
    def sound_mode(self) -> str | None:
        """Return the current sound program."""
        if self._value("straight"):
            return STRAIGHT
        return self._value("sound_program")

    @property
    def sound_mode_list(self) -> list[str] | None:
        """Return the sound programs of this zone."""
        return list(self._client.capabilities.programs_for(self._zone)) or None

    @property
    def extra_state_attributes(self) -> dict[str, Any] | None:
        """Return additional state attributes."""
        attrs = {
            "zone_id": self._zone,
            "volume_db": self._value("volume"),
            "stale": self._client.snapshot.stale,
        }
        unconfirmed = [
            name for name in ("power", "volume", "mute", "input", "sound_program")
            if not self.coordinator.is_confirmed(self._zone, name)
        ]
        if unconfirmed:
            attrs["unconfirmed"] = unconfirmed
        return attrs

    async def async_turn_on(self) -> None:
        """Turn the zone on."""
        await self.coordinator.async_command(self._zone, "power", True)

    async def async_turn_off(self) -> None:
        """Put the zone in standby."""
        await self.coordinator.async_command(self._zone, "power", False)

    async def async_set_volume_level(self, volume: float) -> None:
        """Set volume level (0.0 to 1.0)."""
        low, high, _ = self._client.capabilities.volume_range
        await self.coordinator.async_command(
            self._zone, "volume", low + volume * (high - low)
        )

    async def async_volume_up(self) -> None:
        """Raise volume by one device step."""
        await self.coordinator.async_volume_step(self._zone, True)

    async def async_volume_down(self) -> None:
        """Lower volume by one device step."""
        await self.coordinator.async_volume_step(self._zone, False)

    async def async_mute_volume(self, mute: bool) -> None:
        """Mute or unmute the zone."""
        await self.coordinator.async_command(self._zone, "mute", mute)

    async def async_select_source(self, source: str) -> None:
        """Select input source."""
        await self.coordinator.async_command(self._zone, "input", source)

    async def async_select_sound_mode(self, sound_mode: str) -> None:
        """Select sound program."""
        await self.coordinator.async_sound_program(self._zone, sound_mode)

    @callback
    def _handle_coordinator_update(self) -> None:
        """Handle updated data from the coordinator."""
        self.async_write_ha_state()
