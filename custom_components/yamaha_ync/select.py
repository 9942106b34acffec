"""Select platform for Yamaha YNC - input and sound program selection.

Standalone dropdowns for each zone, usable from dashboards and automations
without opening the media player dialog.
"""
from __future__ import annotations

import logging

from homeassistant.components.select import SelectEntity
from homeassistant.config_entries import ConfigEntry
from homeassistant.core import HomeAssistant, callback
from homeassistant.helpers.entity_platform import AddEntitiesCallback
from homeassistant.helpers.update_coordinator import CoordinatorEntity

from .const import DOMAIN
from .coordinator import YncCoordinator
from .media_player import zone_device_info
from .ync_client import STRAIGHT, YncClient

_LOGGER = logging.getLogger(__name__)


async def async_setup_entry(
    hass: HomeAssistant,
    config_entry: ConfigEntry,
    async_add_entities: AddEntitiesCallback,
) -> None:
    """Set up input and sound program selects."""
    data = hass.data[DOMAIN][config_entry.entry_id]
    client: YncClient = data["client"]
    coordinator: YncCoordinator = data["coordinator"]

    entities: list[SelectEntity] = []
    for zone in client.capabilities.zones:
        if client.capabilities.inputs_for(zone):
            entities.append(
                YncInputSelect(coordinator, client, zone, config_entry.entry_id)
            )
        if client.capabilities.programs_for(zone):
            entities.append(
                YncSoundProgramSelect(coordinator, client, zone, config_entry.entry_id)
            )

    async_add_entities(entities)


class _YncZoneSelect(CoordinatorEntity[YncCoordinator], SelectEntity):
    """Common zone select plumbing."""

    _attr_has_entity_name = True
    _attr_should_poll = False

    def __init__(
        self,
        coordinator: YncCoordinator,
        client: YncClient,
        zone: str,
        entry_id: str,
        key: str,
    ) -> None:
        super().__init__(coordinator)
        self._client = client
        self._zone = zone
        self._attr_unique_id = f"{entry_id}_{zone}_{key}"
        self._attr_translation_key = key
        self._attr_device_info = zone_device_info(client, entry_id, zone)

    @property
    def available(self) -> bool:
        """Return if the receiver is reachable."""
        return self.coordinator.connected

    @callback
    def _handle_coordinator_update(self) -> None:
        """Handle updated data from the coordinator."""
        self.async_write_ha_state()


class YncInputSelect(_YncZoneSelect):
    """Input source of a zone."""

    _attr_icon = "mdi:video-input-hdmi"

    def __init__(self, coordinator, client, zone, entry_id) -> None:
        """Initialize the input select."""
        super().__init__(coordinator, client, zone, entry_id, "input_source")
        self._attr_name = "Input Source"

    @property
    def options(self) -> list[str]:
        """Return the inputs of this zone."""
        return list(self._client.capabilities.inputs_for(self._zone))

    @property
    def current_option(self) -> str | None:
        """Return current input."""
        return self.coordinator.value(self._zone, "input")

    async def async_select_option(self, option: str) -> None:
        """Change the input."""
        _LOGGER.debug("Zone %s: select input '%s'", self._zone, option)
        await self.coordinator.async_command(self._zone, "input", option)


class YncSoundProgramSelect(_YncZoneSelect):
    """DSP sound program of a zone."""

    _attr_icon = "mdi:surround-sound"

    def __init__(self, coordinator, client, zone, entry_id) -> None:
        """Initialize the sound program select."""
        super().__init__(coordinator, client, zone, entry_id, "sound_program")
        self._attr_name = "Sound Program"

    @property
    def options(self) -> list[str]:
        """Return the sound programs of this zone."""
        return list(self._client.capabilities.programs_for(self._zone))

    @property
    def current_option(self) -> str | None:
        """Return current sound program."""
        if self.coordinator.value(self._zone, "straight"):
            return STRAIGHT
        return self.coordinator.value(self._zone, "sound_program")

    async def async_select_option(self, option: str) -> None:
        """Change the sound program."""
        await self.coordinator.async_sound_program(self._zone, option)
