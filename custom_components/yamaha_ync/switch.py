"""Switch platform for Yamaha YNC - Pure Direct, YPAO volume and Party mode."""
from __future__ import annotations

import logging
from typing import Any

from homeassistant.components.switch import SwitchEntity
from homeassistant.config_entries import ConfigEntry
from homeassistant.core import HomeAssistant, callback
from homeassistant.helpers.entity_platform import AddEntitiesCallback
from homeassistant.helpers.update_coordinator import CoordinatorEntity

from .const import DOMAIN, SYSTEM_SWITCHES, ZONE_SWITCHES
from .coordinator import YncCoordinator
from .media_player import zone_device_info
from .ync_client import SYSTEM, YncClient

_LOGGER = logging.getLogger(__name__)

SWITCH_NAMES = {
    "pure_direct": "Pure Direct",
    "ypao_volume": "YPAO Volume",
    "party_mode": "Party Mode",
}
SWITCH_ICONS = {
    "pure_direct": "mdi:sine-wave",
    "ypao_volume": "mdi:tune-vertical",
    "party_mode": "mdi:party-popper",
}


async def async_setup_entry(
    hass: HomeAssistant,
    config_entry: ConfigEntry,
    async_add_entities: AddEntitiesCallback,
) -> None:
    """Set up switches for the flags the receiver declares."""
    data = hass.data[DOMAIN][config_entry.entry_id]
    client: YncClient = data["client"]
    coordinator: YncCoordinator = data["coordinator"]
    features = client.capabilities.features

    entities = [
        YncFlagSwitch(coordinator, client, zone, flag, config_entry.entry_id)
        for zone in client.capabilities.zones
        for flag in ZONE_SWITCHES
        if flag in features
    ]
    entities.extend(
        YncFlagSwitch(coordinator, client, SYSTEM, flag, config_entry.entry_id)
        for flag in SYSTEM_SWITCHES
        if flag in features
    )
    async_add_entities(entities)


class YncFlagSwitch(CoordinatorEntity[YncCoordinator], SwitchEntity):
    """Boolean receiver setting."""

    _attr_has_entity_name = True
    _attr_should_poll = False

    def __init__(
        self,
        coordinator: YncCoordinator,
        client: YncClient,
        zone: str,
        flag: str,
        entry_id: str,
    ) -> None:
        """Initialize the switch."""
        super().__init__(coordinator)
        self._zone = zone
        self._flag = flag
        self._attr_unique_id = f"{entry_id}_{zone}_{flag}"
        self._attr_name = SWITCH_NAMES.get(flag, flag)
        self._attr_icon = SWITCH_ICONS.get(flag)
        # Device-wide switches live on the main zone device
        device_zone = "main" if zone == SYSTEM else zone
        self._attr_device_info = zone_device_info(client, entry_id, device_zone)

    @property
    def available(self) -> bool:
        """Return if the receiver is reachable."""
        return self.coordinator.connected

    @property
    def is_on(self) -> bool | None:
        """Return the flag value."""
        return self.coordinator.value(self._zone, self._flag)

    async def async_turn_on(self, **kwargs: Any) -> None:
        """Enable the flag."""
        await self.coordinator.async_command(self._zone, self._flag, True)

    async def async_turn_off(self, **kwargs: Any) -> None:
        """Disable the flag."""
        await self.coordinator.async_command(self._zone, self._flag, False)

    @callback
    def _handle_coordinator_update(self) -> None:
        """Handle updated data from the coordinator."""
        self.async_write_ha_state()
