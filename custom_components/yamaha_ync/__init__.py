"""The Yamaha YNC integration."""
from __future__ import annotations

import logging
import time

from homeassistant.config_entries import ConfigEntry
from homeassistant.const import Platform
from homeassistant.core import HomeAssistant
from homeassistant.exceptions import ConfigEntryNotReady
from homeassistant.helpers.aiohttp_client import async_get_clientsession

from .const import (
    CONF_CONFIRM_MODE,
    CONF_DEVICE_ID,
    CONF_HOST,
    CONF_PORT,
    CONF_REALTIME,
    CONF_SCAN_INTERVAL,
    CONF_TIMEOUT,
    CONF_ZONES,
    DEFAULT_CONFIRM_MODE,
    DEFAULT_NAME,
    DEFAULT_PORT,
    DEFAULT_SCAN_INTERVAL,
    DEFAULT_TIMEOUT,
    DISCOVERY_TIMEOUT,
    DOMAIN,
)
from .coordinator import YncCoordinator
from .ync_client import ConfirmMode, DiscoveryClient, DiscoveryError, YncClient, YncError

_LOGGER = logging.getLogger(__name__)

PLATFORMS = [Platform.MEDIA_PLAYER, Platform.SELECT, Platform.SWITCH]


def _option(entry: ConfigEntry, key: str, default):
    """Options override data, data overrides defaults."""
    return entry.options.get(key, entry.data.get(key, default))


async def async_setup_entry(hass: HomeAssistant, entry: ConfigEntry) -> bool:
    """Set up a Yamaha receiver from a config entry."""
    startup_start = time.monotonic()
    host = entry.data.get(CONF_HOST)
    device_id = entry.data.get(CONF_DEVICE_ID)

    _LOGGER.info("ync: startup stage=begin host=%s device_id=%s", host, device_id)

    # Discovered devices may have moved since the entry was created
    if device_id and not host:
        try:
            found = await DiscoveryClient(
                http_session=async_get_clientsession(hass)
            ).resolve(device_id, DISCOVERY_TIMEOUT)
        except DiscoveryError as err:
            raise ConfigEntryNotReady(f"Receiver {device_id} not found: {err}") from err
        host = found.host

    coordinator = YncCoordinator(hass, entry.entry_id, f"{DEFAULT_NAME} ({host})")

    cache_start = time.monotonic()
    cached_zones = await coordinator.async_load_cache()
    _LOGGER.info(
        "ync: startup stage=cache_load duration_ms=%d zones=%d",
        int((time.monotonic() - cache_start) * 1000), cached_zones,
    )

    client = YncClient(
        host,
        port=entry.data.get(CONF_PORT, DEFAULT_PORT),
        timeout=_option(entry, CONF_TIMEOUT, DEFAULT_TIMEOUT),
        poll_interval=_option(entry, CONF_SCAN_INTERVAL, DEFAULT_SCAN_INTERVAL),
        realtime=_option(entry, CONF_REALTIME, False),
        zones=_option(entry, CONF_ZONES, []),
        confirm_mode=ConfirmMode(_option(entry, CONF_CONFIRM_MODE, DEFAULT_CONFIRM_MODE)),
        device_id=device_id,
        discovered=bool(device_id),
        store=coordinator,
        http_session=async_get_clientsession(hass),
    )
    coordinator.client = client
    client.add_connectivity_listener(coordinator.async_set_connected)

    connect_start = time.monotonic()
    try:
        descriptor = await client.connect()
    except YncError as err:
        _LOGGER.error(
            "ync: startup stage=connect duration_ms=%d ok=false err=%s",
            int((time.monotonic() - connect_start) * 1000), err,
        )
        await client.disconnect()
        raise ConfigEntryNotReady(f"Cannot connect to receiver at {host}: {err}") from err
    _LOGGER.info(
        "ync: startup stage=connect duration_ms=%d ok=true model=%s",
        int((time.monotonic() - connect_start) * 1000), descriptor.model,
    )

    await client.start()

    hass.data.setdefault(DOMAIN, {})
    hass.data[DOMAIN][entry.entry_id] = {
        "client": client,
        "coordinator": coordinator,
    }

    await hass.config_entries.async_forward_entry_setups(entry, PLATFORMS)
    entry.async_on_unload(entry.add_update_listener(async_reload_entry))

    _LOGGER.info(
        "ync: startup stage=complete duration_ms=%d zones=%d",
        int((time.monotonic() - startup_start) * 1000),
        len(descriptor.capabilities.zones),
    )
    return True


async def async_unload_entry(hass: HomeAssistant, entry: ConfigEntry) -> bool:
    """Unload a config entry."""
    unload_ok = await hass.config_entries.async_unload_platforms(entry, PLATFORMS)

    if unload_ok:
        data = hass.data[DOMAIN].pop(entry.entry_id)
        await data["client"].disconnect()
        _LOGGER.info("Disconnected from receiver")

    return unload_ok


async def async_reload_entry(hass: HomeAssistant, entry: ConfigEntry) -> None:
    """Reload after options change."""
    await hass.config_entries.async_reload(entry.entry_id)
