"""Config flow for Yamaha YNC integration."""
from __future__ import annotations

import logging
from typing import Any

import voluptuous as vol

from homeassistant import config_entries
from homeassistant.core import HomeAssistant, callback
from homeassistant.data_entry_flow import FlowResult
from homeassistant.exceptions import HomeAssistantError
from homeassistant.helpers import config_validation as cv
from homeassistant.helpers.aiohttp_client import async_get_clientsession

from .const import (
    CONF_CONFIRM_MODE,
    CONF_DEVICE_ID,
    CONF_HOST,
    CONF_MODEL,
    CONF_PORT,
    CONF_REALTIME,
    CONF_SCAN_INTERVAL,
    CONF_TIMEOUT,
    CONF_ZONES,
    CONFIRM_MODES,
    DEFAULT_CONFIRM_MODE,
    DEFAULT_NAME,
    DEFAULT_PORT,
    DEFAULT_SCAN_INTERVAL,
    DEFAULT_TIMEOUT,
    DISCOVERY_TIMEOUT,
    DOMAIN,
    MAX_SCAN_INTERVAL,
    MAX_TIMEOUT,
    MIN_SCAN_INTERVAL,
    MIN_TIMEOUT,
    ZONE_NAMES,
)
from .ync_client import DeviceDescriptor, DiscoveryClient, YncClient, YncError

_LOGGER = logging.getLogger(__name__)


async def validate_connection(hass: HomeAssistant, host: str, port: int) -> DeviceDescriptor:
    """Probe the receiver.

    Raises:
        CannotConnect: device not reachable or not speaking YNC
    """
    client = YncClient(host, port=port, http_session=async_get_clientsession(hass))
    try:
        if not await client.test_connection():
            raise CannotConnect("Connection test failed")
        return await client.connect()
    except YncError as err:
        raise CannotConnect(str(err)) from err
    finally:
        await client.disconnect()


class YncConfigFlow(config_entries.ConfigFlow, domain=DOMAIN):
    """Handle a config flow for Yamaha YNC receivers."""

    VERSION = 1

    def __init__(self) -> None:
        """Initialize flow."""
        self._discovered: dict[str, DeviceDescriptor] = {}

    @staticmethod
    @callback
    def async_get_options_flow(config_entry):
        """Return the options flow."""
        return YncOptionsFlowHandler(config_entry)

    async def async_step_user(
        self, user_input: dict[str, Any] | None = None
    ) -> FlowResult:
        """Choose between network discovery and manual entry."""
        return self.async_show_menu(step_id="user", menu_options=["discover", "manual"])

    async def async_step_manual(
        self, user_input: dict[str, Any] | None = None
    ) -> FlowResult:
        """Configure a receiver by address."""
        errors = {}

        if user_input is not None:
            try:
                descriptor = await validate_connection(
                    self.hass, user_input[CONF_HOST], user_input[CONF_PORT]
                )
            except CannotConnect:
                errors["base"] = "cannot_connect"
            except Exception as err:
                _LOGGER.exception("Unexpected error: %s", err)
                errors["base"] = "unknown"
            else:
                await self.async_set_unique_id(descriptor.device_id)
                self._abort_if_unique_id_configured(
                    updates={CONF_HOST: user_input[CONF_HOST]}
                )
                return self.async_create_entry(
                    title=f"{descriptor.model} ({user_input[CONF_HOST]})",
                    data={
                        CONF_HOST: user_input[CONF_HOST],
                        CONF_PORT: user_input[CONF_PORT],
                        CONF_MODEL: descriptor.model,
                    },
                )

        return self.async_show_form(
            step_id="manual",
            data_schema=vol.Schema(
                {
                    vol.Required(CONF_HOST): str,
                    vol.Required(CONF_PORT, default=DEFAULT_PORT): int,
                }
            ),
            errors=errors,
        )

    async def async_step_discover(
        self, user_input: dict[str, Any] | None = None
    ) -> FlowResult:
        """Pick a receiver found on the network."""
        errors = {}

        if user_input is not None:
            found = self._discovered[user_input[CONF_DEVICE_ID]]
            try:
                descriptor = await validate_connection(self.hass, found.host, found.port)
            except CannotConnect:
                errors["base"] = "cannot_connect"
            except Exception as err:
                _LOGGER.exception("Unexpected error: %s", err)
                errors["base"] = "unknown"
            else:
                # Same identity as a manually added receiver; the SSDP id is
                # kept for rediscovery
                await self.async_set_unique_id(descriptor.device_id)
                self._abort_if_unique_id_configured(
                    updates={CONF_HOST: found.host, CONF_DEVICE_ID: found.device_id}
                )
                return self.async_create_entry(
                    title=f"{descriptor.model} ({found.host})",
                    data={
                        CONF_HOST: found.host,
                        CONF_PORT: found.port,
                        CONF_DEVICE_ID: found.device_id,
                        CONF_MODEL: descriptor.model,
                    },
                )

        if not self._discovered:
            discovery = DiscoveryClient(
                control_port=DEFAULT_PORT,
                http_session=async_get_clientsession(self.hass),
            )
            async for descriptor in discovery.discover(DISCOVERY_TIMEOUT):
                _LOGGER.debug("Discovered %s at %s", descriptor.model, descriptor.host)
            configured = {
                entry.data.get(CONF_DEVICE_ID) for entry in self._async_current_entries()
            }
            self._discovered = {
                device_id: descriptor
                for device_id, descriptor in discovery.devices.items()
                if device_id not in configured
            }
            if not self._discovered:
                return self.async_abort(reason="no_devices_found")

        return self.async_show_form(
            step_id="discover",
            data_schema=vol.Schema(
                {
                    vol.Required(CONF_DEVICE_ID): vol.In(
                        {
                            device_id: f"{d.model or DEFAULT_NAME} ({d.host})"
                            for device_id, d in self._discovered.items()
                        }
                    ),
                }
            ),
            errors=errors,
        )


class YncOptionsFlowHandler(config_entries.OptionsFlow):
    """Handle options flow for Yamaha YNC receivers."""

    def __init__(self, config_entry: config_entries.ConfigEntry) -> None:
        """Initialize options flow."""
        super().__init__()
        self._config_entry = config_entry

    def _current(self, key: str, default: Any) -> Any:
        return self._config_entry.options.get(
            key, self._config_entry.data.get(key, default)
        )

    def _known_zones(self) -> dict[str, str]:
        zones = ZONE_NAMES
        data = self.hass.data.get(DOMAIN, {}).get(self._config_entry.entry_id)
        if data and data["client"].descriptor is not None:
            declared = data["client"].descriptor.capabilities.zones
            zones = {zone: ZONE_NAMES.get(zone, zone) for zone in declared}
        return zones

    async def async_step_init(
        self, user_input: dict[str, Any] | None = None
    ) -> FlowResult:
        """Manage polling, timeout, realtime, confirmation and zones."""
        if user_input is not None:
            return self.async_create_entry(title="", data=user_input)

        return self.async_show_form(
            step_id="init",
            data_schema=vol.Schema(
                {
                    vol.Required(
                        CONF_SCAN_INTERVAL,
                        default=self._current(CONF_SCAN_INTERVAL, DEFAULT_SCAN_INTERVAL),
                    ): vol.All(
                        vol.Coerce(int),
                        vol.Range(min=MIN_SCAN_INTERVAL, max=MAX_SCAN_INTERVAL),
                    ),
                    vol.Required(
                        CONF_TIMEOUT,
                        default=self._current(CONF_TIMEOUT, DEFAULT_TIMEOUT),
                    ): vol.All(
                        vol.Coerce(float), vol.Range(min=MIN_TIMEOUT, max=MAX_TIMEOUT)
                    ),
                    vol.Required(
                        CONF_REALTIME, default=self._current(CONF_REALTIME, False)
                    ): bool,
                    vol.Required(
                        CONF_CONFIRM_MODE,
                        default=self._current(CONF_CONFIRM_MODE, DEFAULT_CONFIRM_MODE),
                    ): vol.In(CONFIRM_MODES),
                    vol.Optional(
                        CONF_ZONES, default=self._current(CONF_ZONES, [])
                    ): cv.multi_select(self._known_zones()),
                }
            ),
        )


class CannotConnect(HomeAssistantError):
    """Error to indicate we cannot connect."""
