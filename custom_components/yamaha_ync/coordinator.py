"""Push coordinator for the Yamaha YNC integration.

The coordinator is the state store of the client library: the update engine
publishes every change into it, entities read from it, and entity actions are
routed back to the client as command intents. The last values are persisted
so a restart has a baseline before the device answers.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable

from homeassistant.core import HomeAssistant, callback
from homeassistant.exceptions import HomeAssistantError
from homeassistant.helpers.storage import Store
from homeassistant.helpers.update_coordinator import DataUpdateCoordinator, UpdateFailed

from .const import DOMAIN
from .ync_client import Ack, CommandError, CommandErrorKind, YncClient, YncError

_LOGGER = logging.getLogger(__name__)

# Cache storage version and key
STORAGE_VERSION = 1
STORAGE_KEY = f"{DOMAIN}.state_cache"
CACHE_SAVE_DELAY = 10  # seconds


class YncCoordinator(DataUpdateCoordinator[dict[str, dict[str, Any]]]):
    """Mirror of one receiver's state, fed by the client library."""

    def __init__(self, hass: HomeAssistant, entry_id: str, name: str) -> None:
        """Initialize coordinator without interval polling."""
        super().__init__(hass, _LOGGER, name=name, update_interval=None)
        self.client: YncClient | None = None
        self._store = Store(hass, STORAGE_VERSION, f"{STORAGE_KEY}.{entry_id}")
        self._values: dict[str, dict[str, Any]] = {}
        self._unconfirmed: set[tuple[str, str]] = set()
        self._command_handler: Callable[..., Any] | None = None
        self._push_scheduled = False
        self.connected = False
        self.data = {}

    # ========================================================================
    # CACHE
    # ========================================================================

    async def async_load_cache(self) -> int:
        """Load the persisted snapshot. Returns the number of cached zones."""
        cached = await self._store.async_load()
        if not cached or not isinstance(cached, dict):
            return 0
        zones = cached.get("zones", {})
        if not isinstance(zones, dict):
            return 0
        self._values = {
            zone: dict(values) for zone, values in zones.items() if isinstance(values, dict)
        }
        self.data = self._copy_values()
        _LOGGER.debug(
            "Loaded cache zones=%d age_s=%.0f",
            len(self._values), time.time() - cached.get("timestamp", time.time()),
        )
        return len(self._values)

    def _cache_data(self) -> dict[str, Any]:
        return {"zones": self._values, "timestamp": time.time()}

    def _copy_values(self) -> dict[str, dict[str, Any]]:
        return {zone: dict(values) for zone, values in self._values.items()}

    # ========================================================================
    # STATE STORE
    # ========================================================================

    def read_cached(self, zone: str, name: str) -> Any:
        """Return the cached value or None when absent."""
        return self._values.get(zone, {}).get(name)

    def publish(self, zone: str, name: str, value: Any, confirmed: bool) -> None:
        """Store one value and notify entities on the next loop iteration."""
        self._values.setdefault(zone, {})[name] = value
        if confirmed:
            self._unconfirmed.discard((zone, name))
        else:
            self._unconfirmed.add((zone, name))
        if not self._push_scheduled:
            self._push_scheduled = True
            self.hass.loop.call_soon(self._push)

    def on_command_requested(self, handler: Callable[..., Any]) -> Callable[[], None]:
        """Route entity actions to handler."""
        self._command_handler = handler

        def _unsubscribe() -> None:
            if self._command_handler is handler:
                self._command_handler = None

        return _unsubscribe

    @callback
    def _push(self) -> None:
        self._push_scheduled = False
        self.async_set_updated_data(self._copy_values())
        self._store.async_delay_save(self._cache_data, CACHE_SAVE_DELAY)

    @callback
    def async_set_connected(self, connected: bool) -> None:
        """Follow the client connectivity flag."""
        self.connected = connected
        self.async_update_listeners()

    def is_confirmed(self, zone: str, name: str) -> bool:
        """Check if the value came from the device rather than a command."""
        return (zone, name) not in self._unconfirmed

    def value(self, zone: str, name: str) -> Any:
        """Current value for entities."""
        return (self.data or {}).get(zone, {}).get(name)

    # ========================================================================
    # COMMANDS AND REFRESH
    # ========================================================================

    async def async_command(self, zone: str, name: str, value: Any) -> Ack:
        """Send an entity action to the device.

        Raises:
            HomeAssistantError: invalid value, rejected or device unreachable
        """
        handler = self._require_running()
        return await self._async_call(name, handler(zone, name, value))

    async def async_volume_step(self, zone: str, up: bool) -> Ack:
        """Step the zone volume by one device step."""
        self._require_running()
        return await self._async_call("volume", self.client.volume_step(zone, up))

    async def async_sound_program(self, zone: str, program: str) -> Ack:
        """Select a sound program, Straight included."""
        self._require_running()
        return await self._async_call(
            "sound_program", self.client.set_sound_program(zone, program)
        )

    def _require_running(self) -> Callable[..., Any]:
        if self._command_handler is None or self.client is None:
            raise HomeAssistantError("Receiver is not running")
        return self._command_handler

    async def _async_call(self, name: str, command: Awaitable[Ack]) -> Ack:
        try:
            return await command
        except CommandError as err:
            if err.kind == CommandErrorKind.UNCONFIRMED:
                # Sent, but the device did not show the value in time
                _LOGGER.warning("Command %s unconfirmed: %s", name, err)
                raise HomeAssistantError(f"Receiver did not confirm {name}") from err
            raise HomeAssistantError(f"Command {name} failed: {err}") from err
        except YncError as err:
            raise HomeAssistantError(f"Error communicating with receiver: {err}") from err

    async def _async_update_data(self) -> dict[str, dict[str, Any]]:
        """Manual refresh: full read of the device."""
        if self.client is None:
            return self._copy_values()
        refresh_start = time.monotonic()
        try:
            await self.client.refresh(full=True)
        except YncError as err:
            _LOGGER.error(
                "ync: coordinator stage=refresh duration_ms=%d ok=false err=%s",
                int((time.monotonic() - refresh_start) * 1000), err,
            )
            raise UpdateFailed(f"Error communicating with receiver: {err}") from err
        _LOGGER.debug(
            "ync: coordinator stage=refresh duration_ms=%d ok=true",
            int((time.monotonic() - refresh_start) * 1000),
        )
        return self._copy_values()
