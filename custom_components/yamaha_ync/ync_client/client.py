"""Yamaha YNC async client."""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional, Sequence

import aiohttp

from .codec import (
    decode_input_list,
    decode_system_config,
    decode_unit_description,
    encode_input_list_query,
    encode_system_config_query,
    fields_for,
    parse,
)
from .connection import DEFAULT_LEASE_TIMEOUT, DEFAULT_TIMEOUT, Session, SessionArbiter
from .discovery import DiscoveryClient
from .dispatcher import CommandDispatcher, ConfirmMode
from .engine import DEFAULT_POLL_INTERVAL, EngineState, UpdateEngine
from .exceptions import (
    ArbiterError,
    ArbiterErrorKind,
    DecodeError,
    DiscoveryError,
    ResponseError,
    YncError,
)
from .models import SYSTEM, Ack, Capabilities, DeviceDescriptor, StateSnapshot, StateStore
from .state import StateModel

_LOGGER = logging.getLogger(__name__)

DESC_PATH = "/YamahaRemoteControl/desc.xml"


class YncClient:
    """Async client for one Yamaha YNC receiver."""

    def __init__(
        self,
        host: str,
        port: int = 80,
        timeout: float = DEFAULT_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        realtime: bool = False,
        zones: Optional[Sequence[str]] = None,
        confirm_mode: ConfirmMode = ConfirmMode.PESSIMISTIC,
        device_id: Optional[str] = None,
        discovered: bool = False,
        store: Optional[StateStore] = None,
        http_session: Optional[aiohttp.ClientSession] = None,
        lease_timeout: float = DEFAULT_LEASE_TIMEOUT,
        **engine_options: Any,
    ) -> None:
        """Initialize client.

        Args:
            host: Device IP address or hostname
            port: HTTP port (default 80)
            timeout: Per-request timeout in seconds
            poll_interval: Seconds between status polls
            realtime: Subscribe to pushed notifications instead of polling
            zones: Zone override, limits the declared zone set
            confirm_mode: Command confirmation strategy
            device_id: Known identity, enables rediscovery after outages
            discovered: Address came from discovery
            store: External state store mirroring the device state
            http_session: Shared aiohttp session
        """
        self.host = host
        self.port = port
        self._zones_override = tuple(zones) if zones else ()
        self._device_id = device_id
        self._discovered = discovered
        self._store = store
        self._descriptor: Optional[DeviceDescriptor] = None
        self._unsubscribers: list = []
        self._rediscovery: Optional[asyncio.Task] = None

        self._arbiter = SessionArbiter(
            host,
            port=port,
            timeout=timeout,
            lease_timeout=lease_timeout,
            http_session=http_session,
        )
        self._model = StateModel()
        self._engine = UpdateEngine(
            self._arbiter,
            self._model,
            poll_interval=poll_interval,
            realtime=realtime,
            **engine_options,
        )
        self._dispatcher = CommandDispatcher(
            self._arbiter,
            self._engine,
            self._model,
            confirm_mode=confirm_mode,
            publisher=store.publish if store is not None else None,
        )

    @classmethod
    async def from_discovery(
        cls,
        device_id: str,
        discovery: Optional[DiscoveryClient] = None,
        discovery_timeout: float = 5.0,
        **kwargs: Any,
    ) -> "YncClient":
        """Create a client for a device known only by its identity.

        Raises:
            DeviceNotFoundError: device did not announce itself
        """
        discovery = discovery or DiscoveryClient()
        descriptor = await discovery.resolve(device_id, discovery_timeout)
        return cls(
            descriptor.host,
            port=descriptor.port,
            device_id=device_id,
            discovered=True,
            **kwargs,
        )

    # ========================================================================
    # PROPERTIES
    # ========================================================================

    @property
    def descriptor(self) -> Optional[DeviceDescriptor]:
        """Device identity and capabilities, None before connect()."""
        return self._descriptor

    @property
    def capabilities(self) -> Capabilities:
        """Capability set in use."""
        return self._model.capabilities

    @property
    def snapshot(self) -> StateSnapshot:
        """Last known state (stale while disconnected)."""
        return self._model.current_snapshot()

    @property
    def connected(self) -> bool:
        """Check if the engine currently reaches the device."""
        return self._engine.connected

    @property
    def engine_state(self) -> EngineState:
        """Current engine state."""
        return self._engine.state

    @property
    def engine(self) -> UpdateEngine:
        """Update engine."""
        return self._engine

    @property
    def dispatcher(self) -> CommandDispatcher:
        """Command dispatcher."""
        return self._dispatcher

    @property
    def arbiter(self) -> SessionArbiter:
        """Connection arbiter."""
        return self._arbiter

    def add_change_listener(self, listener) -> Callable[[], None]:
        """Register a listener for state changes."""
        return self._engine.add_change_listener(listener)

    def add_connectivity_listener(self, listener) -> Callable[[], None]:
        """Register a listener for the connectivity flag."""
        return self._engine.add_connectivity_listener(listener)

    # ========================================================================
    # CONNECTION
    # ========================================================================

    async def connect(self) -> DeviceDescriptor:
        """Read identity and capabilities from the device.

        Raises:
            ArbiterError: device not reachable
            DecodeError: device answered with something other than YNC
        """
        start = time.monotonic()
        descriptor = await self._arbiter.with_session(self._probe)
        self._descriptor = descriptor
        self._model.capabilities = descriptor.capabilities
        self._seed_from_store()
        _LOGGER.info(
            "ync: startup stage=probe duration_ms=%d model=%s zones=%s",
            int((time.monotonic() - start) * 1000),
            descriptor.model,
            ",".join(descriptor.capabilities.zones),
        )
        return descriptor

    async def _probe(self, session: Session) -> DeviceDescriptor:
        config = decode_system_config(await session.request(encode_system_config_query()))

        try:
            unit = decode_unit_description(await session.fetch(DESC_PATH))
            zones = unit.zones or ("main",)
            programs = unit.sound_programs
            features = unit.features
        except (DecodeError, ArbiterError) as err:
            if isinstance(err, ArbiterError) and err.kind != ArbiterErrorKind.UNREACHABLE:
                raise
            _LOGGER.warning("No usable unit description, assuming main zone only: %s", err)
            zones, programs, features = ("main",), {}, frozenset()

        inputs: Dict[str, tuple] = {}
        for zone in zones:
            try:
                inputs[zone] = decode_input_list(
                    await session.request(encode_input_list_query(zone)), zone
                )
            except (DecodeError, ResponseError) as err:
                _LOGGER.warning("Input list for %s unavailable: %s", zone, err)
                inputs[zone] = ()

        capabilities = Capabilities(
            zones=tuple(zones),
            inputs=inputs,
            sound_programs=dict(programs),
            features=frozenset(features),
        ).restrict(self._zones_override)

        return DeviceDescriptor(
            device_id=config["system_id"] or self._device_id or self.host,
            host=self._arbiter.host,
            port=self._arbiter.port,
            model=config["model"] or "Unknown",
            firmware=config["firmware"],
            discovered=self._discovered,
            capabilities=capabilities,
        )

    def _seed_from_store(self) -> None:
        if self._store is None:
            return
        values: Dict[str, Dict[str, Any]] = {}
        for zone in self._model.capabilities.zones + (SYSTEM,):
            for name in fields_for(zone):
                cached = self._store.read_cached(zone, name)
                if cached is not None:
                    values.setdefault(zone, {})[name] = cached
        if values:
            self._model.seed(values)
            _LOGGER.debug("Seeded state from cache zones=%d", len(values))

    async def test_connection(self) -> bool:
        """Test that the device answers YNC requests."""
        try:
            parse(await self._arbiter.request(encode_system_config_query()))
            return True
        except YncError as err:
            _LOGGER.error("Connection test failed: %s", err)
            return False

    async def start(self) -> None:
        """Start keeping state in sync. Connects first if needed."""
        if self._descriptor is None:
            await self.connect()

        self._unsubscribers.append(self._engine.add_change_listener(self._publish_changes))
        self._unsubscribers.append(
            self._engine.add_connectivity_listener(self._on_connectivity)
        )
        if self._store is not None:
            self._unsubscribers.append(
                self._store.on_command_requested(self.dispatch)
            )
        await self._engine.start()

    async def stop(self) -> None:
        """Stop the engine and detach from the store."""
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        if self._rediscovery is not None:
            rediscovery, self._rediscovery = self._rediscovery, None
            rediscovery.cancel()
            try:
                await rediscovery
            except asyncio.CancelledError:
                pass
        await self._engine.stop()
        self._dispatcher.close()

    async def disconnect(self) -> None:
        """Stop and release the HTTP session."""
        await self.stop()
        await self._arbiter.close()

    def _publish_changes(self, changes) -> None:
        if self._store is None:
            return
        for change in changes:
            self._store.publish(change.zone, change.field, change.new, True)

    def _on_connectivity(self, connected: bool) -> None:
        if connected or not self._discovered or self._device_id is None:
            return
        if self._rediscovery is None or self._rediscovery.done():
            self._rediscovery = asyncio.ensure_future(self.refresh_address())

    async def refresh_address(self, discovery: Optional[DiscoveryClient] = None) -> bool:
        """Look the device up again and follow an address change."""
        discovery = discovery or DiscoveryClient(control_port=self._arbiter.port)
        try:
            found = await discovery.resolve(self._device_id)
        except DiscoveryError as err:
            _LOGGER.debug("Rediscovery failed: %s", err)
            return False
        if found.host == self._arbiter.host:
            return False
        self._arbiter.update_address(found.host)
        self.host = found.host
        if self._descriptor is not None:
            self._descriptor = self._descriptor.with_address(found.host)
        return True

    # ========================================================================
    # COMMANDS
    # ========================================================================

    async def dispatch(self, zone: str, field: str, value: Any) -> Ack:
        """Send one command intent."""
        return await self._dispatcher.dispatch(zone, field, value)

    async def set_power(self, zone: str, on: bool) -> Ack:
        """Turn a zone on or to standby."""
        return await self._dispatcher.set_power(zone, on)

    async def set_volume(self, zone: str, volume: float) -> Ack:
        """Set volume in dB."""
        return await self._dispatcher.set_volume(zone, volume)

    async def set_mute(self, zone: str, mute: bool) -> Ack:
        """Mute or unmute a zone."""
        return await self._dispatcher.set_mute(zone, mute)

    async def set_input(self, zone: str, source: str) -> Ack:
        """Select an input."""
        return await self._dispatcher.set_input(zone, source)

    async def set_sound_program(self, zone: str, program: str) -> Ack:
        """Select a sound program."""
        return await self._dispatcher.set_sound_program(zone, program)

    async def set_flag(self, zone: str, flag: str, on: bool) -> Ack:
        """Toggle a boolean feature flag."""
        return await self._dispatcher.set_flag(zone, flag, on)

    async def volume_step(self, zone: str, up: bool, steps: int = 1) -> Ack:
        """Step the volume up or down."""
        return await self._dispatcher.volume_step(zone, up, steps)

    async def refresh(self, full: bool = False):
        """Read all zones now."""
        return await self._engine.refresh(full)
