"""Polling and realtime update engine for Yamaha YNC receivers.

State machine:

    IDLE ──> POLLING ⇄ RECONNECTING
    IDLE ──> REALTIME ⇄ RECONNECTING
    any ──> STOPPED (terminal)

Polling and realtime are exclusive. In realtime mode the engine only talks to
the device to (re)subscribe and to read zones named by property-only
notifications; pushed values arrive over UDP without holding a lease. A failed
read-back counts as a lost connection and ends the wait for the next renewal.

Every successful (re)connect starts with a full cycle, so changes made while
the device was unreachable are picked up.
"""

import asyncio
import logging
import random
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from .codec import decode_event, decode_status, encode_status_query
from .connection import Session, SessionArbiter
from .exceptions import ArbiterError, DecodeError, ResponseError
from .models import SYSTEM, Change
from .state import StateModel

_LOGGER = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 30.0
DEFAULT_FULL_POLL_EVERY = 10
DEFAULT_SUBSCRIPTION_RENEW = 540.0  # device drops subscriptions after ~10 min
DEFAULT_BACKOFF_INITIAL = 1.0
DEFAULT_BACKOFF_MAX = 60.0
DEFAULT_APP_NAME = "HomeAssistant"

ChangeListener = Callable[[List[Change]], None]
ConnectivityListener = Callable[[bool], None]


class EngineState(Enum):
    """Engine lifecycle states."""

    IDLE = "idle"
    POLLING = "polling"
    REALTIME = "realtime"
    RECONNECTING = "reconnecting"
    STOPPED = "stopped"


class _EventProtocol(asyncio.DatagramProtocol):
    """Hands pushed notifications to the engine."""

    def __init__(self, engine: "UpdateEngine") -> None:
        self._engine = engine

    def datagram_received(self, data: bytes, addr) -> None:
        self._engine._on_datagram(data, addr)

    def error_received(self, exc: Exception) -> None:
        _LOGGER.debug("Event socket error: %s", exc)


class UpdateEngine:
    """Keeps the state model in sync with the device."""

    def __init__(
        self,
        arbiter: SessionArbiter,
        model: StateModel,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        full_poll_every: int = DEFAULT_FULL_POLL_EVERY,
        realtime: bool = False,
        event_port: int = 0,
        subscription_renew: float = DEFAULT_SUBSCRIPTION_RENEW,
        backoff_initial: float = DEFAULT_BACKOFF_INITIAL,
        backoff_max: float = DEFAULT_BACKOFF_MAX,
        app_name: str = DEFAULT_APP_NAME,
    ) -> None:
        self._arbiter = arbiter
        self._model = model
        self.poll_interval = poll_interval
        self.full_poll_every = max(1, full_poll_every)
        self.realtime = realtime
        self.event_port = event_port
        self.subscription_renew = subscription_renew
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max
        self.app_name = app_name

        self._state = EngineState.IDLE
        self._connected = False
        self._backoff = backoff_initial
        self._task: Optional[asyncio.Task] = None
        self._push_tasks: Set[asyncio.Task] = set()
        self._transport: Optional[asyncio.DatagramTransport] = None
        self._listen_port: Optional[int] = None
        self._peer_host: Optional[str] = None
        self._peer_addresses: Set[str] = set()
        self._wake = asyncio.Event()
        self._push_failure: Optional[ArbiterError] = None
        self._change_listeners: List[ChangeListener] = []
        self._connectivity_listeners: List[ConnectivityListener] = []

        self.full_fetches = 0
        self.cycles = 0

    @property
    def state(self) -> EngineState:
        """Current engine state."""
        return self._state

    @property
    def connected(self) -> bool:
        """Externally visible connectivity flag."""
        return self._connected

    @property
    def mode(self) -> EngineState:
        """Steady state the engine runs in when connected."""
        if self.realtime and self._transport is not None:
            return EngineState.REALTIME
        return EngineState.POLLING

    # ========================================================================
    # LISTENERS
    # ========================================================================

    def add_change_listener(self, listener: ChangeListener) -> Callable[[], None]:
        """Register a change listener. Returns an unsubscribe callable."""
        self._change_listeners.append(listener)
        return lambda: self._remove(self._change_listeners, listener)

    def add_connectivity_listener(
        self, listener: ConnectivityListener
    ) -> Callable[[], None]:
        """Register a connectivity listener. Returns an unsubscribe callable."""
        self._connectivity_listeners.append(listener)
        return lambda: self._remove(self._connectivity_listeners, listener)

    @staticmethod
    def _remove(listeners: list, listener: Any) -> None:
        if listener in listeners:
            listeners.remove(listener)

    def _set_connected(self, connected: bool) -> None:
        if connected == self._connected:
            return
        self._connected = connected
        _LOGGER.info("ync: connectivity=%s", "up" if connected else "down")
        for listener in list(self._connectivity_listeners):
            listener(connected)

    def _set_state(self, state: EngineState) -> None:
        if state != self._state:
            _LOGGER.debug("ync: engine %s -> %s", self._state.value, state.value)
            self._state = state

    def apply(self, values: Dict[str, Dict[str, Any]]) -> List[Change]:
        """Feed decoded values into the model and notify listeners."""
        changes = self._model.apply_update(values)
        if changes:
            for listener in list(self._change_listeners):
                listener(changes)
        return changes

    # ========================================================================
    # READS
    # ========================================================================

    async def read_zone(
        self,
        session: Session,
        zone: str,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """Read one zone (or the system scope) inside a held session.

        A malformed response is retried once immediately. A device-side
        rejection leaves the zone unknown for this cycle.
        """
        payload = encode_status_query(zone)
        for attempt in (1, 2):
            body = await session.request(payload, headers)
            try:
                return decode_status(body, zone)
            except DecodeError as err:
                if attempt == 2:
                    raise
                _LOGGER.warning("Malformed status for %s, retrying: %s", zone, err)
            except ResponseError as err:
                _LOGGER.warning("Status read for %s rejected: %s", zone, err)
                return {}
        return {}

    def _subscription_headers(self) -> Optional[Dict[str, str]]:
        if self._listen_port is None:
            return None
        return {"X-AppName": self.app_name, "X-AppPort": str(self._listen_port)}

    async def _cycle(self, full: bool) -> List[Change]:
        zones = self._model.capabilities.zones
        read_system = full and "party_mode" in self._model.capabilities.features
        headers = self._subscription_headers()

        async def _read_all(session: Session) -> Dict[str, Dict[str, Any]]:
            values: Dict[str, Dict[str, Any]] = {}
            for index, zone in enumerate(zones):
                # Subscription headers ride on the first read of the cycle
                values[zone] = await self.read_zone(
                    session, zone, headers if index == 0 else None
                )
            if read_system:
                values[SYSTEM] = await self.read_zone(session, SYSTEM)
            return values

        start = time.monotonic()
        values = await self._arbiter.with_session(_read_all)
        changes = self.apply(values)
        self.cycles += 1
        if full:
            self.full_fetches += 1
        _LOGGER.debug(
            "ync: cycle full=%s zones=%d changes=%d duration_ms=%d",
            full, len(zones), len(changes), int((time.monotonic() - start) * 1000),
        )
        return changes

    async def refresh(self, full: bool = False) -> List[Change]:
        """Run one read cycle now.

        Raises:
            ArbiterError: device not reachable
            DecodeError: response stayed malformed after one retry
        """
        return await self._cycle(full)

    async def refresh_zone(self, zone: str) -> List[Change]:
        """Read a single zone now."""
        values = await self._arbiter.with_session(lambda s: self.read_zone(s, zone))
        return self.apply({zone: values})

    # ========================================================================
    # REALTIME
    # ========================================================================

    async def _open_listener(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            transport, _ = await loop.create_datagram_endpoint(
                lambda: _EventProtocol(self), local_addr=("0.0.0.0", self.event_port)
            )
        except OSError as err:
            _LOGGER.warning(
                "Realtime listener unavailable on port %d, falling back to polling: %s",
                self.event_port, err,
            )
            return
        self._transport = transport
        self._listen_port = transport.get_extra_info("sockname")[1]
        _LOGGER.info("ync: realtime listener port=%d", self._listen_port)

    async def _resolve_peer(self) -> None:
        """Resolve the device host to the addresses its events come from."""
        host = self._arbiter.host
        if host == self._peer_host:
            return
        self._peer_addresses = {host}
        try:
            infos = await asyncio.get_running_loop().getaddrinfo(host, None)
        except OSError as err:
            # Retried on the next cycle
            _LOGGER.debug("Could not resolve %s: %s", host, err)
            return
        self._peer_addresses.update(info[4][0] for info in infos)
        self._peer_host = host
        _LOGGER.debug("ync: accepting events from %s", sorted(self._peer_addresses))

    def _on_datagram(self, data: bytes, addr) -> None:
        if self._state == EngineState.STOPPED:
            return
        if addr and addr[0] not in self._peer_addresses and addr[0] != self._arbiter.host:
            _LOGGER.debug("Ignoring event from %s", addr[0])
            return
        task = asyncio.ensure_future(self._handle_push_safely(data))
        self._push_tasks.add(task)
        task.add_done_callback(self._push_tasks.discard)

    async def _handle_push_safely(self, payload: bytes) -> None:
        try:
            await self.handle_push(payload)
        except ArbiterError as err:
            _LOGGER.warning("Follow-up read after event failed: %s", err)
            self._push_failure = err
            self._wake.set()
        except DecodeError as err:
            _LOGGER.warning("Follow-up read after event failed: %s", err)

    async def handle_push(self, payload) -> List[Change]:
        """Process one pushed notification.

        Values carried by the notification are applied directly; zones that
        only report changed properties are read back.
        """
        try:
            event = decode_event(payload)
        except (DecodeError, ResponseError) as err:
            _LOGGER.warning("Malformed event, reading all zones: %s", err)
            return await self.refresh(full=False)

        changes = self.apply(event.values) if event.values else []
        for zone in sorted(event.touched):
            if zone == SYSTEM:
                if "party_mode" in self._model.capabilities.features:
                    changes += await self.refresh_zone(SYSTEM)
            elif self._model.capabilities.has_zone(zone):
                changes += await self.refresh_zone(zone)
        return changes

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    async def start(self) -> None:
        """Start polling or realtime operation."""
        if self._state == EngineState.STOPPED:
            raise RuntimeError("Engine is stopped")
        if self._task is not None:
            return
        if self.realtime:
            await self._open_listener()
        self._task = asyncio.ensure_future(self._run())

    async def _sleep_backoff(self, err: Exception) -> None:
        self._set_state(EngineState.RECONNECTING)
        self._set_connected(False)
        self._model.mark_stale()

        delay = min(self._backoff, self.backoff_max)
        jitter = random.uniform(0, delay * 0.1)  # 10% jitter
        _LOGGER.warning(
            "ync: connection lost (%s), retrying in %.1f seconds", err, delay + jitter
        )
        await asyncio.sleep(delay + jitter)
        self._backoff = min(self._backoff * 2, self.backoff_max)

    async def _wait_tick(self, delay: float) -> Optional[ArbiterError]:
        """Sleep until the next tick. Returns early with a failed event read."""
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
        self._wake.clear()
        failure, self._push_failure = self._push_failure, None
        return failure

    async def _run(self) -> None:
        full = True
        ticks = 0
        while True:
            if self._transport is not None:
                await self._resolve_peer()
            try:
                await self._cycle(full)
            except ArbiterError as err:
                await self._sleep_backoff(err)
                full = True
                continue
            except DecodeError as err:
                _LOGGER.warning("Status read failed twice, waiting for next tick: %s", err)
            else:
                if self._state == EngineState.RECONNECTING:
                    _LOGGER.info("ync: reconnected to %s", self._arbiter.host)
                self._backoff = self.backoff_initial
                self._push_failure = None
                self._set_connected(True)
                self._set_state(self.mode)
                full = False

            if self.mode == EngineState.REALTIME:
                failure = await self._wait_tick(self.subscription_renew)
            else:
                failure = await self._wait_tick(self.poll_interval)
            if failure is not None:
                await self._sleep_backoff(failure)
                full = True
                continue
            ticks += 1
            full = full or ticks % self.full_poll_every == 0

    async def stop(self) -> None:
        """Stop the engine. Cancels timers, the subscription and the listener."""
        self._set_state(EngineState.STOPPED)
        tasks = list(self._push_tasks)
        if self._task is not None:
            tasks.append(self._task)
            self._task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._transport is not None:
            self._transport.close()
            self._transport = None
            self._listen_port = None
        self._set_connected(False)
        self._model.mark_stale()
        _LOGGER.debug("ync: engine stopped")
