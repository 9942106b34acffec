"""Command dispatcher for Yamaha YNC receivers.

Flow of one command:
    1. validate against the capability set (no I/O on failure)
    2. register a PendingCommand for (zone, field); an older one is superseded
    3. PUT the value in a session, followed by a status read of the zone
    4. confirm: wait until the state model shows the value, or give up
"""

import asyncio
import logging
import math
from enum import Enum
from numbers import Real
from typing import Any, Callable, Dict, List, Optional, Tuple

from .codec import FIELDS, STRAIGHT, encode, parse
from .connection import Session, SessionArbiter
from .engine import UpdateEngine
from .exceptions import (
    ArbiterError,
    CommandError,
    CommandErrorKind,
    DecodeError,
    ResponseError,
)
from .models import SYSTEM, Ack, Change, CommandIntent, PendingCommand
from .state import StateModel

_LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIRM_TIMEOUT = 5.0
DEFAULT_CONFIRM_INTERVAL = 0.5

BOOLEAN_FIELDS = ("power", "mute", "straight", "pure_direct", "ypao_volume", "party_mode")

Publisher = Callable[[str, str, Any, bool], None]


class ConfirmMode(Enum):
    """How a command is confirmed."""

    PESSIMISTIC = "pessimistic"  # wait for a read showing the value
    OPTIMISTIC = "optimistic"  # publish unconfirmed, republish device value once settled


class CommandDispatcher:
    """Validates, sends and confirms command intents."""

    def __init__(
        self,
        arbiter: SessionArbiter,
        engine: UpdateEngine,
        model: StateModel,
        confirm_mode: ConfirmMode = ConfirmMode.PESSIMISTIC,
        confirm_timeout: float = DEFAULT_CONFIRM_TIMEOUT,
        confirm_interval: float = DEFAULT_CONFIRM_INTERVAL,
        publisher: Optional[Publisher] = None,
    ) -> None:
        self._arbiter = arbiter
        self._engine = engine
        self._model = model
        self.confirm_mode = confirm_mode
        self.confirm_timeout = confirm_timeout
        self.confirm_interval = confirm_interval
        self._publisher = publisher
        self._pending: Dict[Tuple[str, str], PendingCommand] = {}
        self._unsubscribe = engine.add_change_listener(self._on_changes)

    @property
    def pending(self) -> Dict[Tuple[str, str], PendingCommand]:
        """Outstanding commands by (zone, field)."""
        return dict(self._pending)

    def close(self) -> None:
        """Detach from the engine and resolve outstanding commands."""
        self._unsubscribe()
        for pending in list(self._pending.values()):
            pending.resolve(False)
        self._pending.clear()

    # ========================================================================
    # VALIDATION
    # ========================================================================

    def validate(self, zone: str, field: str, value: Any) -> Any:
        """Check a desired value against the capability set.

        Returns:
            Normalized value (volume snapped to the device step)

        Raises:
            CommandError: INVALID_VALUE
        """
        capabilities = self._model.capabilities

        spec = FIELDS.get(field)
        if spec is None:
            raise _invalid(f"Unknown field: {field}")
        if zone == SYSTEM:
            if spec.scope != "system":
                raise _invalid(f"Field {field} is not a system field")
        else:
            if not capabilities.has_zone(zone):
                raise _invalid(f"Unknown zone: {zone}")
            if spec.scope != "zone":
                raise _invalid(f"Field {field} is device-wide, use zone {SYSTEM}")
        if spec.feature and spec.feature not in capabilities.features:
            raise _invalid(f"Device does not support {field}")

        if field in BOOLEAN_FIELDS:
            if not isinstance(value, bool):
                raise _invalid(f"{field} expects a boolean, got {value!r}")
            return value

        if field == "volume":
            if isinstance(value, bool) or not isinstance(value, Real):
                raise _invalid(f"volume expects a number, got {value!r}")
            low, high, step = capabilities.volume_range
            if math.isnan(value) or not low <= value <= high:
                raise _invalid(f"Volume {value} outside {low}..{high} dB")
            return round(low + round((value - low) / step) * step, 3)

        if field == "input":
            allowed = capabilities.inputs_for(zone)
        else:
            allowed = capabilities.programs_for(zone)
        if not isinstance(value, str) or not value:
            raise _invalid(f"{field} expects a name, got {value!r}")
        # An empty capability list means the device did not enumerate them
        if allowed and value not in allowed:
            raise _invalid(f"{value} is not a valid {field} for {zone}")
        return value

    # ========================================================================
    # DISPATCH
    # ========================================================================

    async def dispatch(self, zone: str, field: str, value: Any) -> Ack:
        """Send one command.

        Raises:
            CommandError: INVALID_VALUE, REJECTED or UNCONFIRMED
            ArbiterError: device not reachable (writes are never retried)
        """
        value = self.validate(zone, field, value)
        payload = encode(CommandIntent(zone, field, value))

        pending = PendingCommand(zone, field, value)
        previous = self._pending.get(pending.key)
        if previous is not None:
            _LOGGER.debug("Superseding pending %s.%s=%r", zone, field, previous.value)
            previous.resolve(False)
        self._pending[pending.key] = pending

        try:
            values = await self._arbiter.with_session(
                lambda session: self._write(session, pending, payload)
            )
        except (ArbiterError, CommandError, asyncio.CancelledError):
            self._release(pending)
            raise

        if self.confirm_mode == ConfirmMode.OPTIMISTIC:
            self._arm_expiry(pending)
            if self._publisher is not None:
                self._publisher(zone, field, value, False)
            if values:
                self._engine.apply({zone: values})
            _LOGGER.debug("cmd %s.%s=%r sent (optimistic)", zone, field, value)
            return Ack(zone, field, value, confirmed=False)

        try:
            confirmed = await self._confirm(pending, values)
        finally:
            self._release(pending)
        if not confirmed:
            raise CommandError(
                CommandErrorKind.UNCONFIRMED,
                f"{zone}.{field}={value!r} not confirmed by device",
            )
        _LOGGER.debug("cmd %s.%s=%r confirmed", zone, field, value)
        return Ack(zone, field, value, confirmed=True)

    async def _write(
        self, session: Session, pending: PendingCommand, payload: str
    ) -> Dict[str, Any]:
        body = await session.request(payload)
        try:
            parse(body)
        except ResponseError as err:
            raise CommandError(
                CommandErrorKind.REJECTED,
                f"Device rejected {pending.zone}.{pending.field}={pending.value!r} (RC={err.code})",
            ) from err
        except DecodeError as err:
            # Write was delivered; the follow-up read decides
            _LOGGER.warning("Unreadable reply to %s.%s: %s", pending.zone, pending.field, err)

        if self.confirm_mode == ConfirmMode.OPTIMISTIC:
            return {}
        try:
            return await self._engine.read_zone(session, pending.zone)
        except DecodeError as err:
            _LOGGER.debug("Follow-up read failed: %s", err)
            return {}

    async def _confirm(self, pending: PendingCommand, values: Dict[str, Any]) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.confirm_timeout
        if values:
            self._engine.apply({pending.zone: values})

        while not pending.future.done():
            current = self._model.current_snapshot().value(pending.zone, pending.field)
            if _matches(current, pending.value):
                pending.resolve(True)
                break
            remaining = deadline - loop.time()
            if remaining <= 0:
                pending.resolve(False)
                break
            try:
                await asyncio.wait_for(
                    asyncio.shield(pending.future),
                    timeout=min(self.confirm_interval, remaining),
                )
            except asyncio.TimeoutError:
                try:
                    await self._engine.refresh_zone(pending.zone)
                except (ArbiterError, DecodeError) as err:
                    _LOGGER.debug("Confirming read failed: %s", err)
        return pending.future.result()

    def _arm_expiry(self, pending: PendingCommand) -> None:
        handle = asyncio.get_running_loop().call_later(
            self.confirm_timeout, pending.resolve, False
        )

        def _done(_future: asyncio.Future) -> None:
            handle.cancel()
            superseded = self._pending.get(pending.key) not in (None, pending)
            self._release(pending)
            if not _future.result():
                _LOGGER.info(
                    "cmd %s.%s=%r unconfirmed", pending.zone, pending.field, pending.value
                )
            if not superseded:
                self._settle(pending)

        pending.future.add_done_callback(_done)

    def _settle(self, pending: PendingCommand) -> None:
        """Publish the device's value for a field that was shown optimistically."""
        if self._publisher is None:
            return
        current = self._model.current_snapshot().value(pending.zone, pending.field)
        if current is not None:
            self._publisher(pending.zone, pending.field, current, True)

    def _release(self, pending: PendingCommand) -> None:
        if self._pending.get(pending.key) is pending:
            del self._pending[pending.key]

    def _on_changes(self, changes: List[Change]) -> None:
        for change in changes:
            pending = self._pending.get((change.zone, change.field))
            if pending is not None and _matches(change.new, pending.value):
                pending.resolve(True)

    # ========================================================================
    # CONVENIENCE
    # ========================================================================

    async def set_power(self, zone: str, on: bool) -> Ack:
        """Turn a zone on or to standby."""
        return await self.dispatch(zone, "power", on)

    async def set_volume(self, zone: str, volume: float) -> Ack:
        """Set volume in dB."""
        return await self.dispatch(zone, "volume", volume)

    async def set_mute(self, zone: str, mute: bool) -> Ack:
        """Mute or unmute a zone."""
        return await self.dispatch(zone, "mute", mute)

    async def set_input(self, zone: str, source: str) -> Ack:
        """Select an input."""
        return await self.dispatch(zone, "input", source)

    async def set_sound_program(self, zone: str, program: str) -> Ack:
        """Select a sound program. Straight is a separate switch on the device."""
        if program == STRAIGHT:
            return await self.dispatch(zone, "straight", True)
        return await self.dispatch(zone, "sound_program", program)

    async def set_flag(self, zone: str, flag: str, on: bool) -> Ack:
        """Toggle pure_direct, ypao_volume or (system scope) party_mode."""
        if flag not in BOOLEAN_FIELDS or flag in ("power", "mute"):
            raise _invalid(f"Unknown flag: {flag}")
        return await self.dispatch(zone, flag, on)

    async def volume_step(self, zone: str, up: bool, steps: int = 1) -> Ack:
        """Change the volume by whole device steps, clamped to the range."""
        current = self._model.current_snapshot().value(zone, "volume")
        if current is None:
            raise _invalid(f"Volume of {zone} is unknown")
        low, high, step = self._model.capabilities.volume_range
        target = current + (step * steps if up else -step * steps)
        return await self.dispatch(zone, "volume", min(max(target, low), high))


def _invalid(message: str) -> CommandError:
    return CommandError(CommandErrorKind.INVALID_VALUE, message)


def _matches(current: Any, desired: Any) -> bool:
    if isinstance(desired, float) and isinstance(current, (int, float)):
        return math.isclose(current, desired, abs_tol=1e-6)
    return current == desired
