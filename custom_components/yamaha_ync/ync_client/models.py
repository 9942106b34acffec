"""Data models for Yamaha YNC receivers."""

import asyncio
import time
from dataclasses import dataclass, field, fields, replace
from types import MappingProxyType
from typing import Any, Callable, Dict, Mapping, NamedTuple, Optional, Protocol, Tuple

# Pseudo scope for device-wide values (party mode). Never a zone id.
SYSTEM = "system"

DEFAULT_VOLUME_RANGE = (-80.5, 16.5, 0.5)  # min dB, max dB, step


@dataclass(frozen=True)
class Capabilities:
    """What the device declared it supports."""

    zones: Tuple[str, ...] = ("main",)
    inputs: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)
    sound_programs: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)
    volume_range: Tuple[float, float, float] = DEFAULT_VOLUME_RANGE
    features: frozenset = frozenset()

    def has_zone(self, zone: str) -> bool:
        """Check if the zone was declared."""
        return zone in self.zones

    def inputs_for(self, zone: str) -> Tuple[str, ...]:
        """Inputs selectable in a zone."""
        return tuple(self.inputs.get(zone, ()))

    def programs_for(self, zone: str) -> Tuple[str, ...]:
        """Sound programs selectable in a zone."""
        return tuple(self.sound_programs.get(zone, ()))

    def restrict(self, zones) -> "Capabilities":
        """Limit the zone set to an override, keeping declared order."""
        if not zones:
            return self
        wanted = set(zones)
        return replace(self, zones=tuple(z for z in self.zones if z in wanted))


@dataclass(frozen=True)
class DeviceDescriptor:
    """Identity and reachability of a receiver."""

    device_id: str
    host: str
    port: int = 80
    model: str = "Unknown"
    firmware: Optional[str] = None
    discovered: bool = False
    location: Optional[str] = None
    capabilities: Capabilities = field(default_factory=Capabilities)

    def with_address(self, host: str, port: Optional[int] = None) -> "DeviceDescriptor":
        """Return a copy pointing at a refreshed address."""
        return replace(self, host=host, port=port if port is not None else self.port)


@dataclass(frozen=True)
class ZoneState:
    """Represents the current state of a zone. None means unknown."""

    zone_id: str
    power: Optional[bool] = None
    volume: Optional[float] = None  # dB, device-native range
    mute: Optional[bool] = None
    input: Optional[str] = None
    sound_program: Optional[str] = None
    straight: Optional[bool] = None
    pure_direct: Optional[bool] = None
    ypao_volume: Optional[bool] = None

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"ZoneState(zone={self.zone_id}, power={self.power}, "
            f"volume={self.volume}, mute={self.mute}, input={self.input})"
        )


ZONE_FIELDS = tuple(f.name for f in fields(ZoneState) if f.name != "zone_id")
SYSTEM_FIELDS = ("party_mode",)


@dataclass(frozen=True)
class StateSnapshot:
    """Last known good state of a device, replaced as a whole."""

    zones: Mapping[str, ZoneState] = field(default_factory=lambda: MappingProxyType({}))
    system: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    updated_at: float = 0.0
    stale: bool = True

    def value(self, zone: str, name: str) -> Any:
        """Look up one value, None if unknown."""
        if zone == SYSTEM:
            return self.system.get(name)
        state = self.zones.get(zone)
        return getattr(state, name, None) if state else None


class Change(NamedTuple):
    """A value that actually changed."""

    zone: str
    field: str
    old: Any
    new: Any


@dataclass(frozen=True)
class CommandIntent:
    """Request to set a zone (or system) field to a value."""

    zone: str
    field: str
    value: Any


@dataclass(frozen=True)
class Ack:
    """Accepted command."""

    zone: str
    field: str
    value: Any
    confirmed: bool


@dataclass
class PendingCommand:
    """Command waiting for a confirming state update."""

    zone: str
    field: str
    value: Any
    created_at: float = field(default_factory=time.monotonic)
    future: asyncio.Future = field(
        default_factory=lambda: asyncio.get_running_loop().create_future()
    )

    @property
    def key(self) -> Tuple[str, str]:
        """Slot this command occupies."""
        return (self.zone, self.field)

    def resolve(self, confirmed: bool) -> None:
        """Resolve the command."""
        if not self.future.done():
            self.future.set_result(confirmed)


CommandHandler = Callable[[str, str, Any], Any]


class StateStore(Protocol):
    """External key-value store that mirrors the device state."""

    def read_cached(self, zone: str, name: str) -> Any:
        """Return the cached value or None when absent."""

    def publish(self, zone: str, name: str, value: Any, confirmed: bool) -> None:
        """Publish one value."""

    def on_command_requested(self, handler: CommandHandler) -> Callable[[], None]:
        """Register the handler for external command intents. Returns an unsubscribe callable."""


def freeze_zones(zones: Dict[str, ZoneState]) -> Mapping[str, ZoneState]:
    """Read-only view for a snapshot."""
    return MappingProxyType(dict(zones))
