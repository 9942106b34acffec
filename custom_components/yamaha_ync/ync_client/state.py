"""In-memory zone/state model for a Yamaha YNC receiver."""

import logging
import time
from dataclasses import replace
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

from .models import (
    SYSTEM,
    SYSTEM_FIELDS,
    ZONE_FIELDS,
    Capabilities,
    Change,
    StateSnapshot,
    ZoneState,
    freeze_zones,
)

_LOGGER = logging.getLogger(__name__)


class StateModel:
    """Owns the StateSnapshot of one device.

    The snapshot is never mutated. Each update builds a new one from the
    previous snapshot plus the decoded values of one read cycle and swaps it
    in with a single assignment, so readers see either the old or the new
    cycle and never a mix.
    """

    def __init__(self, capabilities: Optional[Capabilities] = None) -> None:
        self._capabilities = capabilities or Capabilities()
        self._snapshot = StateSnapshot()

    @property
    def capabilities(self) -> Capabilities:
        """Capability set bounding the zone set."""
        return self._capabilities

    @capabilities.setter
    def capabilities(self, capabilities: Capabilities) -> None:
        self._capabilities = capabilities
        # Zones no longer declared are dropped from the snapshot
        zones = {
            zone_id: state
            for zone_id, state in self._snapshot.zones.items()
            if capabilities.has_zone(zone_id)
        }
        if len(zones) != len(self._snapshot.zones):
            self._snapshot = replace(self._snapshot, zones=freeze_zones(zones))

    def current_snapshot(self) -> StateSnapshot:
        """Last merged state (read-only)."""
        return self._snapshot

    def apply_update(self, values: Mapping[str, Mapping[str, Any]]) -> List[Change]:
        """Merge decoded values of one read cycle.

        Args:
            values: {zone_id or "system": {field: value}}

        Returns:
            Changes that actually happened, in input order
        """
        changes: List[Change] = []
        snapshot = self._snapshot
        zones: Dict[str, ZoneState] = dict(snapshot.zones)
        system: Dict[str, Any] = dict(snapshot.system)

        for zone, zone_values in values.items():
            if zone == SYSTEM:
                for name, new in zone_values.items():
                    if name not in SYSTEM_FIELDS:
                        _LOGGER.debug("Ignoring unknown system field %s", name)
                        continue
                    old = system.get(name)
                    if old != new:
                        system[name] = new
                        changes.append(Change(SYSTEM, name, old, new))
                continue

            if not self._capabilities.has_zone(zone):
                _LOGGER.warning("Ignoring update for undeclared zone %s", zone)
                continue

            state = zones.get(zone) or ZoneState(zone_id=zone)
            updates = {}
            for name, new in zone_values.items():
                if name not in ZONE_FIELDS:
                    _LOGGER.debug("Ignoring unknown field %s.%s", zone, name)
                    continue
                old = getattr(state, name)
                if old != new:
                    updates[name] = new
                    changes.append(Change(zone, name, old, new))
            if updates or zone not in zones:
                zones[zone] = replace(state, **updates)

        self._snapshot = StateSnapshot(
            zones=freeze_zones(zones),
            system=MappingProxyType(system),
            updated_at=time.time(),
            stale=False,
        )
        if changes:
            _LOGGER.debug("state: applied changes=%d", len(changes))
        return changes

    def seed(self, values: Mapping[str, Mapping[str, Any]]) -> None:
        """Load a cached baseline. Emits no changes and stays stale."""
        self.apply_update(values)
        self.mark_stale()

    def mark_stale(self) -> None:
        """Flag the snapshot as not confirmed by the device. Values are kept."""
        if not self._snapshot.stale:
            self._snapshot = replace(self._snapshot, stale=True)
