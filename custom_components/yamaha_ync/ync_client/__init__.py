"""Yamaha YNC async client library."""

from .client import YncClient
from .codec import STRAIGHT
from .discovery import DiscoveryClient
from .dispatcher import CommandDispatcher, ConfirmMode
from .engine import EngineState, UpdateEngine
from .exceptions import (
    ArbiterError,
    ArbiterErrorKind,
    CommandError,
    CommandErrorKind,
    DecodeError,
    DeviceNotFoundError,
    DiscoveryError,
    ResponseError,
    YncError,
)
from .models import (
    SYSTEM,
    Ack,
    Capabilities,
    Change,
    DeviceDescriptor,
    StateSnapshot,
    StateStore,
    ZoneState,
)

__all__ = [
    "STRAIGHT",
    "SYSTEM",
    "Ack",
    "ArbiterError",
    "ArbiterErrorKind",
    "Capabilities",
    "Change",
    "CommandDispatcher",
    "CommandError",
    "CommandErrorKind",
    "ConfirmMode",
    "DecodeError",
    "DeviceDescriptor",
    "DeviceNotFoundError",
    "DiscoveryClient",
    "DiscoveryError",
    "EngineState",
    "ResponseError",
    "StateSnapshot",
    "StateStore",
    "UpdateEngine",
    "YncClient",
    "YncError",
    "ZoneState",
]
