"""Exceptions for the Yamaha YNC client."""

from enum import Enum


class YncError(Exception):
    """Base exception for YNC client."""


class DecodeError(YncError):
    """Response payload could not be decoded."""

    def __init__(self, reason: str = "malformed", detail: str = "") -> None:
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason}: {detail}" if detail else reason)


class ResponseError(YncError):
    """Device answered with a non-zero response code."""

    def __init__(self, code: str, payload: str = "") -> None:
        self.code = code
        self.payload = payload
        super().__init__(f"Device returned RC={code}")


class ArbiterErrorKind(Enum):
    """Failure classes of a single device exchange."""

    TIMEOUT = "timeout"
    CONNECTION_REFUSED = "connection_refused"
    UNREACHABLE = "unreachable"
    ADDRESS_UNRESOLVED = "address_unresolved"


class ArbiterError(YncError):
    """Device exchange failed. Never retried by the arbiter itself."""

    def __init__(self, kind: ArbiterErrorKind, message: str = "") -> None:
        self.kind = kind
        super().__init__(message or kind.value)


class CommandErrorKind(Enum):
    """Outcome classes of a rejected or unresolved command."""

    INVALID_VALUE = "invalid_value"
    UNCONFIRMED = "unconfirmed"
    REJECTED = "rejected"


class CommandError(YncError):
    """Command could not be applied or confirmed."""

    def __init__(self, kind: CommandErrorKind, message: str = "") -> None:
        self.kind = kind
        super().__init__(message or kind.value)


class DiscoveryError(YncError):
    """Discovery failed. Callers treat this as an empty result."""


class DeviceNotFoundError(DiscoveryError):
    """No announcement for the requested device identity."""
