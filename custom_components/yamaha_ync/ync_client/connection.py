"""Single-session HTTP connection arbiter for Yamaha YNC receivers.

YNC receivers serve one control connection at a time; a second concurrent
request is refused or stalls both. Every exchange with a device therefore goes
through one SessionArbiter, which hands out a single Session lease at a time:

    ┌──────────────────────────────────────────────────────────┐
    │                     SessionArbiter                       │
    ├──────────────────────────────────────────────────────────┤
    │  gate: asyncio.Lock (fair, FIFO)                         │
    │  - pollers, push handlers and commands queue alike       │
    │  - a lease is bounded by lease_timeout                   │
    │                                                          │
    │  Session (the lease)                                     │
    │  - request(): one POST to /YamahaRemoteControl/ctrl      │
    │  - fetch():   one GET for descriptor documents           │
    │  - every exchange bounded by the per-request timeout     │
    └──────────────────────────────────────────────────────────┘

Failures are classified once and raised as ArbiterError. The arbiter never
retries; callers decide based on read or write semantics.
"""

import asyncio
import contextlib
import errno
import itertools
import logging
import socket
import time
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional, TypeVar

import aiohttp

from .exceptions import ArbiterError, ArbiterErrorKind

_LOGGER = logging.getLogger(__name__)

CONTROL_PATH = "/YamahaRemoteControl/ctrl"
DEFAULT_TIMEOUT = 5.0
DEFAULT_LEASE_TIMEOUT = 30.0

# Trace ID counter for instrumentation
_trace_counter = itertools.count(1)

T = TypeVar("T")


def classify_error(err: BaseException) -> ArbiterErrorKind:
    """Map a transport exception to an arbiter failure class."""
    if isinstance(err, (asyncio.TimeoutError, aiohttp.ServerTimeoutError)):
        return ArbiterErrorKind.TIMEOUT
    if isinstance(err, aiohttp.ClientConnectorError):
        os_error = getattr(err, "os_error", None)
        if isinstance(os_error, socket.gaierror):
            return ArbiterErrorKind.ADDRESS_UNRESOLVED
        if isinstance(os_error, ConnectionRefusedError) or (
            getattr(os_error, "errno", None) == errno.ECONNREFUSED
        ):
            return ArbiterErrorKind.CONNECTION_REFUSED
        return ArbiterErrorKind.UNREACHABLE
    if isinstance(err, socket.gaierror):
        return ArbiterErrorKind.ADDRESS_UNRESOLVED
    if isinstance(err, ConnectionRefusedError):
        return ArbiterErrorKind.CONNECTION_REFUSED
    return ArbiterErrorKind.UNREACHABLE


class Session:
    """Exclusive lease on the device connection.

    Only valid inside SessionArbiter.session() / with_session().
    """

    def __init__(self, arbiter: "SessionArbiter", lease_id: int) -> None:
        self._arbiter = arbiter
        self.lease_id = lease_id
        self._active = True
        self.exchanges = 0

    @property
    def active(self) -> bool:
        """Check if the lease is still held."""
        return self._active

    def _close(self) -> None:
        self._active = False

    async def request(
        self, payload: str, headers: Optional[Dict[str, str]] = None
    ) -> str:
        """POST an XML command document and return the response body.

        Raises:
            ArbiterError: timeout, refused, unreachable or unresolved address
        """
        all_headers = {"Content-Type": "text/xml; charset=utf-8"}
        if headers:
            all_headers.update(headers)
        return await self._exchange(
            "POST", self._arbiter.control_url, payload.encode("utf-8"), all_headers
        )

    async def fetch(self, path: str) -> str:
        """GET a document (desc.xml) from the device."""
        return await self._exchange("GET", self._arbiter.url_for(path), None, None)

    async def _exchange(
        self,
        method: str,
        url: str,
        data: Optional[bytes],
        headers: Optional[Dict[str, str]],
    ) -> str:
        if not self._active:
            raise RuntimeError("Session used outside its lease")

        trace_id = next(_trace_counter)
        io_start = time.monotonic()
        self.exchanges += 1
        http = await self._arbiter._get_http()
        try:
            async with http.request(
                method,
                url,
                data=data,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self._arbiter.timeout),
            ) as response:
                if response.status >= 400:
                    raise ArbiterError(
                        ArbiterErrorKind.UNREACHABLE,
                        f"HTTP {response.status} from {url}",
                    )
                body = await response.text()
        except ArbiterError as err:
            io_ms = int((time.monotonic() - io_start) * 1000)
            _LOGGER.warning(
                "req id=%d lease=%d %s %s io_ms=%d ok=false err=%s",
                trace_id, self.lease_id, method, url, io_ms, err,
            )
            raise
        except (asyncio.TimeoutError, aiohttp.ClientError, OSError) as err:
            kind = classify_error(err)
            io_ms = int((time.monotonic() - io_start) * 1000)
            _LOGGER.warning(
                "req id=%d lease=%d %s %s io_ms=%d ok=false err=%s",
                trace_id, self.lease_id, method, url, io_ms, kind.value,
            )
            raise ArbiterError(kind, f"{kind.value}: {err or type(err).__name__}") from err

        io_ms = int((time.monotonic() - io_start) * 1000)
        _LOGGER.debug(
            "req id=%d lease=%d %s io_ms=%d bytes=%d ok=true",
            trace_id, self.lease_id, method, io_ms, len(body),
        )
        return body


class SessionArbiter:
    """Serializes all access to one device into a single Session at a time."""

    # Warning threshold for lease wait time
    LEASE_WAIT_WARNING_MS = 2000

    def __init__(
        self,
        host: str,
        port: int = 80,
        timeout: float = DEFAULT_TIMEOUT,
        lease_timeout: float = DEFAULT_LEASE_TIMEOUT,
        http_session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        """Initialize arbiter.

        Args:
            host: Device IP address or hostname
            port: HTTP port (default 80)
            timeout: Per-exchange timeout in seconds
            lease_timeout: Upper bound for holding one lease
            http_session: Shared aiohttp session; one is created when omitted
        """
        self.host = host
        self.port = port
        self.timeout = timeout
        self.lease_timeout = lease_timeout

        self._http = http_session
        self._owns_http = http_session is None
        self._gate = asyncio.Lock()
        self._lease_counter = itertools.count(1)
        self._current: Optional[Session] = None
        self._waiting = 0
        self._in_flight = 0
        self.max_in_flight = 0

    @property
    def control_url(self) -> str:
        """URL of the YNC control endpoint."""
        return self.url_for(CONTROL_PATH)

    def url_for(self, path: str) -> str:
        """Absolute URL for a device path."""
        return f"http://{self.host}:{self.port}{path}"

    @property
    def is_lock_available(self) -> bool:
        """Check if no lease is held."""
        return not self._gate.locked()

    @property
    def queue_depth(self) -> int:
        """Number of callers waiting for the lease."""
        return self._waiting

    @property
    def in_flight(self) -> int:
        """Number of leases currently held (0 or 1)."""
        return self._in_flight

    def update_address(self, host: str, port: Optional[int] = None) -> None:
        """Point the arbiter at a rediscovered address."""
        if host != self.host or (port is not None and port != self.port):
            _LOGGER.info("Device address changed %s:%d -> %s:%s", self.host, self.port, host, port or self.port)
        self.host = host
        if port is not None:
            self.port = port

    async def _get_http(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession()
            self._owns_http = True
        return self._http

    @contextlib.asynccontextmanager
    async def session(self) -> AsyncIterator[Session]:
        """Acquire the lease, FIFO with all other callers."""
        queued_at = time.monotonic()
        self._waiting += 1
        try:
            await self._gate.acquire()
        finally:
            self._waiting -= 1

        wait_ms = int((time.monotonic() - queued_at) * 1000)
        lease = Session(self, next(self._lease_counter))
        self._current = lease
        self._in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self._in_flight)
        if wait_ms > self.LEASE_WAIT_WARNING_MS:
            _LOGGER.warning(
                "lease id=%d wait_ms=%d (slow - device busy)", lease.lease_id, wait_ms
            )
        else:
            _LOGGER.debug("lease id=%d wait_ms=%d acquired", lease.lease_id, wait_ms)
        try:
            yield lease
        finally:
            lease._close()
            self._current = None
            self._in_flight -= 1
            self._gate.release()
            _LOGGER.debug(
                "lease id=%d exchanges=%d released", lease.lease_id, lease.exchanges
            )

    async def with_session(self, fn: Callable[[Session], Awaitable[T]]) -> T:
        """Run fn with exclusive access to the device.

        The lease is released when fn returns, raises, is cancelled or
        exceeds lease_timeout.

        Raises:
            ArbiterError: exchange failure, or TIMEOUT when the lease expired
        """
        async with self.session() as lease:
            try:
                return await asyncio.wait_for(fn(lease), timeout=self.lease_timeout)
            except asyncio.TimeoutError as err:
                _LOGGER.error(
                    "lease id=%d expired after %.1fs, releasing",
                    lease.lease_id, self.lease_timeout,
                )
                raise ArbiterError(
                    ArbiterErrorKind.TIMEOUT,
                    f"Lease held longer than {self.lease_timeout}s",
                ) from err

    async def request(self, payload: str, headers: Optional[Dict[str, str]] = None) -> str:
        """One exchange in its own lease."""
        return await self.with_session(lambda s: s.request(payload, headers))

    async def close(self) -> None:
        """Close the HTTP session if this arbiter created it."""
        if self._owns_http and self._http is not None and not self._http.closed:
            await self._http.close()
        self._http = None
