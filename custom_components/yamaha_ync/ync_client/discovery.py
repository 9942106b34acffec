"""SSDP discovery of Yamaha YNC receivers.

One pass sends an M-SEARCH to the SSDP multicast group and collects unicast
responses (and any NOTIFY ssdp:alive announcements that reach the socket)
until the timeout expires. A device may answer several times; only the most
recent address per identity is kept.

Other media renderers answer the same search. An announcement only counts
once its device description names Yamaha as manufacturer and lists a YNC
control URL.
"""

import asyncio
import logging
import time
import xml.etree.ElementTree as ET
from typing import AsyncIterator, Dict, NamedTuple, Optional, Tuple
from urllib.parse import urlparse

import aiohttp
from defusedxml import DefusedXmlException
from defusedxml import ElementTree as SafeET

from .exceptions import DeviceNotFoundError
from .models import DeviceDescriptor

_LOGGER = logging.getLogger(__name__)

SSDP_ADDR = ("239.255.255.250", 1900)
DEFAULT_SEARCH_TARGET = "urn:schemas-upnp-org:device:MediaRenderer:1"
DEFAULT_CONTROL_PORT = 80
DEFAULT_DISCOVERY_TIMEOUT = 5.0
DEFAULT_DESCRIPTION_TIMEOUT = 3.0

MANUFACTURER = "yamaha"
DEVICE_NS = "{urn:schemas-upnp-org:device-1-0}"
YAMAHA_NS = "{urn:schemas-yamaha-com:device-1-0}"
MANUFACTURER_QUERY = f"{DEVICE_NS}device/{DEVICE_NS}manufacturer"
MODEL_NAME_QUERY = f"{DEVICE_NS}device/{DEVICE_NS}modelName"
CONTROL_URL_QUERY = f".//{YAMAHA_NS}X_controlURL"


class Announcement(NamedTuple):
    """Identifying fields of one SSDP response or NOTIFY."""

    device_id: str
    location: str
    host: str
    model: Optional[str]
    received_at: float


def build_msearch(search_target: str = DEFAULT_SEARCH_TARGET, mx: int = 2) -> bytes:
    """M-SEARCH request datagram."""
    return (
        "M-SEARCH * HTTP/1.1\r\n"
        f"HOST: {SSDP_ADDR[0]}:{SSDP_ADDR[1]}\r\n"
        'MAN: "ssdp:discover"\r\n'
        f"MX: {mx}\r\n"
        f"ST: {search_target}\r\n"
        "\r\n"
    ).encode("utf-8")


def parse_announcement(data: bytes, addr: Tuple[str, int]) -> Optional[Announcement]:
    """Parse an SSDP response or NOTIFY. Returns None for anything unusable."""
    text = data.decode("utf-8", errors="ignore")
    lines = [line.strip() for line in text.split("\r\n") if line.strip()]
    if not lines:
        return None

    start = lines[0].upper()
    if not (start.startswith("HTTP/1.1 200") or start.startswith("NOTIFY ")):
        return None

    headers: Dict[str, str] = {}
    for line in lines[1:]:
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        headers[key.strip().lower()] = value.strip()

    if headers.get("nts") == "ssdp:byebye":
        return None

    usn = headers.get("usn")
    location = headers.get("location")
    if not usn or not location:
        return None

    # USN is "uuid:<udn>::<type>"; the udn part is the device identity
    device_id = usn.split("::", 1)[0]
    if device_id.lower().startswith("uuid:"):
        device_id = device_id[5:]

    host = urlparse(location).hostname or addr[0]
    model = headers.get("x-modelname") or headers.get("server")
    return Announcement(device_id, location, host, model, time.monotonic())


def parse_description(payload) -> Optional[str]:
    """Check a UPnP device description for a Yamaha YNC receiver.

    Returns:
        Model name ("" when the description has none), or None for any
        other device
    """
    try:
        root = SafeET.fromstring(payload)
    except (ET.ParseError, DefusedXmlException) as err:
        _LOGGER.debug("Unreadable device description: %s", err)
        return None
    manufacturer = root.findtext(MANUFACTURER_QUERY) or ""
    if MANUFACTURER not in manufacturer.lower():
        return None
    if root.find(CONTROL_URL_QUERY) is None:
        return None
    return (root.findtext(MODEL_NAME_QUERY) or "").strip()


class _SsdpProtocol(asyncio.DatagramProtocol):
    """Feeds received datagrams into the discovery queue."""

    def __init__(self, queue: "asyncio.Queue[Announcement]", message: bytes) -> None:
        self._queue = queue
        self._message = message
        self.transport: Optional[asyncio.DatagramTransport] = None

    def connection_made(self, transport) -> None:
        self.transport = transport
        try:
            transport.sendto(self._message, SSDP_ADDR)
        except OSError as err:
            _LOGGER.warning("Failed to send M-SEARCH: %s", err)

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        announcement = parse_announcement(data, addr)
        if announcement is None:
            _LOGGER.debug("Ignoring SSDP datagram from %s", addr[0])
            return
        self._queue.put_nowait(announcement)

    def error_received(self, exc: Exception) -> None:
        _LOGGER.debug("SSDP socket error: %s", exc)


class DiscoveryClient:
    """Finds receivers on the local network."""

    def __init__(
        self,
        search_target: str = DEFAULT_SEARCH_TARGET,
        mx: int = 2,
        control_port: int = DEFAULT_CONTROL_PORT,
        local_addr: Tuple[str, int] = ("0.0.0.0", 0),
        http_session: Optional[aiohttp.ClientSession] = None,
        description_timeout: float = DEFAULT_DESCRIPTION_TIMEOUT,
    ) -> None:
        self.search_target = search_target
        self.mx = mx
        self.control_port = control_port
        self.local_addr = local_addr
        self.description_timeout = description_timeout

        self._http_session = http_session
        self._devices: Dict[str, DeviceDescriptor] = {}
        # Model name per description URL, None for devices that are not receivers
        self._descriptions: Dict[str, Optional[str]] = {}
        self._stop_event = asyncio.Event()

    @property
    def devices(self) -> Dict[str, DeviceDescriptor]:
        """Most recent descriptor per device identity."""
        return dict(self._devices)

    def stop(self) -> None:
        """End the running discovery pass."""
        self._stop_event.set()

    async def _open_endpoint(self, queue: "asyncio.Queue[Announcement]"):
        loop = asyncio.get_running_loop()
        transport, _ = await loop.create_datagram_endpoint(
            lambda: _SsdpProtocol(queue, build_msearch(self.search_target, self.mx)),
            local_addr=self.local_addr,
        )
        return transport

    async def _fetch_description(self, location: str) -> str:
        timeout = aiohttp.ClientTimeout(total=self.description_timeout)
        if self._http_session is not None:
            async with self._http_session.get(location, timeout=timeout) as response:
                response.raise_for_status()
                return await response.text()
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(location) as response:
                response.raise_for_status()
                return await response.text()

    async def _identify(self, announcement: Announcement) -> Optional[str]:
        """Model name of a Yamaha YNC receiver, None for other devices."""
        location = announcement.location
        if location in self._descriptions:
            return self._descriptions[location]
        try:
            payload = await self._fetch_description(location)
        except (asyncio.TimeoutError, aiohttp.ClientError) as err:
            # Not cached, the next announcement tries again
            _LOGGER.debug("ssdp: description unavailable location=%s err=%s", location, err)
            return None
        model = parse_description(payload)
        self._descriptions[location] = model
        if model is None:
            _LOGGER.debug("ssdp: ignoring non-Yamaha device at %s", announcement.host)
        return model

    def _is_known(self, announcement: Announcement) -> bool:
        known = self._devices.get(announcement.device_id)
        return known is not None and known.host == announcement.host

    def _remember(
        self, announcement: Announcement, model: Optional[str] = None
    ) -> Optional[DeviceDescriptor]:
        """Store an announcement. Returns a descriptor if it is new or moved."""
        if self._is_known(announcement):
            return None

        known = self._devices.get(announcement.device_id)
        if known is None:
            descriptor = DeviceDescriptor(
                device_id=announcement.device_id,
                host=announcement.host,
                port=self.control_port,
                model=model or announcement.model or "Unknown",
                discovered=True,
                location=announcement.location,
            )
        else:
            _LOGGER.info(
                "Device %s moved from %s to %s",
                announcement.device_id, known.host, announcement.host,
            )
            descriptor = known.with_address(announcement.host)
        self._devices[announcement.device_id] = descriptor
        return descriptor

    async def discover(
        self, timeout: float = DEFAULT_DISCOVERY_TIMEOUT
    ) -> AsyncIterator[DeviceDescriptor]:
        """Run one discovery pass.

        Yields a descriptor whenever a device is first seen or its address
        changes. Terminates after timeout or stop(). Socket failures end the
        pass early with whatever was found.
        """
        self._stop_event.clear()
        queue: "asyncio.Queue[Announcement]" = asyncio.Queue()
        try:
            transport = await self._open_endpoint(queue)
        except OSError as err:
            _LOGGER.warning("ssdp: discovery unavailable err=%s", err)
            return

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        stop_wait = asyncio.ensure_future(self._stop_event.wait())
        try:
            while not self._stop_event.is_set():
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                get = asyncio.ensure_future(queue.get())
                done, _ = await asyncio.wait(
                    {get, stop_wait},
                    timeout=remaining,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if get not in done:
                    get.cancel()
                    continue
                announcement = get.result()
                if self._is_known(announcement):
                    continue
                model = await self._identify(announcement)
                if model is None:
                    continue
                descriptor = self._remember(announcement, model)
                if descriptor is not None:
                    _LOGGER.debug(
                        "ssdp: found id=%s host=%s model=%s",
                        descriptor.device_id, descriptor.host, descriptor.model,
                    )
                    yield descriptor
        finally:
            stop_wait.cancel()
            transport.close()

    async def resolve(
        self, device_id: str, timeout: float = DEFAULT_DISCOVERY_TIMEOUT
    ) -> DeviceDescriptor:
        """Find the current address of a known device.

        Runs a full pass so a later announcement from a new address wins.

        Raises:
            DeviceNotFoundError: device did not announce itself
        """
        async for _ in self.discover(timeout):
            pass

        descriptor = self._devices.get(device_id)
        if descriptor is None:
            raise DeviceNotFoundError(f"Device {device_id} not found")
        return descriptor
