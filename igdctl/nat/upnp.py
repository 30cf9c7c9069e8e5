"""UPnP IGD (Internet Gateway Device) discovery and control over the LAN.

Implements the device/service/discovery interfaces of
``igdctl.nat.device`` with SSDP over asyncio datagrams, device
descriptions fetched with aiohttp and SOAP control actions.
"""

from __future__ import annotations

import asyncio
import logging
import socket
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from urllib.parse import urljoin, urlparse
from xml.sax.saxutils import escape

import aiohttp
import defusedxml.ElementTree as ET  # noqa: N817

from igdctl.models import UPnPConfig
from igdctl.nat.device import DeviceEvent, DeviceEventKind
from igdctl.nat.exceptions import DiscoveryClosedError, UPnPError

logger = logging.getLogger(__name__)

# SSDP constants
SSDP_MULTICAST_IP = "239.255.255.250"
SSDP_MULTICAST_PORT = 1900
SSDP_DEFAULT_MAX_AGE = 1800

# Search targets sent in every M-SEARCH round
UPNP_IGD_DEVICE_TYPES = (
    "urn:schemas-upnp-org:device:InternetGatewayDevice:1",
    "urn:schemas-upnp-org:device:InternetGatewayDevice:2",
)

DEVICE_NS = {"device": "urn:schemas-upnp-org:device-1-0"}
SOAP_NS = {"soap": "http://schemas.xmlsoap.org/soap/envelope/"}
CONTROL_NS = {"upnp": "urn:schemas-upnp-org:control-1-0"}

# Common UPnP error codes and what they usually mean
UPNP_ERROR_HINTS = {
    "402": "Invalid Args",
    "501": "Action Failed",
    "606": "Action not authorized",
    "714": "NoSuchEntryInArray",
    "718": "ConflictInMappingEntry",
    "724": "SamePortValuesRequired",
    "725": "OnlyPermanentLeasesSupported",
    "726": "RemoteHostOnlySupportsWildcard",
}


def build_msearch_request(search_target: str, mx: int = 3) -> bytes:
    """Build SSDP M-SEARCH request (UPnP Device Architecture 1.1)."""
    msg = (
        "M-SEARCH * HTTP/1.1\r\n"
        f"HOST: {SSDP_MULTICAST_IP}:{SSDP_MULTICAST_PORT}\r\n"
        'MAN: "ssdp:discover"\r\n'
        f"MX: {mx}\r\n"
        f"ST: {search_target}\r\n"
        "\r\n"
    )
    return msg.encode("utf-8")


def parse_ssdp_response(response: bytes) -> tuple[str, dict[str, str]]:
    """Split an SSDP datagram into its start line and lower-cased headers."""
    headers: dict[str, str] = {}
    lines = response.decode("utf-8", errors="ignore").split("\r\n")
    start_line = lines[0].strip() if lines else ""
    for line in lines[1:]:
        if ":" in line:
            key, value = line.split(":", 1)
            headers[key.strip().lower()] = value.strip()
    return start_line, headers


def parse_max_age(cache_control: str | None) -> int:
    """Extract ``max-age`` from a CACHE-CONTROL header."""
    if not cache_control:
        return SSDP_DEFAULT_MAX_AGE
    for directive in cache_control.split(","):
        name, _, value = directive.partition("=")
        if name.strip().lower() == "max-age":
            try:
                return max(int(value.strip()), 1)
            except ValueError:
                break
    return SSDP_DEFAULT_MAX_AGE


def udn_from_usn(usn: str) -> str:
    """``uuid:abc::urn:...`` -> ``uuid:abc``."""
    return usn.split("::", 1)[0].strip()


def is_gateway_advertisement(headers: dict[str, str]) -> bool:
    """Whether an SSDP search response or NOTIFY names an IGD root device."""
    target = headers.get("st") or headers.get("nt") or ""
    return "InternetGatewayDevice" in target


def local_address_for(host: str) -> str | None:
    """Return the local address the kernel would use to reach ``host``."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        # No packet is sent; connect() only selects a route
        sock.connect((host, SSDP_MULTICAST_PORT))
        return sock.getsockname()[0]
    except OSError as e:
        logger.debug("Could not determine local address towards %s: %s", host, e)
        return None
    finally:
        sock.close()


@dataclass(eq=False)
class UPnPService:
    """A service entry of a device description, controllable over SOAP."""

    service_type: str
    service_id: str
    control_url: str
    scpd_url: str = ""
    event_sub_url: str = ""
    timeout: float = 10.0

    async def invoke_action(
        self, name: str, args: dict[str, str]
    ) -> tuple[bool, dict[str, str]]:
        """Run a control action; any failure is reported as ``(False, {})``."""
        try:
            output = await send_soap_action(
                self.control_url, name, self.service_type, args, timeout=self.timeout
            )
        except UPnPError as e:
            logger.debug("%s on %s failed: %s", name, self.control_url, e)
            return False, {}
        return True, output


@dataclass(eq=False)
class UPnPDevice:
    """A device from a description document. Identity is its UDN."""

    device_type: str
    friendly_name: str
    udn: str
    location: str
    interface_address: str | None = None
    root: bool = False
    children: list[UPnPDevice] = field(default_factory=list)
    services: dict[str, UPnPService] = field(default_factory=dict)

    @property
    def is_root_device(self) -> bool:
        return self.root

    @property
    def child_devices(self) -> list[UPnPDevice]:
        return self.children

    def service(self, service_type: str) -> UPnPService | None:
        return self.services.get(service_type)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, UPnPDevice):
            return NotImplemented
        if self.udn and other.udn:
            return self.udn == other.udn
        return self.location == other.location and self.udn == other.udn

    def __hash__(self) -> int:
        return hash(self.udn or self.location)

    def __repr__(self) -> str:
        return f"UPnPDevice({self.friendly_name!r}, {self.device_type!r}, {self.udn!r})"


def _text(elem, path: str) -> str:
    found = elem.find(path, DEVICE_NS)
    if found is None or found.text is None:
        return ""
    return found.text.strip()


def _parse_device(
    elem,
    base_url: str,
    location: str,
    interface_address: str | None,
    root: bool,
    timeout: float,
) -> UPnPDevice:
    device = UPnPDevice(
        device_type=_text(elem, "device:deviceType"),
        friendly_name=_text(elem, "device:friendlyName"),
        udn=_text(elem, "device:UDN"),
        location=location,
        interface_address=interface_address,
        root=root,
    )

    for service_elem in elem.findall("device:serviceList/device:service", DEVICE_NS):
        service_type = _text(service_elem, "device:serviceType")
        control_path = _text(service_elem, "device:controlURL")
        if not service_type or not control_path:
            logger.debug(
                "Skipping incomplete service entry in %s", device.friendly_name
            )
            continue
        device.services[service_type] = UPnPService(
            service_type=service_type,
            service_id=_text(service_elem, "device:serviceId"),
            control_url=urljoin(base_url, control_path),
            scpd_url=urljoin(base_url, _text(service_elem, "device:SCPDURL")),
            event_sub_url=urljoin(base_url, _text(service_elem, "device:eventSubURL")),
            timeout=timeout,
        )

    for child_elem in elem.findall("device:deviceList/device:device", DEVICE_NS):
        device.children.append(
            _parse_device(
                child_elem, base_url, location, interface_address, False, timeout
            )
        )
    return device


def parse_device_description(
    xml_content: str,
    location: str,
    interface_address: str | None = None,
    timeout: float = 10.0,
) -> UPnPDevice:
    """Parse a device description document into a device tree.

    Raises:
        UPnPError: If the document is not a valid UPnP description

    """
    try:
        # Description from the local network, parsed with defusedxml
        root = ET.fromstring(xml_content)  # noqa: S314
    except ET.ParseError as e:
        msg = f"Failed to parse device description XML: {e}"
        raise UPnPError(msg, {"location": location}) from e

    device_elem = root.find("device:device", DEVICE_NS)
    if device_elem is None:
        msg = "Device description has no root device"
        raise UPnPError(msg, {"location": location})

    base_url = _text(root, "device:URLBase") or location
    return _parse_device(device_elem, base_url, location, interface_address, True, timeout)


async def fetch_device_description(location_url: str, timeout: float = 10.0) -> str:
    """Fetch a device description document.

    Raises:
        UPnPError: If unable to fetch it after one retry

    """
    max_retries = 2
    last_error: UPnPError | None = None

    for attempt in range(max_retries):
        try:
            async with aiohttp.ClientSession() as session, session.get(
                location_url, timeout=aiohttp.ClientTimeout(total=timeout)
            ) as response:
                if response.status == 200:
                    return await response.text()
                last_error = UPnPError(
                    f"Failed to fetch device description: HTTP {response.status}",
                    {"location": location_url},
                )
        except asyncio.TimeoutError as e:
            last_error = UPnPError(
                f"Timeout fetching device description: {e}", {"location": location_url}
            )
        except aiohttp.ClientError as e:
            last_error = UPnPError(
                f"Network error fetching device description: {e}",
                {"location": location_url},
            )

        if attempt < max_retries - 1:
            logger.debug(
                "Device description fetch failed (attempt %d/%d): %s, retrying...",
                attempt + 1,
                max_retries,
                last_error,
            )
            await asyncio.sleep(0.5)

    assert last_error is not None
    raise last_error


def build_soap_action(
    action_name: str,
    service_type: str,
    parameters: dict[str, str],
) -> str:
    """Build SOAP action request body."""
    param_xml = "\n".join(
        f"      <{key}>{escape(str(value))}</{key}>" for key, value in parameters.items()
    )

    return f"""<?xml version="1.0"?>
<s:Envelope xmlns:s="http://schemas.xmlsoap.org/soap/envelope/"
            s:encodingStyle="http://schemas.xmlsoap.org/soap/encoding/">
  <s:Body>
    <u:{action_name} xmlns:u="{service_type}">
{param_xml}
    </u:{action_name}>
  </s:Body>
</s:Envelope>"""


def parse_soap_response(response_xml: str, http_status: int) -> dict[str, str]:
    """Extract output arguments from a SOAP response.

    Raises:
        UPnPError: On SOAP faults, unparseable bodies or non-200 responses

    """
    try:
        root = ET.fromstring(response_xml)  # noqa: S314
    except ET.ParseError as e:
        msg = f"SOAP action failed: HTTP {http_status} (response not parseable as XML)"
        raise UPnPError(msg) from e

    fault = root.find(".//soap:Fault", SOAP_NS)
    if fault is not None:
        fault_string = fault.findtext("faultstring") or "Unknown error"
        error_code = fault.findtext(".//upnp:errorCode", namespaces=CONTROL_NS) or fault.findtext(
            ".//errorCode"
        )
        description = fault.findtext(
            ".//upnp:errorDescription", namespaces=CONTROL_NS
        ) or fault.findtext(".//errorDescription")
        details: dict[str, str] = {"http_status": str(http_status)}
        if error_code:
            details["error_code"] = error_code
            hint = UPNP_ERROR_HINTS.get(error_code)
            if hint:
                details["hint"] = hint
        if description:
            details["description"] = description
        msg = f"SOAP fault: {fault_string}"
        raise UPnPError(msg, details)

    if http_status != 200:
        msg = f"SOAP action failed: HTTP {http_status}"
        raise UPnPError(msg)

    response_params: dict[str, str] = {}
    body = root.find("soap:Body", SOAP_NS)
    if body is not None:
        for elem in body:
            if elem.tag.endswith("Response"):
                for child in elem:
                    tag_name = child.tag.split("}")[-1]
                    response_params[tag_name] = (child.text or "").strip()
                break
    return response_params


async def send_soap_action(
    control_url: str,
    action_name: str,
    service_type: str,
    parameters: dict[str, str],
    timeout: float = 10.0,
) -> dict[str, str]:
    """Send SOAP action request and parse response.

    Raises:
        UPnPError: If SOAP action fails

    """
    soap_body = build_soap_action(action_name, service_type, parameters)
    headers = {
        "Content-Type": 'text/xml; charset="utf-8"',
        "SOAPAction": f'"{service_type}#{action_name}"',
    }

    try:
        async with aiohttp.ClientSession() as session, session.post(
            control_url,
            data=soap_body,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as resp:
            response_xml = await resp.text()
            http_status = resp.status
    except asyncio.TimeoutError as e:
        msg = f"Timeout sending {action_name}"
        raise UPnPError(msg, {"control_url": control_url}) from e
    except aiohttp.ClientError as e:
        msg = f"Error sending {action_name}: {e}"
        raise UPnPError(msg, {"control_url": control_url}) from e

    return parse_soap_response(response_xml, http_status)


class _SSDPProtocol(asyncio.DatagramProtocol):
    """Hands every received datagram to a queue."""

    def __init__(self, queue: asyncio.Queue[tuple[bytes, tuple]]) -> None:
        self.queue = queue

    def datagram_received(self, data: bytes, addr: tuple) -> None:
        self.queue.put_nowait((data, addr))

    def error_received(self, exc: Exception) -> None:
        logger.debug("SSDP socket error: %s", exc)


@dataclass
class _KnownDevice:
    device: UPnPDevice
    expires_at: float


class SSDPDiscoverySource:
    """Discovery source announcing IGDs as they appear and disappear.

    A gateway is ``ADDED`` when first seen (search response or
    ``ssdp:alive``) and ``REMOVED`` on ``ssdp:byebye`` or when its
    advertisement expires without renewal.
    """

    def __init__(self, config: UPnPConfig | None = None) -> None:
        self.config = config or UPnPConfig()
        self.known: dict[str, _KnownDevice] = {}
        self._closed = False
        self._used = False
        self._transport: asyncio.DatagramTransport | None = None

    async def close(self) -> None:
        self._closed = True
        if self._transport is not None:
            self._transport.close()
            self._transport = None

    async def discover(self) -> AsyncIterator[DeviceEvent]:
        if self._closed or self._used:
            msg = "SSDP discovery source cannot be restarted"
            raise DiscoveryClosedError(msg)
        self._used = True

        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[tuple[bytes, tuple]] = asyncio.Queue()
        transport, _ = await loop.create_datagram_endpoint(
            lambda: _SSDPProtocol(queue), sock=self._open_socket()
        )
        self._transport = transport

        next_search = 0.0
        try:
            while not self._closed:
                now = loop.time()
                if now >= next_search:
                    self._send_search(transport)
                    next_search = now + self.config.ssdp_search_interval

                for event in self._expire(time.monotonic()):
                    yield event

                try:
                    data, addr = await asyncio.wait_for(queue.get(), timeout=1.0)
                except asyncio.TimeoutError:
                    continue

                event = await self._handle_datagram(data, addr)
                if event is not None:
                    yield event
        finally:
            await self.close()

    def _open_socket(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, 2)
        try:
            sock.bind(("", self.config.ssdp_bind_port))  # nosec B104 - SSDP listens on all interfaces
        except OSError as e:
            logger.debug(
                "Cannot bind SSDP port %d (%s), NOTIFY announcements will be missed",
                self.config.ssdp_bind_port,
                e,
            )
            sock.bind(("", 0))  # nosec B104

        mreq = socket.inet_aton(SSDP_MULTICAST_IP) + socket.inet_aton("0.0.0.0")  # nosec B104
        try:
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, mreq)
        except OSError as e:
            logger.debug("Failed to join SSDP multicast group (may be normal): %s", e)
        sock.setblocking(False)
        return sock

    def _send_search(self, transport: asyncio.DatagramTransport) -> None:
        for search_target in UPNP_IGD_DEVICE_TYPES:
            request = build_msearch_request(search_target, self.config.ssdp_mx)
            try:
                transport.sendto(request, (SSDP_MULTICAST_IP, SSDP_MULTICAST_PORT))
            except OSError as e:
                logger.debug("Failed to send M-SEARCH for %s: %s", search_target, e)

    def _expire(self, now: float) -> list[DeviceEvent]:
        expired = [udn for udn, known in self.known.items() if known.expires_at < now]
        events = []
        for udn in expired:
            known = self.known.pop(udn)
            logger.info("UPnP device %s advertisement expired", known.device.friendly_name)
            events.append(DeviceEvent(DeviceEventKind.REMOVED, known.device))
        return events

    async def _handle_datagram(self, data: bytes, addr: tuple) -> DeviceEvent | None:
        start_line, headers = parse_ssdp_response(data)
        if start_line.startswith("M-SEARCH"):
            return None

        udn = udn_from_usn(headers.get("usn", ""))
        if not udn:
            return None

        if headers.get("nts", "").lower() == "ssdp:byebye":
            known = self.known.pop(udn, None)
            if known is None:
                return None
            logger.info("UPnP device %s said goodbye", known.device.friendly_name)
            return DeviceEvent(DeviceEventKind.REMOVED, known.device)

        if not is_gateway_advertisement(headers):
            return None

        expires_at = time.monotonic() + parse_max_age(headers.get("cache-control"))
        known = self.known.get(udn)
        if known is not None:
            known.expires_at = expires_at
            return None

        location = headers.get("location", "")
        if not location:
            return None

        device = await self._load_device(location, addr[0])
        if device is None:
            return None
        self.known[udn] = _KnownDevice(device, expires_at)
        return DeviceEvent(DeviceEventKind.ADDED, device)

    async def _load_device(self, location: str, sender: str) -> UPnPDevice | None:
        host = urlparse(location).hostname or sender
        interface_address = self.config.internal_client or local_address_for(host)
        try:
            xml_content = await fetch_device_description(
                location, timeout=self.config.description_timeout
            )
            return parse_device_description(
                xml_content,
                location,
                interface_address=interface_address,
                timeout=self.config.soap_timeout,
            )
        except UPnPError as e:
            # Retried on the next advertisement
            logger.warning("Ignoring UPnP device at %s: %s", location, e)
            return None

