"""Device, service and discovery interfaces consumed by the controller.

The controller only talks to these structural types, so any UPnP stack
(or a test double) that provides them can drive it. ``igdctl.nat.upnp``
ships the default aiohttp-based implementation.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol, runtime_checkable

# UPnP device and service types
ROUTER_DEVICE = "urn:schemas-upnp-org:device:InternetGatewayDevice:1"
WAN_DEVICE = "urn:schemas-upnp-org:device:WANDevice:1"
WANCON_DEVICE = "urn:schemas-upnp-org:device:WANConnectionDevice:1"
WAN_IP_CONNECTION = "urn:schemas-upnp-org:service:WANIPConnection:1"
WAN_IP_CONNECTION_2 = "urn:schemas-upnp-org:service:WANIPConnection:2"
WAN_PPP_CONNECTION = "urn:schemas-upnp-org:service:WANPPPConnection:1"


def strip_urn_version(urn: str) -> str:
    """Return ``urn`` without its trailing ``:<version>`` component."""
    head, sep, tail = urn.rpartition(":")
    if sep and tail.isdigit():
        return head
    return urn


def same_urn_family(urn: str | None, reference: str) -> bool:
    """Whether ``urn`` names the same device/service type as ``reference``.

    Versions are ignored so that IGD:2 trees match IGD:1 constants.
    """
    if not urn:
        return False
    return strip_urn_version(urn.strip()) == strip_urn_version(reference)


@runtime_checkable
class Service(Protocol):
    """A UPnP service able to run control actions."""

    service_type: str

    async def invoke_action(
        self, name: str, args: dict[str, str]
    ) -> tuple[bool, dict[str, str]]:
        """Run ``name`` with ``args``; failures surface as ``(False, {})``."""
        ...


@runtime_checkable
class Device(Protocol):
    """A node of a UPnP device tree."""

    device_type: str
    friendly_name: str
    interface_address: str | None

    @property
    def is_root_device(self) -> bool:
        """Whether this is the root of its description document."""
        ...

    @property
    def child_devices(self) -> Sequence[Device]:
        """Embedded devices, in document order."""
        ...

    def service(self, service_type: str) -> Service | None:
        """Return the service of exactly ``service_type`` if present."""
        ...


class DeviceEventKind(str, Enum):
    """Kinds of discovery notifications."""

    ADDED = "added"
    REMOVED = "removed"


@dataclass(frozen=True)
class DeviceEvent:
    """A device appeared on or left the LAN."""

    kind: DeviceEventKind
    device: Any


class DiscoverySource(Protocol):
    """Asynchronous stream of device events."""

    def discover(self) -> AsyncIterator[DeviceEvent]:
        """Yield events until closed. A closed source cannot be restarted."""
        ...

    async def close(self) -> None:
        """Stop producing events."""
        ...
