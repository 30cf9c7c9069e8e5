"""NAT traversal through a UPnP Internet Gateway Device.

Binds to exactly one IGD on the LAN and keeps the host's desired port
forwards reconciled with it.
"""

from igdctl.nat.controller import ControllerState, NATTraversalController
from igdctl.nat.exceptions import DiscoveryClosedError, NATError, UPnPError
from igdctl.nat.port_mapping import ForwardPort, ForwardStatus
from igdctl.nat.upnp import SSDPDiscoverySource

__all__ = [
    "ControllerState",
    "DiscoveryClosedError",
    "ForwardPort",
    "ForwardStatus",
    "NATError",
    "NATTraversalController",
    "SSDPDiscoverySource",
    "UPnPError",
]
