"""NAT traversal exceptions."""

from igdctl.exceptions import NetworkError


class NATError(NetworkError):
    """Base exception for NAT traversal errors."""


class UPnPError(NATError):
    """UPnP specific error."""


class DiscoveryClosedError(NATError):
    """A discovery source was iterated again after it was closed."""
