"""igdctl - UPnP IGD NAT traversal controller."""

from __future__ import annotations

__version__ = "0.1.0"
