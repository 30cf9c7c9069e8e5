"""Record of the single gateway the controller is bound to."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from igdctl.nat.exceptions import NATError

if TYPE_CHECKING:  # pragma: no cover
    from igdctl.nat.device import Device, Service

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GatewayBinding:
    """Snapshot of a gateway and its WAN connection service.

    ``generation`` changes every time the directory is mutated, so work
    started under an older binding can tell it has been superseded.
    """

    gateway: Device
    service: Service
    generation: int

    @property
    def internal_client(self) -> str:
        """LAN address the gateway should forward to."""
        return self.gateway.interface_address or ""


class GatewayDirectory:
    """Holds zero or one gateway and its WAN service handle.

    Not thread-safe on its own; the controller mutates it under its lock.
    """

    def __init__(self) -> None:
        self.gateway: Device | None = None
        self.service: Service | None = None
        self.generation = 0

    @property
    def has_gateway(self) -> bool:
        return self.gateway is not None

    def store(self, gateway: Device) -> None:
        """Record ``gateway``. Raises if one is already held."""
        if self.gateway is not None:
            msg = "A gateway is already held"
            raise NATError(
                msg,
                {"held": self.gateway.friendly_name, "new": gateway.friendly_name},
            )
        self.gateway = gateway
        self.service = None
        self.generation += 1

    def attach_service(self, service: Service) -> None:
        """Record the WAN connection service of the held gateway."""
        if self.gateway is None:
            msg = "Cannot attach a service without a gateway"
            raise NATError(msg)
        self.service = service
        self.generation += 1

    def clear(self) -> None:
        """Forget the gateway and its service together."""
        if self.gateway is not None:
            logger.debug("Clearing gateway %s", self.gateway.friendly_name)
        self.gateway = None
        self.service = None
        self.generation += 1

    def holds(self, device: Device) -> bool:
        """Whether ``device`` is the gateway currently held."""
        return self.gateway is not None and (
            device is self.gateway or device == self.gateway
        )

    def binding(self) -> GatewayBinding | None:
        """Current gateway/service pair, or None when not fully bound."""
        if self.gateway is None or self.service is None:
            return None
        return GatewayBinding(self.gateway, self.service, self.generation)
