"""Locate the WAN connection service in a gateway's device tree."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from igdctl.nat.device import (
    WAN_DEVICE,
    WAN_IP_CONNECTION,
    WAN_IP_CONNECTION_2,
    WAN_PPP_CONNECTION,
    WANCON_DEVICE,
    same_urn_family,
)

if TYPE_CHECKING:  # pragma: no cover
    from igdctl.nat.device import Device, Service

logger = logging.getLogger(__name__)

# Lookup order inside a WANConnectionDevice: IP-based first, PPP as fallback
SERVICE_PREFERENCE = (WAN_IP_CONNECTION_2, WAN_IP_CONNECTION, WAN_PPP_CONNECTION)


def locate_wan_service(gateway: Device) -> Service | None:
    """Find the port mapping service of ``gateway``.

    Walks ``InternetGatewayDevice -> WANDevice -> WANConnectionDevice`` and
    takes the first connection device found. Returns None when the tree has
    no such shape or that device exposes neither connection service.
    """
    for wan_device in gateway.child_devices:
        if not same_urn_family(wan_device.device_type, WAN_DEVICE):
            continue

        for connection_device in wan_device.child_devices:
            if not same_urn_family(connection_device.device_type, WANCON_DEVICE):
                continue

            for service_type in SERVICE_PREFERENCE:
                service = connection_device.service(service_type)
                if service is not None:
                    if service_type == WAN_PPP_CONNECTION:
                        logger.info(
                            "%s has no WANIPConnection service, using WANPPPConnection",
                            gateway.friendly_name,
                        )
                    return service

            logger.error(
                "%s exports neither WANIPConnection nor WANPPPConnection",
                gateway.friendly_name,
            )
            return None

    logger.debug(
        "%s has no WANDevice/WANConnectionDevice sub-tree", gateway.friendly_name
    )
    return None
