"""NAT traversal controller: single-gateway policy over a UPnP discovery stream."""

from __future__ import annotations

import asyncio
import contextlib
import ipaddress
import logging
import socket
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from igdctl.logging_config import MappingLogContext, log_exception
from igdctl.models import UPnPConfig
from igdctl.nat.device import DeviceEventKind, ROUTER_DEVICE, same_urn_family
from igdctl.nat.directory import GatewayBinding, GatewayDirectory
from igdctl.nat.locator import locate_wan_service
from igdctl.nat.port_mapping import ForwardPort, ForwardStatus, StatusCallback
from igdctl.nat.reconciler import MappingReconciler, Sleep

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Iterable

    from igdctl.nat.device import Device, DeviceEvent, DiscoverySource

logger = logging.getLogger(__name__)


class ControllerState(str, Enum):
    """Lifecycle of the controller. DISABLED is terminal."""

    UNINITIALIZED = "uninitialized"
    SEARCHING = "searching"
    BOUND = "bound"
    DISABLED = "disabled"


@dataclass
class _ReconcileJob:
    """Work item for the reconciliation worker.

    ``desired`` of None means "whatever the controller wants right now".
    """

    desired: frozenset[ForwardPort] | None
    teardown: bool = False
    done: asyncio.Future = field(
        default_factory=lambda: asyncio.get_running_loop().create_future()
    )


class NATTraversalController:
    """Binds to exactly one IGD and keeps its port mappings in line with the host.

    Discovery events are consumed from ``source`` on a listener task;
    mapping work runs on a separate worker task so discovery is never
    stuck behind a retry loop. Every piece of mutable state is guarded by
    ``self.lock``.
    """

    def __init__(
        self,
        source: DiscoverySource,
        config: UPnPConfig | None = None,
        status_callback: StatusCallback | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        """Initialize the controller.

        Args:
            source: Discovery collaborator producing device events
            config: UPnP configuration (defaults when None)
            status_callback: Receives ``{port: status}`` for every outcome
            sleep: Coroutine used for the retry delay

        """
        self.config = config or UPnPConfig()
        self.source = source
        self.logger = logging.getLogger(__name__)

        self.lock = asyncio.Lock()
        self.state = ControllerState.UNINITIALIZED
        self.directory = GatewayDirectory()
        self.reconciler = MappingReconciler(
            self.config, self.lock, status_callback, sleep=sleep
        )
        self.desired: frozenset[ForwardPort] = frozenset()

        self._started = False
        self._stopping = False
        self._listening = False
        self._listen_task: asyncio.Task | None = None
        self._worker_task: asyncio.Task | None = None
        self._jobs: asyncio.Queue[_ReconcileJob] | None = None

    # Lifecycle

    async def start(self) -> None:
        """Begin listening for gateways. A stopped controller stays stopped."""
        async with self.lock:
            if self._started or self._stopping:
                self.logger.debug(
                    "Controller already %s", "stopped" if self._stopping else "started"
                )
                return
            self._started = True
            if self.state is ControllerState.UNINITIALIZED:
                self.state = ControllerState.SEARCHING
            self._jobs = asyncio.Queue()
            self._worker_task = asyncio.create_task(self._run_worker())
            self._listening = True
            self._listen_task = asyncio.create_task(self._listen())
        self.logger.info("UPnP controller started, searching for an IGD")

    async def stop(self) -> None:
        """Tear down forwarded mappings, then stop discovery and the worker.

        Safe from any state. Afterwards the gateway is forgotten: the state
        drops back to UNINITIALIZED (DISABLED stays DISABLED) and the
        controller cannot be started again.
        """
        async with self.lock:
            if self._stopping:
                return
            self._stopping = True
            worker = self._worker_task

        if worker is not None and not worker.done():
            teardown = await self._submit(_ReconcileJob(frozenset(), teardown=True))
            if teardown is not None:
                await teardown

        await self._stop_listening()

        if worker is not None:
            worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await worker

        async with self.lock:
            self.directory.clear()
            self.reconciler.reset()
            if self.state is not ControllerState.DISABLED:
                self.state = ControllerState.UNINITIALIZED
        self.logger.info("UPnP controller stopped")

    # Discovery events

    async def on_device_discovered(self, device: Device) -> None:
        """Handle a device appearing on the LAN."""
        async with self.lock:
            if self.state is ControllerState.DISABLED:
                self.logger.debug(
                    "Controller disabled, ignoring %s", getattr(device, "friendly_name", device)
                )
                return
            if self.state is ControllerState.UNINITIALIZED:
                self.logger.debug("Controller not started, ignoring discovery event")
                return
            if not device.is_root_device or not same_urn_family(
                device.device_type, ROUTER_DEVICE
            ):
                # Every device on the LAN is reported; only root IGDs matter
                return

            if self.directory.holds(device):
                self.logger.debug("Duplicate announcement of %s", device.friendly_name)
                return

            if self.directory.has_gateway:
                self.logger.error(
                    "Found a second IGD on the network (%s besides %s): "
                    "cannot choose between gateways, disabling UPnP",
                    device.friendly_name,
                    self.directory.gateway.friendly_name,
                )
                self._disable()
                return

            self.logger.info("UPnP IGD found: %s", device.friendly_name)
            self.directory.store(device)
            service = locate_wan_service(device)
            if service is None:
                self.logger.error(
                    "IGD %s exposes no usable WAN connection service, disabling UPnP",
                    device.friendly_name,
                )
                self._disable()
                return

            self.directory.attach_service(service)
            self.state = ControllerState.BOUND
            self.logger.info(
                "Bound to %s using %s", device.friendly_name, service.service_type
            )

        # Forward already-desired ports without blocking discovery
        await self._submit(_ReconcileJob(None))

    async def on_device_removed(self, device: Device) -> None:
        """Handle a device leaving the LAN."""
        async with self.lock:
            if not self.directory.holds(device):
                return
            self.logger.warning(
                "Gateway %s went away, forgetting its mappings", device.friendly_name
            )
            self.directory.clear()
            self.reconciler.reset()
            if self.state is not ControllerState.DISABLED:
                self.state = ControllerState.SEARCHING

    # Host-facing surface

    def is_nat_present(self) -> bool:
        """Whether a UPnP gateway with a usable WAN service is bound."""
        return (
            self.state is ControllerState.BOUND and self.directory.service is not None
        )

    async def set_desired_ports(
        self,
        ports: Iterable[ForwardPort],
        callback: StatusCallback | None = None,
    ) -> None:
        """Replace the desired port set and push the difference to the gateway.

        Waits for the gateway round-trips when bound. When no gateway is
        bound yet the set is stored and forwarded as soon as one is.
        """
        desired = frozenset(ports)
        async with self.lock:
            if callback is not None:
                current = self.reconciler.status_callback
                if current is not None and current is not callback:
                    self.logger.warning(
                        "Port forward status callback changed from %r to %r",
                        current,
                        callback,
                    )
                self.reconciler.status_callback = callback
            self.desired = desired
            bound = self.state is ControllerState.BOUND
        self.logger.info("UPnP forwarding %d port(s)", len(desired))

        if not bound:
            return
        done = await self._submit(_ReconcileJob(desired))
        if done is not None:
            await done

    async def query_external_address(self) -> ipaddress.IPv4Address | None:
        """Ask the gateway for its WAN address. None when it cannot be had."""
        binding = await self._current_binding()
        if binding is None:
            self.logger.info(
                "No UPnP gateway bound, cannot detect the external address"
            )
            return None

        output = await self._call(binding, "GetExternalIPAddress")
        if output is None:
            return None

        literal = output.get("NewExternalIPAddress", "").strip()
        if not literal:
            self.logger.warning("GetExternalIPAddress returned no address")
            return None

        address = await self._resolve(literal)
        if address is not None:
            self.logger.info("External address reported by UPnP: %s", address)
        return address

    async def query_link_bit_rates(self) -> tuple[int, int] | None:
        """Return (upstream, downstream) link rates in bits/s, if reported."""
        binding = await self._current_binding()
        if binding is None:
            return None

        output = await self._call(binding, "GetLinkLayerMaxBitRates")
        if output is None:
            return None

        try:
            upstream = int(output.get("NewUpstreamMaxBitRate", ""))
            downstream = int(output.get("NewDownstreamMaxBitRate", ""))
        except ValueError:
            self.logger.debug("Malformed GetLinkLayerMaxBitRates response: %s", output)
            return None
        if upstream <= 0 or downstream <= 0:
            return None
        return upstream, downstream

    async def get_status(self) -> dict[str, Any]:
        """Summarise the gateway and every desired port."""
        async with self.lock:
            gateway = self.directory.gateway
            forwarded = dict(self.reconciler.forwarded)
            ports = [
                {
                    "protocol": port.protocol,
                    "port": port.port,
                    "name": port.name,
                    "status": forwarded[port].value if port in forwarded else None,
                }
                for port in sorted(self.desired)
            ]
            return {
                "state": self.state.value,
                "nat_present": self.is_nat_present(),
                "gateway": gateway.friendly_name if gateway is not None else None,
                "ports": ports,
            }

    @property
    def forwarded(self) -> dict[ForwardPort, ForwardStatus]:
        """Last known outcome per forwarded port (read-only copy)."""
        return dict(self.reconciler.forwarded)

    # Internals

    def _disable(self) -> None:
        """Enter the terminal state. Caller holds the lock."""
        self.directory.clear()
        self.reconciler.reset()
        self.state = ControllerState.DISABLED
        self._listening = False

    def _is_current(self, binding: GatewayBinding) -> bool:
        return (
            self.state is ControllerState.BOUND
            and self.directory.generation == binding.generation
        )

    async def _current_binding(self) -> GatewayBinding | None:
        async with self.lock:
            if self.state is not ControllerState.BOUND:
                return None
            return self.directory.binding()

    async def _call(
        self, binding: GatewayBinding, action: str
    ) -> dict[str, str] | None:
        try:
            success, output = await binding.service.invoke_action(action, {})
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log_exception(self.logger, e, f"{action} failed")
            return None
        if not success:
            self.logger.warning("%s failed on %s", action, binding.gateway.friendly_name)
            return None
        return output

    async def _resolve(self, literal: str) -> ipaddress.IPv4Address | None:
        try:
            return ipaddress.IPv4Address(literal)
        except ValueError:
            pass

        loop = asyncio.get_running_loop()
        try:
            infos = await loop.getaddrinfo(literal, None, family=socket.AF_INET)
        except (OSError, UnicodeError) as e:
            self.logger.error("Unable to resolve %s reported by the gateway: %s", literal, e)
            return None
        for _family, _type, _proto, _canon, sockaddr in infos:
            with contextlib.suppress(ValueError):
                return ipaddress.IPv4Address(sockaddr[0])
        self.logger.error("No IPv4 address for %s reported by the gateway", literal)
        return None

    async def _submit(self, job: _ReconcileJob) -> asyncio.Future | None:
        if self._jobs is None or self._worker_task is None or self._worker_task.done():
            return None
        if self._stopping and not job.teardown:
            return None
        await self._jobs.put(job)
        return job.done

    async def _run_worker(self) -> None:
        """Run reconciliation jobs one at a time, in submission order."""
        assert self._jobs is not None
        while True:
            job = await self._jobs.get()
            try:
                if self._stopping and not job.teardown:
                    self.logger.debug("Stopping, skipping queued reconciliation")
                    continue
                await self._converge(job)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log_exception(self.logger, e, "Port mapping reconciliation failed")
            finally:
                if not job.done.done():
                    job.done.set_result(None)
                self._jobs.task_done()

    async def _converge(self, job: _ReconcileJob) -> None:
        async with self.lock:
            binding = (
                self.directory.binding()
                if self.state is ControllerState.BOUND
                else None
            )
            desired = self.desired if job.desired is None else job.desired
        if binding is None:
            return
        job_name = "teardown" if job.teardown else "reconcile"
        with MappingLogContext(job_name, binding.gateway.friendly_name):
            await self.reconciler.reconcile(desired, binding, self._is_current)

    async def _listen(self) -> None:
        """Dispatch discovery events in delivery order until told to stop."""
        events = self.source.discover()
        try:
            async for event in events:
                with MappingLogContext(f"discovery-{event.kind.value}"):
                    await self._dispatch(event)
                if not self._listening:
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log_exception(self.logger, e, "Discovery listener failed")
        finally:
            aclose = getattr(events, "aclose", None)
            try:
                if aclose is not None:
                    await aclose()
                await self.source.close()
            except Exception as e:
                self.logger.debug("Error closing discovery source: %s", e)
            self.logger.debug("Discovery listener exited")

    async def _dispatch(self, event: DeviceEvent) -> None:
        try:
            if event.kind is DeviceEventKind.ADDED:
                await self.on_device_discovered(event.device)
            elif event.kind is DeviceEventKind.REMOVED:
                await self.on_device_removed(event.device)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log_exception(self.logger, e, f"Failed to handle {event.kind.value} event")

    async def _stop_listening(self) -> None:
        self._listening = False
        task = self._listen_task
        if task is None:
            return
        if task is not asyncio.current_task() and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
