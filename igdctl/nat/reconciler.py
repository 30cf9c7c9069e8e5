"""Converge the ports forwarded on the gateway toward the desired set."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from igdctl.nat.port_mapping import (
    ForwardPort,
    ForwardStatus,
    PortSetDiff,
    StatusCallback,
)

if TYPE_CHECKING:  # pragma: no cover
    from igdctl.models import UPnPConfig
    from igdctl.nat.directory import GatewayBinding

logger = logging.getLogger(__name__)

BindingCheck = Callable[["GatewayBinding"], bool]
Sleep = Callable[[float], Awaitable[None]]


class MappingReconciler:
    """Applies desired-set changes to the gateway as add/remove actions.

    ``lock`` is the controller's state lock. Bookkeeping (the applied set
    and the forwarded set) is only touched while holding it; network calls
    never are.
    """

    def __init__(
        self,
        config: UPnPConfig,
        lock: asyncio.Lock,
        status_callback: StatusCallback | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.config = config
        self.lock = lock
        self.status_callback = status_callback
        self._sleep = sleep
        self.logger = logging.getLogger(__name__)

        # Desired set of the previous reconcile call
        self.applied: frozenset[ForwardPort] = frozenset()
        self.forwarded: dict[ForwardPort, ForwardStatus] = {}

    def reset(self) -> None:
        """Forget everything pushed to a gateway that is gone. Caller holds the lock."""
        self.applied = frozenset()
        self.forwarded.clear()

    async def reconcile(
        self,
        desired: frozenset[ForwardPort],
        binding: GatewayBinding,
        is_current: BindingCheck,
    ) -> PortSetDiff:
        """Diff ``desired`` against the last applied set and apply the difference.

        Ports present in both sets are left alone. Removals run before
        additions so a port moving between names is freed first.
        """
        async with self.lock:
            if not is_current(binding):
                self.logger.debug("Binding superseded, skipping reconciliation")
                return PortSetDiff.between((), ())
            diff = PortSetDiff.between(self.applied, desired)
            self.applied = frozenset(desired)

        if diff.is_empty:
            self.logger.debug("Desired ports unchanged, nothing to reconcile")
            return diff

        self.logger.info(
            "Reconciling port mappings: %d to add, %d to remove, %d unchanged",
            len(diff.to_add),
            len(diff.to_remove),
            len(diff.unchanged),
        )
        for port in sorted(diff.to_remove):
            await self.remove_mapping(port, binding, is_current)
        for port in sorted(diff.to_add):
            await self.add_mapping(port, binding, is_current)
        return diff

    async def add_mapping(
        self,
        port: ForwardPort,
        binding: GatewayBinding,
        is_current: BindingCheck,
    ) -> tuple[bool, int]:
        """Forward ``port`` with bounded retry.

        Returns (success, attempts made). Exactly one status is reported
        for the port once the outcome is known.
        """
        if not port.is_supported:
            self.logger.warning(
                "Cannot forward %s: protocol %s is not supported by UPnP",
                port,
                port.protocol,
            )
            await self._commit(port, ForwardStatus.DEFINITE_FAILURE, binding, is_current)
            return False, 0

        max_attempts = self.config.add_retry_attempts
        self.logger.info("Registering a port mapping for %s", port)

        attempts = 0
        success = False
        while attempts < max_attempts:
            if not is_current(binding):
                self.logger.info(
                    "Gateway changed while mapping %s, abandoning after %d attempt(s)",
                    port,
                    attempts,
                )
                return False, attempts

            attempts += 1
            success = await self._try_add(port, binding)
            if success:
                break

            if attempts < max_attempts:
                self.logger.debug(
                    "AddPortMapping attempt %d/%d failed for %s, retrying in %.1fs",
                    attempts,
                    max_attempts,
                    port,
                    self.config.add_retry_delay,
                    extra={"port": str(port), "attempt": attempts},
                )
                await self._sleep(self.config.add_retry_delay)

        if success:
            self.logger.info(
                "Mapping for %s is successful (%d tries)",
                port,
                attempts,
                extra={"port": str(port), "attempt": attempts},
            )
            status = ForwardStatus.MAYBE_SUCCESS
        else:
            self.logger.warning(
                "Mapping for %s has failed (%d tries)",
                port,
                attempts,
                extra={"port": str(port), "attempt": attempts},
            )
            status = ForwardStatus.PROBABLE_FAILURE

        await self._commit(port, status, binding, is_current)
        return success, attempts

    async def remove_mapping(
        self,
        port: ForwardPort,
        binding: GatewayBinding,
        is_current: BindingCheck,
    ) -> bool:
        """Delete the mapping for ``port`` once, without retry.

        The forwarded entry is dropped whatever the gateway answers: a
        stale entry is worse than a missed one, and the next add pre-cleans.
        """
        success = False
        if port.is_supported:
            success = await self._delete(port, binding)
            if success:
                self.logger.info("Removed mapping for %s", port, extra={"port": str(port)})
            else:
                self.logger.warning(
                    "Failed to remove mapping for %s", port, extra={"port": str(port)}
                )

        async with self.lock:
            if is_current(binding):
                self.forwarded.pop(port, None)
        return success

    async def _try_add(self, port: ForwardPort, binding: GatewayBinding) -> bool:
        # Clears a mapping left behind by a previous run
        await self._delete(port, binding)

        args = {
            "NewRemoteHost": "",
            "NewExternalPort": str(port.port),
            "NewInternalClient": self.config.internal_client or binding.internal_client,
            "NewInternalPort": str(port.port),
            "NewProtocol": port.protocol,
            "NewPortMappingDescription": f"{self.config.description_prefix}{port.name}",
            "NewEnabled": "1",
            "NewLeaseDuration": str(self.config.lease_duration),
        }
        return await self._invoke(binding, "AddPortMapping", args)

    async def _delete(self, port: ForwardPort, binding: GatewayBinding) -> bool:
        args = {
            "NewRemoteHost": "",
            "NewExternalPort": str(port.port),
            "NewProtocol": port.protocol,
        }
        return await self._invoke(binding, "DeletePortMapping", args)

    async def _invoke(
        self, binding: GatewayBinding, action: str, args: dict[str, str]
    ) -> bool:
        try:
            success, _ = await binding.service.invoke_action(action, args)
        except asyncio.CancelledError:
            raise
        except Exception:
            self.logger.exception("%s raised for %s", action, args)
            return False
        return success

    async def _commit(
        self,
        port: ForwardPort,
        status: ForwardStatus,
        binding: GatewayBinding,
        is_current: BindingCheck,
    ) -> None:
        async with self.lock:
            if not is_current(binding):
                self.logger.debug(
                    "Discarding %s for %s: gateway binding changed", status.value, port
                )
                return
            self.forwarded[port] = status
            callback = self.status_callback

        if callback is None:
            return
        try:
            callback({port: status})
        except Exception:
            self.logger.exception("Port forward status callback failed for %s", port)
