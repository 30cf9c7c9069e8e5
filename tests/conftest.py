"""Pytest configuration and shared fixtures for igdctl tests."""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any

import pytest

from igdctl.nat.device import (
    ROUTER_DEVICE,
    WAN_DEVICE,
    WAN_IP_CONNECTION,
    WANCON_DEVICE,
    DeviceEvent,
    DeviceEventKind,
)


def pytest_configure(config):
    """Register all project markers to avoid warnings when ini isn't loaded."""
    markers = [
        ("asyncio", "marks tests as async (deselect with '-m \"not asyncio\"')"),
        ("integration", "marks tests as integration tests"),
        ("unit", "marks tests as unit tests"),
        ("nat", "marks tests as NAT traversal tests"),
        ("cli", "marks tests as CLI tests"),
        ("config", "marks tests as configuration tests"),
        ("observability", "marks tests as observability tests"),
    ]
    for name, desc in markers:
        config.addinivalue_line("markers", f"{name}: {desc}")


@pytest.fixture(autouse=True)
def _isolate_igdctl_env(monkeypatch, tmp_path):
    """Keep user config files and IGDCTL_* variables out of the tests."""
    for name in list(os.environ):
        if name.startswith("IGDCTL_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))


@pytest.fixture(autouse=True)
def cleanup_logging():
    """Clean up logging handlers after each test to prevent closed file errors."""
    yield
    for logger_name in list(logging.Logger.manager.loggerDict.keys()):
        logger = logging.getLogger(logger_name)
        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)

    # setup_logging() detaches the package logger from the root for the CLI
    package_logger = logging.getLogger("igdctl")
    package_logger.propagate = True
    package_logger.setLevel(logging.NOTSET)


class FakeService:
    """WAN connection service that records every action it receives.

    ``responses`` maps an action name to a ``(success, output)`` tuple, an
    exception instance to raise, or a callable ``(name, args)`` returning
    either. Unlisted actions succeed with no output.
    """

    def __init__(
        self,
        service_type: str = WAN_IP_CONNECTION,
        responses: dict[str, Any] | None = None,
    ) -> None:
        self.service_type = service_type
        self.responses: dict[str, Any] = responses or {}
        self.calls: list[tuple[str, dict[str, str]]] = []

    async def invoke_action(
        self, name: str, args: dict[str, str]
    ) -> tuple[bool, dict[str, str]]:
        self.calls.append((name, dict(args)))
        await asyncio.sleep(0)
        result = self.responses.get(name, (True, {}))
        if callable(result):
            result = result(name, args)
        if isinstance(result, BaseException):
            raise result
        return result

    def actions(self, name: str | None = None) -> list[tuple[str, dict[str, str]]]:
        return [call for call in self.calls if name is None or call[0] == name]


class FakeDevice:
    """Device tree node with identity equality."""

    def __init__(
        self,
        device_type: str,
        friendly_name: str = "device",
        root: bool = False,
        children: list[FakeDevice] | None = None,
        services: list[FakeService] | None = None,
        interface_address: str | None = "192.168.1.10",
    ) -> None:
        self.device_type = device_type
        self.friendly_name = friendly_name
        self.interface_address = interface_address
        self._root = root
        self._children = children or []
        self._services = {s.service_type: s for s in services or []}

    @property
    def is_root_device(self) -> bool:
        return self._root

    @property
    def child_devices(self) -> list[FakeDevice]:
        return self._children

    def service(self, service_type: str) -> FakeService | None:
        return self._services.get(service_type)

    def __repr__(self) -> str:
        return f"FakeDevice({self.friendly_name!r})"


def make_gateway(
    name: str = "router",
    services: list[FakeService] | None = None,
    device_type: str = ROUTER_DEVICE,
    root: bool = True,
) -> FakeDevice:
    """IGD -> WANDevice -> WANConnectionDevice tree exposing ``services``."""
    if services is None:
        services = [FakeService()]
    connection = FakeDevice(WANCON_DEVICE, f"{name} connection", services=services)
    wan = FakeDevice(WAN_DEVICE, f"{name} wan", children=[connection])
    return FakeDevice(device_type, name, root=root, children=[wan])


class FakeDiscoverySource:
    """Discovery source driven by the test through ``announce``/``withdraw``."""

    def __init__(self) -> None:
        self.events: asyncio.Queue[DeviceEvent] = asyncio.Queue()
        self.closed = False
        self.discover_calls = 0

    def announce(self, device: Any) -> None:
        self.events.put_nowait(DeviceEvent(DeviceEventKind.ADDED, device))

    def withdraw(self, device: Any) -> None:
        self.events.put_nowait(DeviceEvent(DeviceEventKind.REMOVED, device))

    async def discover(self):
        self.discover_calls += 1
        while not self.closed:
            event = await self.events.get()
            yield event

    async def close(self) -> None:
        self.closed = True


class RecordingSleep:
    """Replacement for asyncio.sleep that records delays instead of waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Yield to the loop until ``predicate()`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() >= deadline:
            msg = "condition not reached in time"
            raise AssertionError(msg)
        await asyncio.sleep(0.001)


@pytest.fixture
def fake_source():
    """Discovery source the test feeds by hand."""
    return FakeDiscoverySource()


@pytest.fixture
def recording_sleep():
    """Instant retry delay that remembers what it was asked to wait."""
    return RecordingSleep()


@pytest.fixture
def gateway_factory():
    """Build fake IGD device trees."""
    return make_gateway


@pytest.fixture
def service_factory():
    """Build fake WAN connection services."""
    return FakeService


@pytest.fixture
def device_factory():
    """Build arbitrary fake devices."""
    return FakeDevice


@pytest.fixture
def until():
    """Await a condition driven by background tasks."""
    return wait_until
