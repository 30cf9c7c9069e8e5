"""Port forwarding request and outcome types."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum

# Protocols the UPnP AddPortMapping action accepts
SUPPORTED_PROTOCOLS = frozenset({"TCP", "UDP"})


class ForwardStatus(str, Enum):
    """Outcome of a forwarding attempt as reported to the host."""

    # The gateway accepted the action; UPnP success is not authoritative.
    MAYBE_SUCCESS = "maybe_success"
    PROBABLE_FAILURE = "probable_failure"
    DEFINITE_FAILURE = "definite_failure"


@dataclass(frozen=True, order=True)
class ForwardPort:
    """A port the host wants reachable from outside the NAT.

    Equality is by value, so two requests for the same protocol, port and
    name are the same mapping.
    """

    protocol: str
    port: int
    name: str

    def __post_init__(self) -> None:
        # Normalised so that "tcp" and "TCP" requests are the same key
        object.__setattr__(self, "protocol", self.protocol.strip().upper())
        if not 0 < self.port <= 65535:
            msg = f"Port must be in 1-65535, got {self.port}"
            raise ValueError(msg)

    @property
    def is_supported(self) -> bool:
        """Whether UPnP can forward this protocol at all."""
        return self.protocol in SUPPORTED_PROTOCOLS

    @classmethod
    def parse(cls, value: str) -> ForwardPort:
        """Parse ``protocol:port[:name]``, e.g. ``tcp:4711:fnp``."""
        parts = value.split(":", 2)
        if len(parts) < 2:
            msg = f"Expected protocol:port[:name], got {value!r}"
            raise ValueError(msg)
        protocol, port = parts[0], parts[1]
        name = parts[2] if len(parts) == 3 else f"{protocol.lower()}-{port}"
        try:
            port_number = int(port)
        except ValueError as e:
            msg = f"Invalid port number in {value!r}"
            raise ValueError(msg) from e
        return cls(protocol, port_number, name)

    def __str__(self) -> str:
        return f"{self.name} {self.port}/{self.protocol}"


StatusCallback = Callable[[dict[ForwardPort, ForwardStatus]], None]


@dataclass(frozen=True)
class PortSetDiff:
    """Result of comparing an applied port set with a new desired set."""

    to_add: frozenset[ForwardPort]
    to_remove: frozenset[ForwardPort]
    unchanged: frozenset[ForwardPort]

    @classmethod
    def between(
        cls, old: Iterable[ForwardPort], new: Iterable[ForwardPort]
    ) -> PortSetDiff:
        """Diff ``old`` against ``new`` by value equality."""
        old_set = frozenset(old)
        new_set = frozenset(new)
        return cls(
            to_add=new_set - old_set,
            to_remove=old_set - new_set,
            unchanged=old_set & new_set,
        )

    @property
    def is_empty(self) -> bool:
        """Whether nothing needs to be sent to the gateway."""
        return not self.to_add and not self.to_remove
