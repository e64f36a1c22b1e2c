"""Static table of the ports the container harness publishes.

Each :class:`PortUsage` maps to exactly one container/host port pair. The
daemon listens on the container side, the client dials the host side, and the
container engine publishes one onto the other.
"""

from __future__ import annotations

import dataclasses as dc
import enum
import types
import typing as typ

__all__ = [
    "USED_PORTS",
    "ContainerPortBinding",
    "PortUsage",
    "bound_ports",
    "container_port",
    "host_port",
    "port_protocol",
]


class PortUsage(enum.Enum):
    """Purposes a published port can serve."""

    HOST_COMMUNICATION = "host-communication"


@dc.dataclass(frozen=True)
class ContainerPortBinding:
    """A container port published on the host."""

    container_port: int
    host_port: int
    protocol: str = "tcp"

    @property
    def container_key(self) -> str:
        """Return the ``PORT/PROTOCOL`` form used by container engines."""
        return f"{self.container_port}/{self.protocol}"

    def publish_spec(self) -> str:
        """Return the ``HOST:CONTAINER/PROTOCOL`` value for ``docker run -p``."""
        return f"{self.host_port}:{self.container_key}"


USED_PORTS: typ.Final[typ.Mapping[PortUsage, ContainerPortBinding]] = (
    types.MappingProxyType(
        {
            PortUsage.HOST_COMMUNICATION: ContainerPortBinding(
                container_port=5000,
                host_port=11000,
            ),
        }
    )
)


def _binding(usage: PortUsage) -> ContainerPortBinding:
    try:
        return USED_PORTS[usage]
    except KeyError as error:
        message = f"unbound port usage: {usage!r}"
        raise ValueError(message) from error


def bound_ports() -> tuple[ContainerPortBinding, ...]:
    """Return every binding the harness publishes."""
    return tuple(USED_PORTS.values())


def container_port(usage: PortUsage) -> int:
    """Return the port the daemon listens on inside the container."""
    return _binding(usage).container_port


def host_port(usage: PortUsage) -> int:
    """Return the host port the client connects to."""
    return _binding(usage).host_port


def port_protocol(usage: PortUsage) -> str:
    """Return the transport protocol of ``usage``."""
    return _binding(usage).protocol
