"""Core data types shared by the device plugins."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol, runtime_checkable


class Health(str, Enum):
    """Health state reported for a device."""

    HEALTHY = "Healthy"
    UNHEALTHY = "Unhealthy"


@dataclass(frozen=True)
class DeviceSpec:
    """A device node exposed to a container."""

    host_path: str
    container_path: str
    permissions: str = "rw"


@dataclass(frozen=True)
class DeviceInfo:
    """Everything needed to hand one device over to a container."""

    health: Health
    nodes: tuple[DeviceSpec, ...] = ()
    mounts: tuple[str, ...] = ()
    envs: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "nodes", tuple(self.nodes))
        object.__setattr__(self, "mounts", tuple(self.mounts))
        object.__setattr__(self, "envs", dict(self.envs))


class DeviceTree(dict):
    """Mapping of device type to a mapping of device id to DeviceInfo."""

    def add_device(self, dev_type: str, dev_id: str, info: DeviceInfo) -> None:
        """Register a device under its type, replacing any entry with the same id."""
        self.setdefault(dev_type, {})[dev_id] = info


@dataclass
class ContainerAllocateResponse:
    """Allocation result for a single container."""

    envs: dict[str, str] = field(default_factory=dict)
    mounts: list[str] = field(default_factory=list)
    devices: list[DeviceSpec] = field(default_factory=list)
    annotations: dict[str, str] = field(default_factory=dict)


@dataclass
class AllocateResponse:
    """Allocation result for all containers of a request."""

    container_responses: list[ContainerAllocateResponse] = field(default_factory=list)


@runtime_checkable
class Notifier(Protocol):
    """Receives device trees produced by a plugin scan."""

    def notify(self, tree: DeviceTree) -> None:
        ...