"""Device plugin that discovers FPGA regions and accelerator functions."""

from __future__ import annotations

import base64
import logging
import os
import re
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from .deviceplugin import AllocateResponse, DeviceInfo, DeviceSpec, DeviceTree, Health, Notifier

log = logging.getLogger(__name__)

DEVFS_DIRECTORY = "/dev"
SYSFS_DIRECTORY_OPAE = "sys/class/fpga"
SYSFS_DIRECTORY_DFL = "sys/class/fpga_region"

NAMESPACE = "fpga.intel.com"
ANNOTATION_NAME = "com.intel.fpga.mode"

# When the device's firmware crashes the driver reports these values.
UNHEALTHY_AFU_ID = "ffffffffffffffffffffffffffffffff"
UNHEALTHY_INTERFACE_ID = "ffffffffffffffffffffffffffffffff"

SCAN_PERIOD = 5.0

DFL_DEVICE_RE = r"region[0-9]+"
DFL_PORT_RE = r"dfl-port\.[0-9]+"
OPAE_DEVICE_RE = r"intel-fpga-dev.[0-9]+"
OPAE_PORT_RE = r"intel-fpga-port.[0-9]+"

_UUID_RE = re.compile(r"[0-9a-fA-F]{32}")


class Mode(str, Enum):
    """Mode of operation of the FPGA scanner."""

    AF = "af"
    REGION = "region"
    REGION_DEVEL = "regiondevel"


class _Fme(Protocol):
    def get_name(self) -> str: ...

    def get_interface_uuid(self) -> str: ...

    def get_dev_path(self) -> str: ...


class _Port(Protocol):
    def get_name(self) -> str: ...

    def get_accelerator_type_uuid(self) -> str: ...

    def get_dev_path(self) -> str: ...

    def get_fme(self) -> _Fme: ...


NewPort = Callable[[str], _Port]
GetDevTree = Callable[[list["Device"]], DeviceTree]


@dataclass
class Afu:
    """An accelerator function port."""

    id: str
    afu_id: str
    dev_node: str


@dataclass
class Region:
    """A reprogrammable FPGA region with its ports."""

    id: str
    interface_id: str
    dev_node: str
    afus: list[Afu] = field(default_factory=list)


@dataclass
class Device:
    """An FPGA device holding one or more regions."""

    name: str
    regions: list[Region] = field(default_factory=list)


def get_afu_dev_type(interface_id: str, afu_id: str) -> str:
    """Return the resource name for an AFU programmed into a region."""
    for value in (interface_id, afu_id):
        if not _UUID_RE.fullmatch(value):
            raise ValueError(f"invalid UUID {value!r}")
    raw = bytes.fromhex(interface_id) + bytes.fromhex(afu_id)
    encoded = base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")
    return f"af-{interface_id[:3]}.{afu_id[:3]}.{encoded}"


def _spec(path: str) -> DeviceSpec:
    return DeviceSpec(path, path, "rw")


def _region_health(region: Region) -> Health:
    return Health.UNHEALTHY if region.interface_id == UNHEALTHY_INTERFACE_ID else Health.HEALTHY


def get_region_devel_tree(devices: Iterable[Device]) -> DeviceTree:
    """Map region interface IDs to AF ports and FME devices."""
    tree = DeviceTree()
    for device in devices:
        for region in device.regions:
            nodes = [_spec(afu.dev_node) for afu in region.afus]
            nodes.append(_spec(region.dev_node))
            tree.add_device(
                f"{Mode.REGION.value}-{region.interface_id}",
                region.id,
                DeviceInfo(_region_health(region), nodes),
            )
    return tree


def get_region_tree(devices: Iterable[Device]) -> DeviceTree:
    """Map region interface IDs to AF ports only."""
    tree = DeviceTree()
    for device in devices:
        for region in device.regions:
            nodes = [_spec(afu.dev_node) for afu in region.afus]
            tree.add_device(
                f"{Mode.REGION.value}-{region.interface_id}",
                region.id,
                DeviceInfo(_region_health(region), nodes),
            )
    return tree


def get_afu_tree(devices: Iterable[Device]) -> DeviceTree:
    """Map AFU IDs to AF ports."""
    tree = DeviceTree()
    for device in devices:
        for region in device.regions:
            for afu in region.afus:
                health = Health.UNHEALTHY if afu.afu_id == UNHEALTHY_AFU_ID else Health.HEALTHY
                try:
                    dev_type = get_afu_dev_type(region.interface_id, afu.afu_id)
                except ValueError as err:
                    log.warning("failed to get devtype: %s", err)
                    continue
                tree.add_device(dev_type, afu.id, DeviceInfo(health, [_spec(afu.dev_node)]))
    return tree


def get_plugin_params(mode: str | Mode) -> tuple[GetDevTree, str]:
    """Return the tree builder and container annotation value for a mode."""
    try:
        parsed = Mode(mode)
    except ValueError:
        raise ValueError(f"Wrong mode: '{mode}'") from None
    if parsed is Mode.AF:
        return get_afu_tree, ""
    if parsed is Mode.REGION:
        return get_region_tree, f"{NAMESPACE}/{Mode.REGION.value}"
    return get_region_devel_tree, ""


class FpgaDevicePlugin:
    """Scans sysfs for FPGA devices and reports them as a device tree."""

    scan_period = SCAN_PERIOD

    def __init__(
        self,
        name: str,
        sysfs_dir: str,
        devfs_dir: str,
        device_pattern: str,
        port_pattern: str,
        mode: str | Mode,
        new_port: NewPort,
    ) -> None:
        self.name = name
        self.sysfs_dir = sysfs_dir
        self.devfs_dir = devfs_dir
        self.device_re = re.compile(device_pattern)
        self.port_re = re.compile(port_pattern)
        self.get_dev_tree, self.annotation_value = get_plugin_params(mode)
        self.new_port = new_port
        self._stop = threading.Event()

    def post_allocate(self, response: AllocateResponse) -> None:
        """Set container annotations when programming is allowed."""
        if not self.annotation_value:
            return
        for container_response in response.container_responses:
            container_response.annotations = {ANNOTATION_NAME: self.annotation_value}

    def stop(self) -> None:
        """Ask a running scan loop to return after its current iteration."""
        self._stop.set()

    def scan(self, notifier: Notifier) -> None:
        """Scan periodically and notify about found devices until stopped."""
        while True:
            notifier.notify(self.scan_fpgas())
            if self._stop.wait(self.scan_period):
                self._stop.clear()
                return

    def get_regions(self, device_files: Iterable[str]) -> list[Region]:
        """Group the ports among the given sysfs entries by their FME."""
        regions: dict[str, Region] = {}
        for name in device_files:
            if not self.port_re.fullmatch(name):
                continue
            try:
                port = self.new_port(name)
            except Exception as err:
                raise RuntimeError(f"can't get port info for {name}: {err}") from err
            try:
                fme = port.get_fme()
            except Exception as err:
                raise RuntimeError(f"can't get FME info for {name}: {err}") from err

            afu = Afu(port.get_name(), port.get_accelerator_type_uuid(), port.get_dev_path())
            region_name = fme.get_name()
            region = regions.get(region_name)
            if region is None:
                regions[region_name] = Region(
                    region_name, fme.get_interface_uuid(), fme.get_dev_path(), [afu]
                )
            else:
                region.afus.append(afu)
        return list(regions.values())

    def scan_fpgas(self) -> DeviceTree:
        """Do a single scan and return the resulting device tree."""
        try:
            entries = sorted(os.listdir(self.sysfs_dir))
        except OSError:
            log.warning("Can't read folder %s. Kernel driver not loaded?", self.sysfs_dir)
            return self.get_dev_tree([])

        devices = []
        for dev_name in entries:
            if not self.device_re.fullmatch(dev_name):
                continue
            device_files = sorted(os.listdir(os.path.join(self.sysfs_dir, dev_name)))
            regions = self.get_regions(device_files)
            if regions:
                devices.append(Device(dev_name, regions))
        return self.get_dev_tree(devices)


def new_device_plugin_dfl(sysfs_dir: str, devfs_dir: str, mode: str | Mode, new_port: NewPort) -> FpgaDevicePlugin:
    """Create a plugin for the DFL kernel driver."""
    return FpgaDevicePlugin("DFL", sysfs_dir, devfs_dir, DFL_DEVICE_RE, DFL_PORT_RE, mode, new_port)


def new_device_plugin_opae(sysfs_dir: str, devfs_dir: str, mode: str | Mode, new_port: NewPort) -> FpgaDevicePlugin:
    """Create a plugin for the OPAE kernel driver."""
    return FpgaDevicePlugin("OPAE", sysfs_dir, devfs_dir, OPAE_DEVICE_RE, OPAE_PORT_RE, mode, new_port)


def new_device_plugin(mode: str | Mode, root_path: str, new_port: NewPort) -> FpgaDevicePlugin:
    """Create a plugin for whichever kernel driver is loaded under root_path."""
    root = root_path or "/"
    sysfs_opae = os.path.join(root, SYSFS_DIRECTORY_OPAE)
    devfs = os.path.join(root, DEVFS_DIRECTORY.lstrip("/"))
    if os.path.exists(sysfs_opae):
        return new_device_plugin_opae(sysfs_opae, devfs, mode, new_port)
    sysfs_dfl = os.path.join(root, SYSFS_DIRECTORY_DFL)
    if os.path.exists(sysfs_dfl):
        return new_device_plugin_dfl(sysfs_dfl, devfs, mode, new_port)
    raise FileNotFoundError(
        f"kernel driver is not loaded: neither {sysfs_opae} nor {sysfs_dfl} sysfs entry exists"
    )