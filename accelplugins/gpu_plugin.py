"""Device plugin that discovers Intel GPUs through sysfs."""

from __future__ import annotations

import logging
import os
import re
import threading
from dataclasses import dataclass

from .deviceplugin import DeviceInfo, DeviceSpec, DeviceTree, Health, Notifier

log = logging.getLogger(__name__)

SYSFS_DRM_DIRECTORY = "/sys/class/drm"
DEVFS_DRI_DIRECTORY = "/dev/dri"
GPU_DEVICE_RE = re.compile(r"card[0-9]+")
CONTROL_DEVICE_RE = re.compile(r"controlD[0-9]+")
VENDOR_STRING = "0x8086"

NAMESPACE = "gpu.intel.com"
DEVICE_TYPE = "i915"

MONITOR_TYPE = "i915_monitoring"
MONITOR_ID = "all"

SCAN_PERIOD = 5.0


@dataclass
class Options:
    """Command-line options of the GPU plugin."""

    shared_dev_num: int = 1
    enable_monitoring: bool = False


def _read_text(path: str) -> str:
    with open(path, encoding="utf-8", errors="replace") as handle:
        return handle.read()


class GpuDevicePlugin:
    """Scans sysfs for Intel GPUs and reports them as a device tree."""

    scan_period = SCAN_PERIOD

    def __init__(self, sysfs_dir: str, devfs_dir: str, options: Options | None = None) -> None:
        self.sysfs_dir = sysfs_dir
        self.devfs_dir = devfs_dir
        self.options = options if options is not None else Options()
        self._stop = threading.Event()

    def stop(self) -> None:
        """Ask a running scan loop to return after its current iteration."""
        self._stop.set()

    def scan(self, notifier: Notifier) -> None:
        """Scan periodically and notify about found devices until stopped."""
        previously_found = -1
        while True:
            try:
                tree = self.scan_devices()
            except OSError as err:
                log.warning("Failed to scan: %s", err)
                tree = DeviceTree()

            found = len(tree)
            if found != previously_found:
                log.info("GPU scan update: devices found: %d", found)
                previously_found = found

            notifier.notify(tree)

            if self._stop.wait(self.scan_period):
                self._stop.clear()
                return

    def is_compatible_device(self, name: str) -> bool:
        """Return True if the sysfs entry is an Intel GPU card."""
        if not GPU_DEVICE_RE.fullmatch(name):
            log.debug("Not compatible device: %s", name)
            return False
        try:
            vendor = _read_text(os.path.join(self.sysfs_dir, name, "device", "vendor"))
        except OSError as err:
            log.warning("Skipping. Can't read vendor file: %s", err)
            return False
        if vendor.strip() != VENDOR_STRING:
            log.debug("Non-Intel GPU: %s", name)
            return False
        return True

    def scan_devices(self) -> DeviceTree:
        """Do a single scan and return the resulting device tree."""
        try:
            entries = sorted(os.listdir(self.sysfs_dir))
        except OSError as err:
            raise OSError(f"can't read sysfs folder {self.sysfs_dir}: {err}") from err

        monitor: list[DeviceSpec] = []
        tree = DeviceTree()
        for name in entries:
            if not self.is_compatible_device(name):
                continue

            drm_dir = os.path.join(self.sysfs_dir, name, "device", "drm")
            try:
                drm_files = sorted(os.listdir(drm_dir))
            except OSError as err:
                raise OSError(f"can't read device folder {drm_dir}: {err}") from err

            try:
                numvfs = _read_text(os.path.join(self.sysfs_dir, name, "device", "sriov_numvfs"))
                is_pf_with_vfs = numvfs.strip() != "0"
            except OSError:
                is_pf_with_vfs = False

            nodes: list[DeviceSpec] = []
            for drm_file in drm_files:
                if CONTROL_DEVICE_RE.fullmatch(drm_file):
                    continue
                dev_path = os.path.join(self.devfs_dir, drm_file)
                if not os.path.exists(dev_path):
                    continue
                # even querying metrics requires the device to be writable
                spec = DeviceSpec(dev_path, dev_path, "rw")
                if not is_pf_with_vfs:
                    log.debug("Adding %s to GPU %s", dev_path, name)
                    nodes.append(spec)
                if self.options.enable_monitoring:
                    log.debug("Adding %s to GPU %s/%s", dev_path, MONITOR_TYPE, MONITOR_ID)
                    monitor.append(spec)

            if nodes:
                info = DeviceInfo(Health.HEALTHY, nodes)
                for index in range(self.options.shared_dev_num):
                    tree.add_device(DEVICE_TYPE, f"{name}-{index}", info)

        # all Intel GPUs are under a single monitoring resource
        if monitor:
            tree.add_device(MONITOR_TYPE, MONITOR_ID, DeviceInfo(Health.HEALTHY, monitor))

        return tree