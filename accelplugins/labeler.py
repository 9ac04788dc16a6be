"""Node feature discovery hook that emits labels for Intel GPUs."""

from __future__ import annotations

import argparse
import glob
import logging
import os
import re
from collections.abc import Callable, MutableMapping

log = logging.getLogger(__name__)

LABEL_NAMESPACE = "gpu.intel.com/"
GPU_LIST_LABEL_NAME = "cards"
MILLICORE_LABEL_NAME = "millicores"
MILLICORES_PER_GPU = 1000
MEMORY_OVERRIDE_ENV = "GPU_MEMORY_OVERRIDE"
MEMORY_RESERVED_ENV = "GPU_MEMORY_RESERVED"
GPU_DEVICE_RE = re.compile(r"card[0-9]+")
CONTROL_DEVICE_RE = re.compile(r"controlD[0-9]+")
VENDOR_STRING = "0x8086"

SYSFS_DIRECTORY = "/host-sys"
SYSFS_DRM_DIRECTORY = SYSFS_DIRECTORY + "/class/drm"
DEBUGFS_DRI_DIRECTORY = SYSFS_DIRECTORY + "/kernel/debug/dri"

_UINT64_LIMIT = 1 << 64
_INT64_LIMIT = 1 << 63
_LEADING_INT = re.compile(r"\s*([+-]?\d+)")


def _parse_uint(text: str, base: int = 10) -> int | None:
    """Parse an unsigned 64-bit integer; base 0 accepts 0x, 0o, 0b and leading-zero octal."""
    if not text or text[0] in "+-":
        return None
    try:
        if base == 0:
            lowered = text.lower()
            if lowered.startswith(("0x", "0o", "0b")):
                value = int(text, 0)
            elif len(text) > 1 and text[0] == "0":
                value = int(text[1:], 8)
            else:
                value = int(text, 10)
        else:
            if not (text.isascii() and text.isdigit()):
                return None
            value = int(text, base)
    except ValueError:
        return None
    return value if value < _UINT64_LIMIT else None


def _env_number(name: str) -> int:
    return _parse_uint(os.environ.get(name, "")) or 0


def _fallback() -> int:
    return _env_number(MEMORY_OVERRIDE_ENV)


def _as_int64(value: int) -> int:
    value %= _UINT64_LIMIT
    return value - _UINT64_LIMIT if value >= _INT64_LIMIT else value


def add_numeric_label(labels: MutableMapping[str, str], label_name: str, value_to_add: int) -> None:
    """Create a numeric label, or add to the value of an existing one."""
    value = 0
    existing = labels.get(label_name)
    if existing is not None:
        match = _LEADING_INT.match(existing)
        if match:
            value = int(match.group(1))
    labels[label_name] = str(value + value_to_add)


class Labeler:
    """Builds label/value pairs describing the GPUs of a node."""

    def __init__(self, sysfs_drm_dir: str, debugfs_dri_dir: str) -> None:
        self.sysfs_drm_dir = sysfs_drm_dir
        self.debugfs_dri_dir = debugfs_dri_dir
        self.labels: dict[str, str] = {}

    def scan(self) -> list[str]:
        """Return the names of Intel GPU cards found in sysfs."""
        try:
            entries = sorted(os.listdir(self.sysfs_drm_dir))
        except OSError as err:
            raise OSError(f"can't read sysfs folder {self.sysfs_drm_dir}: {err}") from err

        names = []
        for name in entries:
            if not GPU_DEVICE_RE.fullmatch(name):
                log.debug("Not compatible device %s", name)
                continue
            try:
                with open(os.path.join(self.sysfs_drm_dir, name, "device", "vendor"), encoding="utf-8") as handle:
                    vendor = handle.read()
            except OSError as err:
                log.warning("Skipping. Can't read vendor file: %s", err)
                continue
            if vendor.strip() != VENDOR_STRING:
                log.debug("Non-Intel GPU %s", name)
                continue
            drm_dir = os.path.join(self.sysfs_drm_dir, name, "device", "drm")
            try:
                os.listdir(drm_dir)
            except OSError as err:
                raise OSError(f"can't read device folder {drm_dir}: {err}") from err
            names.append(name)
        return names

    def get_tile_memory_amount(self, gpu_name: str) -> tuple[int, int]:
        """Return the total tile memory of a GPU and the number of tiles."""
        reserved = _env_number(MEMORY_RESERVED_ENV)
        pattern = os.path.join(self.sysfs_drm_dir, gpu_name, "gt", "gt*", "addr_range")

        memory = 0
        tiles = 0
        for file_name in sorted(glob.glob(pattern)):
            try:
                with open(file_name, encoding="utf-8") as handle:
                    text = handle.read().strip()
            except OSError as err:
                log.warning("Skipping. Can't read file: %s", err)
                continue
            amount = _parse_uint(text, 0)
            if amount is None:
                log.warning("Skipping. Can't convert addr_range: %r", text)
                continue
            tiles += 1
            memory += amount

        if memory == 0:
            return _fallback(), 1
        return (memory - reserved) % _UINT64_LIMIT, tiles

    def create_capability_labels(self, card_num: str, num_tiles: int) -> None:
        """Add labels read from the card's i915_capabilities debugfs file."""
        path = os.path.join(self.debugfs_dri_dir, card_num, "i915_capabilities")
        try:
            handle = open(path, encoding="utf-8", errors="replace")
        except OSError as err:
            # debugfs is not stable, no need to complain loudly
            log.info("Couldn't open file: %s", err)
            return

        def on_platform(platform: str) -> None:
            prefix = f"{LABEL_NAMESPACE}platform_{platform}"
            add_numeric_label(self.labels, prefix + ".count", 1)
            self.labels[prefix + ".tiles"] = str(num_tiles)
            self.labels[prefix + ".present"] = "true"

        def on_gen(gen: str) -> None:
            self.labels[LABEL_NAMESPACE + "platform_gen"] = gen

        actions: dict[re.Pattern[str], Callable[[str], None]] = {
            re.compile(r"platform:[ \t\r]*(\S+)"): on_platform,
            re.compile(r"gen:[ \t\r]*(\S+)"): on_gen,
        }

        with handle:
            for line in handle:
                for pattern, action in actions.items():
                    match = pattern.match(line)
                    if match:
                        action(match.group(1))
                        del actions[pattern]
                        break
                if not actions:
                    return

    def create_labels(self) -> None:
        """Scan the GPUs and fill in all labels."""
        gpu_names = self.scan()
        for gpu_name in gpu_names:
            gpu_num = gpu_name[len("card"):]
            memory, tiles = self.get_tile_memory_amount(gpu_name)
            self.create_capability_labels(gpu_num, tiles)
            add_numeric_label(self.labels, LABEL_NAMESPACE + "memory.max", _as_int64(memory))

        self.labels[LABEL_NAMESPACE + GPU_LIST_LABEL_NAME] = ".".join(gpu_names)
        add_numeric_label(
            self.labels, LABEL_NAMESPACE + MILLICORE_LABEL_NAME, MILLICORES_PER_GPU * len(gpu_names)
        )

    def print_labels(self) -> None:
        """Print the labels as key=value lines."""
        for key, value in self.labels.items():
            print(f"{key}={value}")


def main(argv: list[str] | None = None) -> int:
    """Emit GPU labels for node feature discovery."""
    parser = argparse.ArgumentParser(description="Print node labels describing Intel GPUs.")
    parser.parse_args(argv)

    labeler = Labeler(SYSFS_DRM_DIRECTORY, DEBUGFS_DRI_DIRECTORY)
    try:
        labeler.create_labels()
    except OSError as err:
        log.error("%s", err)
        return 1
    labeler.print_labels()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())