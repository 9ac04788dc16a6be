# accelplugins

Discovery of GPU and FPGA accelerators from sysfs and devfs. What the package
finds becomes a `DeviceTree`, which is a mapping from device type to device id
to `DeviceInfo`. It can also become node feature labels.

## Installation

    pip install accelplugins

## Core types (`accelplugins.deviceplugin`)

- `Health`: `HEALTHY` or `UNHEALTHY`.
- `DeviceSpec(host_path, container_path, permissions="rw")`: a device node.
- `DeviceInfo(health, nodes=(), mounts=(), envs={})`: one allocatable device.
- `DeviceTree`: a `dict` subclass. `add_device(dev_type, dev_id, info)` stores
  `info` under `tree[dev_type][dev_id]`.
- `AllocateResponse` and `ContainerAllocateResponse`: allocation results. The
  second one carries `annotations`.
- `Notifier`: a protocol with a single method, `notify(tree)`.

## GPU node labels

The `gpu-nfdhook` command reads `/host-sys/class/drm` and
`/host-sys/kernel/debug/dri`, then prints one `name=value` label per line:

    gpu-nfdhook

It exits with status 1 if the sysfs directory cannot be read.

Labels are written under the `gpu.intel.com/` prefix:

- `cards`: the Intel cards found, joined with dots, for example `card0.card1`.
- `millicores`: 1000 per card.
- `memory.max`: the sum of the `gt/gt*/addr_range` values of each card.
- `platform_<name>.count`, `platform_<name>.tiles`, `platform_<name>.present`
  and `platform_gen`: these come from `i915_capabilities` in debugfs, when
  that file can be read.

Two environment variables change the memory label:

- `GPU_MEMORY_OVERRIDE` is the memory reported for a card whose tile memory
  cannot be read. In that case the card counts as one tile.
- `GPU_MEMORY_RESERVED` is subtracted from the tile memory that was read.

From Python:

    from accelplugins.labeler import Labeler

    labeler = Labeler("/sys/class/drm", "/sys/kernel/debug/dri")
    labeler.create_labels()
    labeler.print_labels()

## GPU device scanning (`accelplugins.gpu_plugin`)

    from accelplugins.gpu_plugin import GpuDevicePlugin, Options

    plugin = GpuDevicePlugin("/sys/class/drm", "/dev/dri",
                             Options(shared_dev_num=1, enable_monitoring=False))
    tree = plugin.scan_devices()

- Every Intel card (vendor `0x8086`) whose DRM nodes exist in devfs is listed
  under the `i915` type.
- Each card appears `shared_dev_num` times, with ids `card0-0`, `card0-1` and
  so on.
- Control nodes are skipped.
- A physical function with SR-IOV virtual functions enabled is not listed
  itself.
- When `enable_monitoring` is set, every node is also collected under the
  `i915_monitoring` type with the id `all`.

`scan(notifier)` repeats the scan every five seconds and passes each tree to
`notifier.notify(tree)`. If a scan fails, it logs the failure and passes an
empty tree instead. The loop returns after `stop()` is called.

## FPGA device scanning (`accelplugins.fpga_plugin`)

`new_device_plugin(mode, root_path, new_port)` checks which kernel driver is
loaded under `root_path` and builds the matching `FpgaDevicePlugin`:

- OPAE, if `sys/class/fpga` exists.
- DFL, if `sys/class/fpga_region` exists.

If neither directory exists, it raises `FileNotFoundError`. You can also call
`new_device_plugin_opae` and `new_device_plugin_dfl` directly.

The modes (`Mode`) are:

- `af`: one resource per accelerator function. The resource is named by
  `get_afu_dev_type(interface_id, afu_id)`.
- `region`: one resource per region interface ID, holding the port nodes.
  `post_allocate(response)` adds the `com.intel.fpga.mode` annotation with the
  value `fpga.intel.com/region`.
- `regiondevel`: like `region`, but the FME node is added as well.

An unknown mode raises `ValueError`. Devices that report an ID made entirely
of `f` characters are marked unhealthy.

`new_port` is a callable that takes a port device name and returns an object
with these methods:

- `get_name()`
- `get_accelerator_type_uuid()`
- `get_dev_path()`
- `get_fme()`

The object returned by `get_fme()` must provide `get_name()`,
`get_interface_uuid()` and `get_dev_path()`.

`scan_fpgas()` returns one `DeviceTree`. `scan(notifier)` and `stop()` work
as they do for the GPU plugin. The tree builders `get_afu_tree`,
`get_region_tree` and `get_region_devel_tree` take a list of `Device` objects
and can be called directly.

## What the package does not do

The package does not:

- register with the kubelet or serve device allocation requests.
- provide a command that runs the GPU or FPGA plugin.
- read FPGA port or FME information from the system itself. That must be
  supplied through `new_port`.
- program FPGA bitstreams.