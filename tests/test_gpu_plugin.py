import pytest

from accelplugins.deviceplugin import Health
from accelplugins.gpu_plugin import (
    DEVICE_TYPE,
    MONITOR_ID,
    MONITOR_TYPE,
    GpuDevicePlugin,
    Options,
)


class MockNotifier:
    def __init__(self, plugin):
        self.plugin = plugin
        self.dev_count = 0
        self.monitor_count = 0
        self.calls = 0

    def notify(self, tree):
        self.calls += 1
        self.monitor_count = len(tree.get(MONITOR_TYPE, {}))
        self.dev_count = len(tree.get(DEVICE_TYPE, {}))
        self.plugin.stop()


def create_test_files(root, devfsdirs, sysfsdirs, sysfsfiles):
    sysfs = root / "sys"
    devfs = root / "dev"
    for d in devfsdirs:
        (devfs / d).mkdir(parents=True, exist_ok=True)
    for d in sysfsdirs:
        (sysfs / d).mkdir(parents=True, exist_ok=True)
    for name, body in sysfsfiles.items():
        (sysfs / name).write_bytes(body)
    return str(sysfs), str(devfs)


CASES = [
    ("no sysfs mounted", [], [], {}, Options(), 0, 0),
    ("no device installed", [], ["card0"], {}, Options(), 0, 0),
    ("missing dev node", [], ["card0/device"], {"card0/device/vendor": b"0x8086"}, Options(), 0, 0),
    (
        "one device",
        ["card0"],
        ["card0/device/drm/card0", "card0/device/drm/controlD64"],
        {"card0/device/vendor": b"0x8086"},
        Options(),
        1,
        0,
    ),
    (
        "sriov-1-pf-no-vfs + monitoring",
        ["card0"],
        ["card0/device/drm/card0", "card0/device/drm/controlD64"],
        {"card0/device/vendor": b"0x8086", "card0/device/sriov_numvfs": b"0"},
        Options(enable_monitoring=True),
        1,
        1,
    ),
    (
        "two sysfs records but one dev node",
        ["card0"],
        ["card0/device/drm/card0", "card1/device/drm/card1"],
        {"card0/device/vendor": b"0x8086", "card1/device/vendor": b"0x8086"},
        Options(),
        1,
        0,
    ),
    (
        "sriov-1-pf-and-2-vfs",
        ["card0", "card1", "card2"],
        ["card0/device/drm/card0", "card1/device/drm/card1", "card2/device/drm/card2"],
        {
            "card0/device/vendor": b"0x8086",
            "card0/device/sriov_numvfs": b"2",
            "card1/device/vendor": b"0x8086",
            "card2/device/vendor": b"0x8086",
        },
        Options(),
        2,
        0,
    ),
    (
        "two devices with 13 shares + monitoring",
        ["card0", "card1"],
        ["card0/device/drm/card0", "card1/device/drm/card1"],
        {"card0/device/vendor": b"0x8086", "card1/device/vendor": b"0x8086"},
        Options(shared_dev_num=13, enable_monitoring=True),
        26,
        1,
    ),
    (
        "wrong vendor",
        ["card0"],
        ["card0/device/drm/card0"],
        {"card0/device/vendor": b"0xbeef"},
        Options(),
        0,
        0,
    ),
    (
        "wrong vendor with 13 shares + monitoring",
        ["card0"],
        ["card0/device/drm/card0"],
        {"card0/device/vendor": b"0xbeef"},
        Options(shared_dev_num=13, enable_monitoring=True),
        0,
        0,
    ),
    ("no sysfs records", [], ["non_gpu_card"], {}, Options(), 0, 0),
]


@pytest.mark.parametrize(
    "devfsdirs,sysfsdirs,sysfsfiles,options,expected_devs,expected_monitors",
    [case[1:] for case in CASES],
    ids=[case[0] for case in CASES],
)
def test_scan(tmp_path, devfsdirs, sysfsdirs, sysfsfiles, options, expected_devs, expected_monitors):
    sysfs, devfs = create_test_files(tmp_path, devfsdirs, sysfsdirs, sysfsfiles)
    plugin = GpuDevicePlugin(sysfs, devfs, options)
    notifier = MockNotifier(plugin)
    plugin.scan(notifier)
    assert notifier.calls == 1
    assert notifier.dev_count == expected_devs
    assert notifier.monitor_count == expected_monitors


def test_scan_devices_missing_sysfs_raises(tmp_path):
    plugin = GpuDevicePlugin(str(tmp_path / "absent"), str(tmp_path / "dev"), Options())
    with pytest.raises(OSError):
        plugin.scan_devices()


def test_scan_devices_tree_contents(tmp_path):
    sysfs, devfs = create_test_files(
        tmp_path,
        ["card0"],
        ["card0/device/drm/card0", "card0/device/drm/controlD64"],
        {"card0/device/vendor": b"0x8086\n"},
    )
    plugin = GpuDevicePlugin(sysfs, devfs, Options(shared_dev_num=2, enable_monitoring=True))
    tree = plugin.scan_devices()
    assert sorted(tree[DEVICE_TYPE]) == ["card0-0", "card0-1"]
    info = tree[DEVICE_TYPE]["card0-0"]
    assert info.health is Health.HEALTHY
    expected_path = str(tmp_path / "dev" / "card0")
    assert [n.host_path for n in info.nodes] == [expected_path]
    assert info.nodes[0].permissions == "rw"
    assert list(tree[MONITOR_TYPE]) == [MONITOR_ID]


def test_is_compatible_device(tmp_path):
    sysfs, devfs = create_test_files(
        tmp_path,
        [],
        ["card0/device", "card1/device", "renderD128/device"],
        {
            "card0/device/vendor": b"0x8086",
            "card1/device/vendor": b"0x1002",
            "renderD128/device/vendor": b"0x8086",
        },
    )
    plugin = GpuDevicePlugin(sysfs, devfs)
    assert plugin.is_compatible_device("card0") is True
    assert plugin.is_compatible_device("card1") is False
    assert plugin.is_compatible_device("renderD128") is False
    assert plugin.is_compatible_device("card9") is False


def test_stop_before_scan_returns_after_one_notify(tmp_path):
    plugin = GpuDevicePlugin(str(tmp_path), str(tmp_path))

    class Counter:
        calls = 0

        def notify(self, tree):
            Counter.calls += 1

    plugin.stop()
    plugin.scan(Counter())
    assert Counter.calls == 1