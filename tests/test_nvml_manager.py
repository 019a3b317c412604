import queue
import threading
from types import SimpleNamespace

import pytest

from gpuplugin.rm.devices import Device, Devices
from gpuplugin.rm.nvml_manager import (
    EVENT_TYPE_DOUBLE_BIT_ECC_ERROR,
    EVENT_TYPE_SINGLE_BIT_ECC_ERROR,
    EVENT_TYPE_XID_CRITICAL_ERROR,
    NO_INSTANCE,
    HealthCheckError,
    NvmlResourceManager,
    get_additional_xids,
    parse_mig_device_uuid,
)


@pytest.fixture(autouse=True)
def _clear_env(monkeypatch):
    monkeypatch.delenv("DP_DISABLE_HEALTHCHECKS", raising=False)


class FakeUUIDHandle:
    def __init__(self, uuid):
        self.uuid = uuid

    def get_uuid(self):
        return self.uuid


class FakeGpu:
    def __init__(self, supported=0xFF, register_error=None):
        self.supported = supported
        self.register_error = register_error
        self.registered = None

    def get_supported_event_types(self):
        return self.supported

    def register_events(self, mask, event_set):
        if self.register_error is not None:
            raise self.register_error
        self.registered = mask


class FakeMig:
    def __init__(self, parent_uuid, gi, ci):
        self.parent_uuid = parent_uuid
        self.gi = gi
        self.ci = ci

    def get_device_handle_from_mig_device_handle(self):
        return FakeUUIDHandle(self.parent_uuid)

    def get_gpu_instance_id(self):
        return self.gi

    def get_compute_instance_id(self):
        return self.ci


class FakeEventSet:
    def __init__(self, events, stop):
        self.events = list(events)
        self.stop = stop
        self.freed = False

    def wait(self, timeout):
        if not self.events:
            self.stop.set()
            return None
        item = self.events.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def free(self):
        self.freed = True


class FakeNvml:
    def __init__(self, handles, event_set=None, init_error=None):
        self.handles = handles
        self.event_set = event_set
        self.init_error = init_error
        self.init_called = False
        self.shutdown_called = False

    def init(self):
        self.init_called = True
        if self.init_error is not None:
            raise self.init_error

    def shutdown(self):
        self.shutdown_called = True

    def event_set_create(self):
        return self.event_set

    def device_get_handle_by_uuid(self, uuid):
        try:
            return self.handles[uuid]
        except KeyError:
            raise RuntimeError("not found") from None


def _event(uuid, xid, event_type=EVENT_TYPE_XID_CRITICAL_ERROR, gi=NO_INSTANCE, ci=NO_INSTANCE):
    return SimpleNamespace(
        event_type=event_type,
        event_data=xid,
        device=FakeUUIDHandle(uuid),
        gpu_instance_id=gi,
        compute_instance_id=ci,
    )


def _config(fail_on_init_error=True):
    return SimpleNamespace(flags=SimpleNamespace(fail_on_init_error=fail_on_init_error))


def _drain(q):
    items = []
    while not q.empty():
        items.append(q.get_nowait())
    return items


@pytest.mark.parametrize(
    "value, expected",
    [
        ("", []),
        (",", []),
        ("not-an-int", []),
        ("68", [68]),
        ("-68", []),
        ("68  ", [68]),
        ("68,", [68]),
        (",68", [68]),
        ("68,67", [68, 67]),
        ("68,not-an-int,67", [68, 67]),
    ],
)
def test_get_additional_xids(value, expected):
    assert get_additional_xids(value) == expected


def test_get_additional_xids_rejects_overflow():
    assert get_additional_xids("18446744073709551616,5") == [5]


def test_parse_mig_device_uuid():
    assert parse_mig_device_uuid("MIG-GPU-1234/3/0") == ("GPU-1234", 3, 0)


@pytest.mark.parametrize(
    "value",
    ["GPU-1234", "MIG-1234/1/2", "MIG-GPU-1234/1", "MIG-GPU-1234/x/2", "MIG-GPU-1234/1/y", "XIG-GPU-1/1/2"],
)
def test_parse_mig_device_uuid_rejects_malformed(value):
    with pytest.raises(HealthCheckError, match="Unable to parse UUID as MIG device"):
        parse_mig_device_uuid(value)


def test_get_device_paths_includes_control_nodes_and_requested():
    devices = Devices(
        {
            "GPU-a": Device(id="GPU-a", index="0", paths=["/dev/nvidia0"]),
            "GPU-b": Device(id="GPU-b", index="1", paths=["/dev/nvidia1"]),
        }
    )
    rm = NvmlResourceManager(_config(), "nvidia.com/gpu", devices, FakeNvml({}))
    assert rm.get_device_paths(["GPU-b", "unknown"]) == [
        "/dev/nvidiactl",
        "/dev/nvidia-uvm",
        "/dev/nvidia-uvm-tools",
        "/dev/nvidia-modeset",
        "/dev/nvidia1",
    ]


def test_device_placement_of_full_device():
    rm = NvmlResourceManager(_config(), "gpu", Devices(), FakeNvml({}))
    device = Device(id="GPU-a::2", index="0")
    assert rm.get_device_placement(device) == ("GPU-a", NO_INSTANCE, NO_INSTANCE)


def test_mig_device_parts_falls_back_to_parsing():
    rm = NvmlResourceManager(_config(), "gpu", Devices(), FakeNvml({}))
    device = Device(id="MIG-GPU-b/1/2", index="0:0")
    assert rm.get_device_placement(device) == ("GPU-b", 1, 2)


def test_mig_device_parts_uses_handle():
    nvml = FakeNvml({"MIG-abc": FakeMig("GPU-parent", 4, 5)})
    rm = NvmlResourceManager(_config(), "gpu", Devices(), nvml)
    device = Device(id="MIG-abc", index="0:1")
    assert rm.get_mig_device_parts(device) == ("GPU-parent", 4, 5)


def test_mig_device_parts_rejects_full_device():
    rm = NvmlResourceManager(_config(), "gpu", Devices(), FakeNvml({}))
    with pytest.raises(HealthCheckError, match="full device"):
        rm.get_mig_device_parts(Device(id="GPU-a", index="0"))


@pytest.mark.parametrize("value", ["all", "XIDS", "xids,5"])
def test_check_health_disabled(monkeypatch, value):
    monkeypatch.setenv("DP_DISABLE_HEALTHCHECKS", value)
    nvml = FakeNvml({})
    rm = NvmlResourceManager(_config(), "gpu", Devices(), nvml)
    assert rm.check_health(threading.Event(), queue.Queue()) is None
    assert nvml.init_called is False


def test_check_health_init_failure_raises_when_required():
    nvml = FakeNvml({}, init_error=RuntimeError("boom"))
    rm = NvmlResourceManager(_config(True), "gpu", Devices(), nvml)
    with pytest.raises(HealthCheckError, match="failed to initialize NVML: boom"):
        rm.check_health(threading.Event(), queue.Queue())


def test_check_health_init_failure_tolerated():
    nvml = FakeNvml({}, init_error=RuntimeError("boom"))
    rm = NvmlResourceManager(_config(False), "gpu", Devices(), nvml)
    q = queue.Queue()
    assert rm.check_health(threading.Event(), q) is None
    assert q.empty()


def test_check_health_processes_events():
    full = Device(id="GPU-a", index="0")
    mig = Device(id="MIG-GPU-b/1/2", index="1:0")
    devices = Devices({full.id: full, mig.id: mig})
    stop = threading.Event()
    events = [
        _event("GPU-a", 13),
        _event("GPU-a", 79, event_type=EVENT_TYPE_DOUBLE_BIT_ECC_ERROR),
        _event("GPU-other", 79),
        _event("GPU-b", 79, gi=3, ci=2),
        _event("GPU-b", 79, gi=1, ci=2),
        _event("GPU-a", 79),
    ]
    event_set = FakeEventSet(events, stop)
    gpu_a = FakeGpu(supported=EVENT_TYPE_XID_CRITICAL_ERROR | EVENT_TYPE_SINGLE_BIT_ECC_ERROR)
    gpu_b = FakeGpu()
    nvml = FakeNvml({"GPU-a": gpu_a, "GPU-b": gpu_b}, event_set=event_set)
    rm = NvmlResourceManager(_config(), "gpu", devices, nvml)
    q = queue.Queue()

    rm.check_health(stop, q)

    assert [d.id for d in _drain(q)] == ["MIG-GPU-b/1/2", "GPU-a"]
    assert gpu_a.registered == EVENT_TYPE_XID_CRITICAL_ERROR | EVENT_TYPE_SINGLE_BIT_ECC_ERROR
    assert event_set.freed is True
    assert nvml.shutdown_called is True


def test_check_health_additional_skipped_xids(monkeypatch):
    monkeypatch.setenv("DP_DISABLE_HEALTHCHECKS", "79")
    full = Device(id="GPU-a", index="0")
    stop = threading.Event()
    event_set = FakeEventSet([_event("GPU-a", 79), _event("GPU-a", 80)], stop)
    nvml = FakeNvml({"GPU-a": FakeGpu()}, event_set=event_set)
    rm = NvmlResourceManager(_config(), "gpu", Devices({full.id: full}), nvml)
    q = queue.Queue()
    rm.check_health(stop, q)
    assert [d.event_data if hasattr(d, "event_data") else d.id for d in _drain(q)] == ["GPU-a"]


def test_check_health_marks_unregistrable_and_unknown_devices():
    good = Device(id="GPU-a", index="0")
    failing = Device(id="GPU-c", index="1")
    missing = Device(id="GPU-z", index="2")
    devices = Devices({good.id: good, failing.id: failing, missing.id: missing})
    stop = threading.Event()
    event_set = FakeEventSet([], stop)
    nvml = FakeNvml(
        {"GPU-a": FakeGpu(), "GPU-c": FakeGpu(register_error=NotImplementedError("old"))},
        event_set=event_set,
    )
    rm = NvmlResourceManager(_config(), "gpu", devices, nvml)
    q = queue.Queue()
    rm.check_health(stop, q)
    assert sorted(d.id for d in _drain(q)) == ["GPU-c", "GPU-z"]


def test_check_health_wait_error_marks_all_devices():
    a = Device(id="GPU-a", index="0")
    b = Device(id="GPU-b", index="1")
    stop = threading.Event()
    event_set = FakeEventSet([RuntimeError("wait failed")], stop)
    nvml = FakeNvml({"GPU-a": FakeGpu(), "GPU-b": FakeGpu()}, event_set=event_set)
    rm = NvmlResourceManager(_config(), "gpu", Devices({a.id: a, b.id: b}), nvml)
    q = queue.Queue()
    rm.check_health(stop, q)
    assert sorted(d.id for d in _drain(q)) == ["GPU-a", "GPU-b"]


def test_check_health_returns_immediately_when_stopped():
    a = Device(id="GPU-a", index="0")
    stop = threading.Event()
    stop.set()
    event_set = FakeEventSet([_event("GPU-a", 79)], stop)
    nvml = FakeNvml({"GPU-a": FakeGpu()}, event_set=event_set)
    rm = NvmlResourceManager(_config(), "gpu", Devices({a.id: a}), nvml)
    q = queue.Queue()
    rm.check_health(stop, q)
    assert q.empty()
    assert len(event_set.events) == 1