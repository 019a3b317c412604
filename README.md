# gpuplugin

Building blocks for exposing GPUs to a cluster scheduler. The package groups
devices per resource name, replicates them for time slicing, picks allocations
that spread replicas evenly, watches device health through XID events and
detects vGPU guests from PCI configuration space.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

The package has no runtime dependencies.

## Modules

### `gpuplugin.vgpu.pciutil`

- `NvidiaPCILib(root="/sys/bus/pci/devices")` lists the NVIDIA PCI devices
  (vendor `0x10de`) below a sysfs-style directory. `devices()` returns
  `PCIDevice` objects and raises `PCIError` if a file cannot be read.
- `PCIDevice.get_vendor_specific_capability()` walks the PCI capability list
  and returns the vendor-specific capability (id `0x09`) as `bytes`, or
  `None` when there is none. It raises `PCIError` when fewer than 256 bytes
  of configuration space were read.
- `get_byte`, `get_word` and `get_long` read 8-, 16- and 32-bit
  little-endian values.
- `new_mock_nvidia_pci()` returns a `MockNvidiaPCI` with two fixed devices:
  a passthrough GPU (`"passthrough"`) and a vGPU (`"vgpu"`).

### `gpuplugin.vgpu.vgpu`

- `VGPULib(pci).devices()` returns a `VGPUDevice` for every PCI device whose
  vendor capability carries the `VF` signature (`is_vgpu_device`).
- `VGPUDevice.get_info()` returns a `VGPUInfo` with `host_driver_version`
  and `host_driver_branch`, and raises `VGPUError` if no driver-version
  record is found.
- `new_mock_vgpu()` is a `VGPULib` over `new_mock_nvidia_pci()`.

### `gpuplugin.resource.manager`

- Abstract `Manager` and `Device` interfaces.
- `NullManager`: no devices; `init` and `shutdown` do nothing; the version
  queries raise `ResourceError`.
- `FallbackManager` / `new_fallback_to_null_on_init_error(manager)`: wraps a
  manager and, if its `init()` raises, logs a warning and delegates to a
  `NullManager` from then on.

### `gpuplugin.rm.devices`

- `Device`: `id`, `index`, `paths`, `health` and `numa_node`, with
  `is_mig_device()` (the index contains `:`),
  `aligned_allocation_supported()` and `get_uuid()`.
- `Devices`: a `dict` of ID to `Device` with `contains`, `get_by_id`,
  `get_by_index`, `subset`, `difference`, `get_ids`, `get_indices`,
  `get_paths` and `aligned_allocation_supported`.
- `AnnotatedID`: a replica ID of the form `<id>::<replica>`, with
  `has_annotations()`, `split()` and `get_id()`; `new_annotated_id`,
  `any_has_annotations` and `strip_annotations` work on them.
- `build_device(index, info)` builds a healthy `Device` from any object with
  `get_uuid()`, `get_paths()` and `get_numa_node()`.
- `c_string(values)` decodes a NUL-terminated sequence of byte values.

### `gpuplugin.rm.device_map`

- `DeviceMap`: a `dict` of resource name to `Devices`, with `set_entry`,
  `insert`, `merge`, `is_empty` and `get_ids_of_devices_to_replicate`.
- `update_device_map_with_replicas(config, devices)` returns a new map in
  which the selected devices of each time-sliced resource are replaced by
  `replicas` annotated copies, under `rename` if one is given. Errors raise
  `DeviceMapError`.

### `gpuplugin.rm.resource_manager`

- `ResourceManager(config, resource, devices)` with
  `distributed_alloc(available, required, size)`: the required IDs first,
  then the remaining picks taken one at a time from the GPU with the fewest
  replicas in use. Raises `AllocationError` when there are too few
  candidates.

### `gpuplugin.rm.tegra`

- `TegraDevice`: UUID `"tegra"`, no paths, no NUMA node.
- `build_tegra_device_map(config)` and `new_tegra_resource_managers(config)`
  give one `TegraResourceManager` per non-empty resource. Its
  `get_preferred_allocation` is the distributed allocation,
  `get_device_paths` returns `[]` and `check_health` does nothing.

### `gpuplugin.rm.nvml_manager`

- `NvmlResourceManager(config, resource, devices, nvml)`:
  - `get_device_paths(ids)` returns `/dev/nvidiactl`, `/dev/nvidia-uvm`,
    `/dev/nvidia-uvm-tools` and `/dev/nvidia-modeset` followed by the paths
    of the requested devices.
  - `check_health(stop, unhealthy)` registers XID and ECC events for every
    device and, until `stop.is_set()`, puts devices hit by critical XID
    errors into `unhealthy` (anything with `put`). XIDs 13, 31, 43, 45 and
    68 are ignored.
  - `get_device_placement(device)` and `get_mig_device_parts(device)` return
    `(parent UUID, GI, CI)`; full devices report `0xFFFFFFFF` for both
    instance IDs.
- `get_additional_xids(value)` parses a comma-separated list of XIDs,
  skipping entries that are not unsigned integers.
- `parse_mig_device_uuid(mig)` splits `MIG-GPU-<uuid>/<gi>/<ci>`, raising
  `HealthCheckError` for anything else.

Health checks can be narrowed with the `DP_DISABLE_HEALTHCHECKS`
environment variable: `all`, or any value containing `xids`, turns them off;
otherwise its comma-separated XIDs are ignored in addition to the ones above.

## Examples

```python
from gpuplugin.vgpu.vgpu import new_mock_vgpu

for device in new_mock_vgpu().devices():
    info = device.get_info()
    print(info.host_driver_version, info.host_driver_branch)  # 460.16 r460_00
```

```python
from gpuplugin.rm.devices import AnnotatedID, new_annotated_id

replica = new_annotated_id("GPU-example", 2)
assert AnnotatedID(replica).split() == ("GPU-example", 2)
```

## What the package does not do

- It does not talk to the GPU driver. NVML-style operations (`init`,
  `shutdown`, `event_set_create`, `device_get_handle_by_uuid` and the device
  and event objects they return) come from an object the caller passes to
  `NvmlResourceManager`; the package ships no such binding and no
  NVML-backed `Manager`.
- It does not discover the platform or build resource managers from a
  system on its own, and `NvmlResourceManager` has no preferred-allocation
  method; only the distributed allocation of `ResourceManager` is provided.
- It does not define a configuration format. Configuration objects are
  supplied by the caller and need the attributes the functions read, such as
  `config.sharing.time_slicing.resources`, `config.resources.gpus` (each
  with `name` and `pattern.matches(...)`) and `config.flags.fail_on_init_error`.
- It has no command-line program and runs no server to register with a
  kubelet.