# hami

Building blocks for sharing GPUs between Kubernetes workloads. The package has five modules.

## Modules

### `hami.k8sutil`

Small pod models: `Pod`, `Container`, `EnvVar` and `PodPhase`. A `Container` holds its resource `limits` and `requests` as plain dictionaries, plus a list of `env` entries.

It also has three pod helpers:

- `resource_requests(pod, devices)` takes a mapping from device name to device handler. For each container it returns the requests whose count is positive.
- `is_pod_in_terminated_state(pod)` is true for pods in the `FAILED` or `SUCCEEDED` phase.
- `all_containers_created(pod)` is true once there are at least as many container statuses as containers.

### `hami.nvidia`

`NvidiaGPUDevices` works from an `NvidiaConfig` that names the resources for GPU count, memory, memory percentage, cores and priority.

`generate_resource_requests(container)` builds a `ContainerDeviceRequest` with these fields:

- `nums`
- `type`
- `memreq`
- `mem_percentagereq`
- `coresreq`

It reads limits first and falls back to requests. When neither memory nor a memory percentage is given, it uses `default_memory`, or else 100 %. When no core value is given, it uses `default_cores`.

`mutate_admission(container, pod)` changes the container in place and returns whether it asks for GPUs:

- It adds a `CUDA_TASK_PRIORITY` environment variable when the priority resource is set.
- It sets the GPU count to `default_gpu_num` when only core or memory resources are set.
- It adds `NVIDIA_VISIBLE_DEVICES=none` when `overwrite_env` is on and no GPUs are requested.

`check_type(annos, device, request)` applies the `nvidia.com/use-gputype`, `nvidia.com/nouse-gputype`, `nvidia.com/vgpu-mode` and `nvidia.com/numa-bind` annotations to a `DeviceUsage`.

`check_uuid(annos, device)` applies `nvidia.com/use-gpuuuid` and `nvidia.com/nouse-gpuuuid`.

There are also module-level functions:

- `init_nvidia_device(config)` registers the NVIDIA annotation keys and returns a handler.
- `filter_device_to_register(uuid, index_str, filter_device)` tells whether a device matches a `FilterDevice` by UUID or index.
- `check_gpu_type` and `assert_numa` are available on their own.

### `hami.oci`

`FileSpec(path)` works on an OCI runtime spec stored as a JSON file:

- `load()` reads it.
- `modify(modifier)` calls the modifier on the loaded dictionary.
- `flush()` writes it back over the file.

Failures are raised as `SpecError`. This includes calling `modify` before anything has been loaded.

### `hami.shared_region`

`SharedRegionV0` and `SharedRegionV1` decode the two layouts of the shared-memory region that the vGPU interception library keeps for each container. Each wraps a writable buffer, such as a `bytearray` or an `mmap`.

They report, per device:

- memory use summed over all processes (context, module, buffer, offset, total);
- SM utilisation;
- memory limit;
- UUID.

They also expose `priority`, `recent_kernel`, `utilization_switch` and `last_kernel_time`. `last_kernel_time` is always 0 for version 0.

They can write back:

- `set_device_memory_limit` and `set_device_sm_limit` set the limit for every device in use.
- `recent_kernel` and `utilization_switch` can be assigned.

### `hami.monitor`

`load_cache(path)` maps the cache file in a container directory and returns a `ContainerUsage`. It returns `None` when there is no cache file. It raises `CacheError` when:

- there are too many files;
- the cache file is too small;
- the magic flag is wrong;
- the version is unknown.

`ContainerLister(container_path, list_pod_uids)` keeps the loaded caches in `containers`, keyed by directory name. You can also build it with `ContainerLister.from_env(list_pod_uids)`, which uses `$HOOK_PATH/containers`.

`update()` does the following:

- It loads caches for new directories that belong to a listed pod.
- It records the pod UID and container name from the directory name.
- It unmaps and deletes directories of pods that are no longer listed, once they are more than 300 seconds old.

`close()` unmaps everything.

## Install

```
pip install .
```

The package has no runtime dependencies. For the tests:

```
pip install ".[test]"
pytest
```

## Example

```python
from hami.k8sutil import Container, Pod, resource_requests
from hami.nvidia import NvidiaConfig, init_nvidia_device

devices = {
    "NVIDIA": init_nvidia_device(
        NvidiaConfig(
            resource_count_name="nvidia.com/gpu",
            resource_memory_name="nvidia.com/gpumem",
            resource_memory_percentage_name="nvidia.com/gpumem-percentage",
            resource_core_name="nvidia.com/gpucores",
        )
    )
}

pod = Pod(containers=[Container(limits={"nvidia.com/gpu": 1, "nvidia.com/gpumem": 1000})])
print(resource_requests(pod, devices))
```

Reading a container's usage cache:

```python
from hami.monitor import load_cache

usage = load_cache("/usr/local/vgpu/containers/<pod-uid>_<container>")
if usage is not None:
    info = usage.info
    for idx in range(info.device_num()):
        print(info.device_memory_total(idx), info.device_memory_limit(idx))
    usage.close()
```

## What it does not do

This is a library only. It has no command-line tool, no scheduler or webhook server, and no device plugin.

It does not talk to a Kubernetes API server. `ContainerLister` learns which pods are on the node only through the `list_pod_uids` callable you pass in.

It does not lock nodes, and it does not decode node device registrations or encode pod device annotations.

It does not plan MIG partitions.

It does not query GPUs directly; usage figures come only from the shared-region cache files.