"""NVIDIA GPU device handling: request generation, admission and filtering."""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field

from hami.k8sutil import Container, EnvVar, Pod

logger = logging.getLogger(__name__)

HANDSHAKE_ANNOS = "hami.io/node-handshake"
REGISTER_ANNOS = "hami.io/node-nvidia-register"
NVIDIA_GPU_DEVICE = "NVIDIA"
NVIDIA_GPU_COMMON_WORD = "GPU"
GPU_IN_USE = "nvidia.com/use-gputype"
GPU_NO_USE = "nvidia.com/nouse-gputype"
NUMA_BIND = "nvidia.com/numa-bind"
NODE_LOCK_NVIDIA = "hami.io/mutex.lock"
GPU_USE_UUID = "nvidia.com/use-gpuuuid"
GPU_NO_USE_UUID = "nvidia.com/nouse-gpuuuid"
ALLOCATE_MODE = "nvidia.com/vgpu-mode"

MIG_MODE = "mig"
HAMI_CORE_MODE = "hami-core"
MPS_MODE = "mps"

TASK_PRIORITY_ENV = "CUDA_TASK_PRIORITY"

# Annotation keys registered per device vendor.
IN_REQUEST_DEVICES: dict[str, str] = {}
SUPPORT_DEVICES: dict[str, str] = {}
HANDSHAKE_ANNOTATIONS: dict[str, str] = {}

_TRUE_WORDS = {"1", "t", "T", "TRUE", "true", "True"}
_INTEGER = re.compile(r"[+-]?[0-9]+")


@dataclass
class NvidiaConfig:
    """Resource names and defaults for NVIDIA GPU scheduling."""

    resource_count_name: str = ""
    resource_memory_name: str = ""
    resource_core_name: str = ""
    resource_memory_percentage_name: str = ""
    resource_priority: str = ""
    overwrite_env: bool = False
    default_memory: int = 0
    default_cores: int = 0
    default_gpu_num: int = 0
    device_split_count: int = 0
    device_memory_scaling: float = 0.0
    device_core_scaling: float = 0.0
    disable_core_limit: bool = False


@dataclass
class FilterDevice:
    """Devices, by UUID or index, that must not be registered."""

    uuid: list[str] = field(default_factory=list)
    index: list[int] = field(default_factory=list)


@dataclass
class ContainerDeviceRequest:
    """What one container asks of one kind of device."""

    nums: int = 0
    type: str = ""
    memreq: int = 0
    mem_percentagereq: int = 0
    coresreq: int = 0


@dataclass
class DeviceUsage:
    """The identity of a device considered for allocation."""

    id: str = ""
    type: str = ""
    mode: str = ""


def _as_int(value: object) -> int | None:
    """Return the value as an exact integer, or None if it is not one."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def _lookup(container: Container, name: str) -> tuple[bool, object]:
    if name in container.limits:
        return True, container.limits[name]
    if name in container.requests:
        return True, container.requests[name]
    return False, None


def init_nvidia_device(config: NvidiaConfig) -> NvidiaGPUDevices:
    """Register NVIDIA annotation keys and build the device handler."""
    logger.info(
        "initializing nvidia device resourceName=%s resourceMem=%s DefaultGPUNum=%s",
        config.resource_count_name,
        config.resource_memory_name,
        config.default_gpu_num,
    )
    IN_REQUEST_DEVICES[NVIDIA_GPU_DEVICE] = "hami.io/vgpu-devices-to-allocate"
    SUPPORT_DEVICES[NVIDIA_GPU_DEVICE] = "hami.io/vgpu-devices-allocated"
    HANDSHAKE_ANNOTATIONS[NVIDIA_GPU_DEVICE] = HANDSHAKE_ANNOS
    return NvidiaGPUDevices(config)


def filter_device_to_register(
    uuid: str, index_str: str, filter_device: FilterDevice | None
) -> bool:
    """Return True if the device with this UUID or index is filtered out."""
    if filter_device is None or (not filter_device.uuid and not filter_device.index):
        return False
    if uuid and uuid in set(filter_device.uuid):
        return True
    if index_str:
        if not _INTEGER.fullmatch(index_str):
            logger.error("Error converting index to int: %r", index_str)
            return False
        if int(index_str) in set(filter_device.index):
            return True
    return False


def check_gpu_type(annos: dict[str, str], card_type: str) -> bool:
    """Check a card type against the use and no-use type annotations."""
    card_type = card_type.upper()
    if GPU_IN_USE in annos:
        use_types = annos[GPU_IN_USE].split(",")
        if not any(t.upper() in card_type for t in use_types):
            return False
    if GPU_NO_USE in annos:
        unuse_types = annos[GPU_NO_USE].split(",")
        if any(t.upper() in card_type for t in unuse_types):
            return False
    return True


def assert_numa(annos: dict[str, str]) -> bool:
    """Return True if the annotations ask for NUMA binding."""
    return annos.get(NUMA_BIND) in _TRUE_WORDS


class NvidiaGPUDevices:
    """Scheduling logic for NVIDIA GPUs."""

    def __init__(self, config: NvidiaConfig) -> None:
        self.config = config

    def common_word(self) -> str:
        return NVIDIA_GPU_COMMON_WORD

    def mutate_admission(self, container: Container, pod: Pod) -> bool:
        """Adjust a container on admission; return True if it requests GPUs."""
        cfg = self.config
        limits = container.limits
        if cfg.resource_priority in limits:
            priority = limits[cfg.resource_priority]
            container.env.append(EnvVar(TASK_PRIORITY_ENV, str(math.ceil(priority))))

        if cfg.resource_count_name in limits:
            return True

        requested = False
        if any(
            name in limits
            for name in (
                cfg.resource_core_name,
                cfg.resource_memory_name,
                cfg.resource_memory_percentage_name,
            )
        ):
            if cfg.default_gpu_num > 0:
                limits[cfg.resource_count_name] = cfg.default_gpu_num
                requested = True

        if not requested and cfg.overwrite_env:
            container.env.append(EnvVar("NVIDIA_VISIBLE_DEVICES", "none"))
        return requested

    def check_type(
        self,
        annos: dict[str, str],
        device: DeviceUsage,
        request: ContainerDeviceRequest,
    ) -> tuple[bool, bool, bool]:
        """Return (is NVIDIA request, type allowed, NUMA enforced)."""
        type_ok = check_gpu_type(annos, device.type)
        mode = annos.get(ALLOCATE_MODE)
        if mode is not None and device.mode not in mode:
            type_ok = False
        if request.type == NVIDIA_GPU_DEVICE:
            return True, type_ok, assert_numa(annos)
        return False, False, False

    def check_uuid(self, annos: dict[str, str], device: DeviceUsage) -> bool:
        """Check the device ID against the use and no-use UUID annotations."""
        if GPU_USE_UUID in annos:
            return device.id in annos[GPU_USE_UUID].split(",")
        if GPU_NO_USE_UUID in annos:
            return device.id not in annos[GPU_NO_USE_UUID].split(",")
        return True

    def generate_resource_requests(self, container: Container) -> ContainerDeviceRequest:
        """Build the GPU request a container makes, or an empty request."""
        cfg = self.config
        found, value = _lookup(container, cfg.resource_count_name)
        if not found:
            return ContainerDeviceRequest()
        nums = _as_int(value)
        if nums is None:
            return ContainerDeviceRequest()

        memnum = 0
        found, mem = _lookup(container, cfg.resource_memory_name)
        if found and (parsed := _as_int(mem)) is not None:
            memnum = parsed

        mempnum = 101
        found, memp = _lookup(container, cfg.resource_memory_percentage_name)
        if found and (parsed := _as_int(memp)) is not None:
            mempnum = parsed

        if mempnum == 101 and memnum == 0:
            if cfg.default_memory != 0:
                memnum = cfg.default_memory
            else:
                mempnum = 100

        corenum = cfg.default_cores
        found, core = _lookup(container, cfg.resource_core_name)
        if found and (parsed := _as_int(core)) is not None:
            corenum = parsed

        return ContainerDeviceRequest(
            nums=nums,
            type=NVIDIA_GPU_DEVICE,
            memreq=memnum,
            mem_percentagereq=mempnum,
            coresreq=corenum,
        )