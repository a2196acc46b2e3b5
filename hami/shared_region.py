"""Views over the shared-memory region that the vGPU hook library keeps per container.

Two layouts exist: the original one (version 0) and version 1, which adds a
version header, padding fields and the time of the last kernel launch. Each
view reads and writes a writable buffer such as a ``bytearray`` or ``mmap``.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Any

MAX_DEVICES = 16
MAX_PROCS = 1024
UUID_SIZE = 96

_U64_MASK = (1 << 64) - 1

_U64 = struct.Struct("=Q")
_I32 = struct.Struct("=i")
_I64 = struct.Struct("=q")

# Field offsets of a per-device memory record.
_CONTEXT_SIZE = 0
_MODULE_SIZE = 8
_BUFFER_SIZE = 16
_OFFSET = 24
_TOTAL = 32
# Field offset of the SM utilisation inside a per-device utilisation record.
_SM_UTIL = 16


@dataclass(frozen=True)
class _Layout:
    num: int
    uuids: int
    limit: int
    sm_limit: int
    procs: int
    proc_size: int
    used: int
    mem_stride: int
    util: int
    util_stride: int
    utilization_switch: int
    recent_kernel: int
    priority: int
    last_kernel_time: int | None
    size: int


_V0_LAYOUT = _Layout(
    num=48,
    uuids=56,
    limit=1592,
    sm_limit=1720,
    procs=1848,
    proc_size=1168,
    used=8,
    mem_stride=40,
    util=776,
    util_stride=24,
    utilization_switch=1197884,
    recent_kernel=1197888,
    priority=1197892,
    last_kernel_time=None,
    size=1197896,
)

_V1_LAYOUT = _Layout(
    num=56,
    uuids=64,
    limit=1600,
    sm_limit=1728,
    procs=1856,
    proc_size=1960,
    used=8,
    mem_stride=64,
    util=1160,
    util_stride=48,
    utilization_switch=2008900,
    recent_kernel=2008904,
    priority=2008908,
    last_kernel_time=2008912,
    size=2008952,
)


class _SharedRegion:
    """Accessors shared by both layouts of the region."""

    _layout: _Layout
    SIZE: int

    def __init__(self, buffer: Any) -> None:
        if len(buffer) < self._layout.size:
            raise ValueError(
                f"buffer of {len(buffer)} bytes is smaller than the "
                f"{self._layout.size}-byte shared region"
            )
        self._buf = buffer

    def _read_u64(self, offset: int) -> int:
        return _U64.unpack_from(self._buf, offset)[0]

    def _read_i32(self, offset: int) -> int:
        return _I32.unpack_from(self._buf, offset)[0]

    @staticmethod
    def _check_index(idx: int) -> None:
        if not 0 <= idx < MAX_DEVICES:
            raise IndexError(f"device index {idx} out of range [0, {MAX_DEVICES})")

    def _sum_over_procs(self, field_offset: int) -> int:
        layout = self._layout
        total = sum(
            self._read_u64(layout.procs + proc * layout.proc_size + field_offset)
            for proc in range(MAX_PROCS)
        )
        return total & _U64_MASK

    def _memory_sum(self, idx: int, field: int) -> int:
        self._check_index(idx)
        layout = self._layout
        return self._sum_over_procs(layout.used + idx * layout.mem_stride + field)

    def _set_all(self, base: int, value: int) -> None:
        count = self.device_num()
        if count > MAX_DEVICES:
            raise IndexError(f"device count {count} exceeds {MAX_DEVICES}")
        for idx in range(count):
            _U64.pack_into(self._buf, base + idx * 8, value & _U64_MASK)

    @property
    def initialized_flag(self) -> int:
        """The magic value written once the region is initialised."""
        return self._read_i32(0)

    def device_max(self) -> int:
        """Number of device slots in the region."""
        return MAX_DEVICES

    def device_num(self) -> int:
        """Number of devices in use."""
        return self._read_u64(self._layout.num)

    def device_memory_context_size(self, idx: int) -> int:
        """Context memory used on device ``idx``, summed over all processes."""
        return self._memory_sum(idx, _CONTEXT_SIZE)

    def device_memory_module_size(self, idx: int) -> int:
        """Module memory used on device ``idx``, summed over all processes."""
        return self._memory_sum(idx, _MODULE_SIZE)

    def device_memory_buffer_size(self, idx: int) -> int:
        """Buffer memory used on device ``idx``, summed over all processes."""
        return self._memory_sum(idx, _BUFFER_SIZE)

    def device_memory_offset(self, idx: int) -> int:
        """Memory offset on device ``idx``, summed over all processes."""
        return self._memory_sum(idx, _OFFSET)

    def device_memory_total(self, idx: int) -> int:
        """Total memory used on device ``idx``, summed over all processes."""
        return self._memory_sum(idx, _TOTAL)

    def device_sm_util(self, idx: int) -> int:
        """SM utilisation of device ``idx``, summed over all processes."""
        self._check_index(idx)
        layout = self._layout
        return self._sum_over_procs(layout.util + idx * layout.util_stride + _SM_UTIL)

    def set_device_sm_limit(self, limit: int) -> None:
        """Set the SM limit of every device in use."""
        self._set_all(self._layout.sm_limit, limit)

    def is_valid_uuid(self, idx: int) -> bool:
        """Return True if device ``idx`` has a UUID recorded."""
        self._check_index(idx)
        return self._buf[self._layout.uuids + idx * UUID_SIZE] != 0

    def device_uuid(self, idx: int) -> str:
        """The full fixed-size UUID field of device ``idx`` as text."""
        self._check_index(idx)
        start = self._layout.uuids + idx * UUID_SIZE
        return bytes(self._buf[start : start + UUID_SIZE]).decode("utf-8", errors="replace")

    def device_memory_limit(self, idx: int) -> int:
        """Memory limit of device ``idx``."""
        self._check_index(idx)
        return self._read_u64(self._layout.limit + idx * 8)

    def set_device_memory_limit(self, limit: int) -> None:
        """Set the memory limit of every device in use."""
        self._set_all(self._layout.limit, limit)

    @property
    def last_kernel_time(self) -> int:
        """Time of the last kernel launch; always 0 where the layout lacks it."""
        offset = self._layout.last_kernel_time
        if offset is None:
            return 0
        return _I64.unpack_from(self._buf, offset)[0]

    @property
    def priority(self) -> int:
        """Task priority of the container."""
        return self._read_i32(self._layout.priority)

    @property
    def recent_kernel(self) -> int:
        """Recent-kernel marker used by the utilisation watcher."""
        return self._read_i32(self._layout.recent_kernel)

    @recent_kernel.setter
    def recent_kernel(self, value: int) -> None:
        _I32.pack_into(self._buf, self._layout.recent_kernel, value)

    @property
    def utilization_switch(self) -> int:
        """Switch that enables or disables utilisation limiting."""
        return self._read_i32(self._layout.utilization_switch)

    @utilization_switch.setter
    def utilization_switch(self, value: int) -> None:
        _I32.pack_into(self._buf, self._layout.utilization_switch, value)


class SharedRegionV0(_SharedRegion):
    """The original shared-region layout, without a version header."""

    _layout = _V0_LAYOUT
    SIZE = _V0_LAYOUT.size

    def __init__(self, buffer: Any) -> None:
        super().__init__(buffer)

    def device_max(self) -> int:
        return super().device_max()

    def device_num(self) -> int:
        return super().device_num()

    def device_memory_context_size(self, idx: int) -> int:
        return super().device_memory_context_size(idx)

    def device_memory_module_size(self, idx: int) -> int:
        return super().device_memory_module_size(idx)

    def device_memory_buffer_size(self, idx: int) -> int:
        return super().device_memory_buffer_size(idx)

    def device_memory_offset(self, idx: int) -> int:
        return super().device_memory_offset(idx)

    def device_memory_total(self, idx: int) -> int:
        return super().device_memory_total(idx)

    def device_sm_util(self, idx: int) -> int:
        return super().device_sm_util(idx)

    def set_device_sm_limit(self, limit: int) -> None:
        super().set_device_sm_limit(limit)

    def is_valid_uuid(self, idx: int) -> bool:
        return super().is_valid_uuid(idx)

    def device_uuid(self, idx: int) -> str:
        return super().device_uuid(idx)

    def device_memory_limit(self, idx: int) -> int:
        return super().device_memory_limit(idx)

    def set_device_memory_limit(self, limit: int) -> None:
        super().set_device_memory_limit(limit)


class SharedRegionV1(_SharedRegion):
    """The version 1 layout, with a version header and last-kernel time."""

    _layout = _V1_LAYOUT
    SIZE = _V1_LAYOUT.size

    def __init__(self, buffer: Any) -> None:
        super().__init__(buffer)

    @property
    def major_version(self) -> int:
        return self._read_i32(4)

    @property
    def minor_version(self) -> int:
        return self._read_i32(8)

    def device_max(self) -> int:
        return super().device_max()

    def device_num(self) -> int:
        return super().device_num()

    def device_memory_context_size(self, idx: int) -> int:
        return super().device_memory_context_size(idx)

    def device_memory_module_size(self, idx: int) -> int:
        return super().device_memory_module_size(idx)

    def device_memory_buffer_size(self, idx: int) -> int:
        return super().device_memory_buffer_size(idx)

    def device_memory_offset(self, idx: int) -> int:
        return super().device_memory_offset(idx)

    def device_memory_total(self, idx: int) -> int:
        return super().device_memory_total(idx)

    def device_sm_util(self, idx: int) -> int:
        return super().device_sm_util(idx)

    def set_device_sm_limit(self, limit: int) -> None:
        super().set_device_sm_limit(limit)

    def is_valid_uuid(self, idx: int) -> bool:
        return super().is_valid_uuid(idx)

    def device_uuid(self, idx: int) -> str:
        return super().device_uuid(idx)

    def device_memory_limit(self, idx: int) -> int:
        return super().device_memory_limit(idx)

    def set_device_memory_limit(self, limit: int) -> None:
        super().set_device_memory_limit(limit)