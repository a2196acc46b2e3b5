"""Discovery of per-container vGPU shared-memory caches under the hook path."""

from __future__ import annotations

import logging
import mmap
import os
import shutil
import struct
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path

from hami.shared_region import SharedRegionV0, SharedRegionV1

logger = logging.getLogger(__name__)

SHARED_REGION_MAGIC_FLAG = 19920718
V0_CACHE_FILE_SIZE = 1197897
STALE_DIRECTORY_SECONDS = 300
HOOK_PATH_ENV = "HOOK_PATH"

_HEADER = struct.Struct("=iii")


class CacheError(Exception):
    """Raised when a container's cache file cannot be used."""


@dataclass
class ContainerUsage:
    """The mapped shared region of one container."""

    info: SharedRegionV0 | SharedRegionV1
    pod_uid: str = ""
    container_name: str = ""
    _data: mmap.mmap | None = field(default=None, repr=False, compare=False)

    def close(self) -> None:
        """Unmap the cache file; the region can no longer be read."""
        if self._data is not None and not self._data.closed:
            self._data.close()
        self._data = None


def load_cache(path: str | os.PathLike[str]) -> ContainerUsage | None:
    """Map the cache file found in a container directory.

    Returns None when the directory holds no cache file.
    """
    directory = Path(path)
    logger.info("Checking path %s", directory)
    entries = sorted(directory.iterdir(), key=lambda entry: entry.name)
    if len(entries) > 2:
        raise CacheError("cache num not matched")
    if not entries:
        return None
    cache_file = next(
        (
            entry
            for entry in entries
            if "libvgpu.so" not in entry.name and ".cache" in entry.name
        ),
        None,
    )
    if cache_file is None:
        logger.info("No cache file in %s", directory)
        return None

    size = cache_file.stat().st_size
    if size < _HEADER.size:
        raise CacheError(f"cache file size {size} too small")

    with cache_file.open("r+b") as handle:
        data = mmap.mmap(handle.fileno(), size)
    try:
        flag, major, minor = _HEADER.unpack_from(data, 0)
        if flag != SHARED_REGION_MAGIC_FLAG:
            raise CacheError("cache file magic flag not matched")
        try:
            if size == V0_CACHE_FILE_SIZE:
                info: SharedRegionV0 | SharedRegionV1 = SharedRegionV0(data)
            elif major == 1:
                info = SharedRegionV1(data)
            else:
                raise CacheError(
                    f"unknown cache file size {size} version {major}.{minor}"
                )
        except ValueError as exc:
            raise CacheError(str(exc)) from exc
    except BaseException:
        data.close()
        raise
    return ContainerUsage(info=info, _data=data)


def is_valid_pod(name: str, pod_uids: Iterable[str]) -> bool:
    """Return True if the directory name contains one of the pod UIDs."""
    return any(uid in name for uid in pod_uids)


class ContainerLister:
    """Tracks the shared regions of containers of the pods on this node.

    ``list_pod_uids`` returns the UIDs of the pods currently scheduled on the node.
    """

    def __init__(
        self,
        container_path: str | os.PathLike[str],
        list_pod_uids: Callable[[], Iterable[str]],
    ) -> None:
        self.container_path = Path(container_path)
        self._list_pod_uids = list_pod_uids
        self._containers: dict[str, ContainerUsage] = {}
        self.lock = threading.Lock()

    @classmethod
    def from_env(cls, list_pod_uids: Callable[[], Iterable[str]]) -> ContainerLister:
        """Build a lister rooted at ``$HOOK_PATH/containers``."""
        hook_path = os.environ.get(HOOK_PATH_ENV)
        if hook_path is None:
            raise RuntimeError(f"{HOOK_PATH_ENV} not set")
        return cls(Path(hook_path) / "containers", list_pod_uids)

    @property
    def containers(self) -> dict[str, ContainerUsage]:
        """Loaded containers keyed by their directory name."""
        return self._containers

    def update(self) -> None:
        """Load new container caches and remove those of vanished pods."""
        pod_uids = list(self._list_pod_uids())
        with self.lock:
            entries = sorted(self.container_path.iterdir(), key=lambda e: e.name)
            for entry in entries:
                if not entry.is_dir():
                    continue
                name = entry.name
                if not is_valid_pod(name, pod_uids):
                    try:
                        mtime = entry.stat().st_mtime
                    except OSError:
                        mtime = None
                    if mtime is not None and mtime + STALE_DIRECTORY_SECONDS > time.time():
                        continue
                    logger.info("Removing dirname %s in monitorpath", entry)
                    usage = self._containers.pop(name, None)
                    if usage is not None:
                        usage.close()
                    shutil.rmtree(entry, ignore_errors=True)
                    continue
                if name in self._containers:
                    continue
                try:
                    usage = load_cache(entry)
                except (CacheError, OSError) as exc:
                    logger.error("Failed to load cache: %s, error: %s", entry, exc)
                    continue
                if usage is None:
                    continue
                parts = name.split("_")
                if len(parts) < 2:
                    logger.error("Malformed container directory name %s", name)
                    usage.close()
                    continue
                usage.pod_uid, usage.container_name = parts[0], parts[1]
                self._containers[name] = usage
                logger.info("Adding ctr dirname %s in monitorpath", entry)

    def close(self) -> None:
        """Unmap every loaded container cache and forget them."""
        with self.lock:
            for usage in self._containers.values():
                usage.close()
            self._containers.clear()