"""Pod and container models with helpers for inspecting device requests."""

from __future__ import annotations

import enum
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class PodPhase(str, enum.Enum):
    """Lifecycle phase of a pod."""

    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    UNKNOWN = "Unknown"


@dataclass
class EnvVar:
    """An environment variable set on a container."""

    name: str
    value: str


@dataclass
class Container:
    """A container with its resource limits, requests and environment."""

    name: str = ""
    limits: dict[str, int | float] = field(default_factory=dict)
    requests: dict[str, int | float] = field(default_factory=dict)
    env: list[EnvVar] = field(default_factory=list)


@dataclass
class Pod:
    """A pod: its containers, phase and the statuses of created containers."""

    name: str = ""
    uid: str = ""
    annotations: dict[str, str] = field(default_factory=dict)
    containers: list[Container] = field(default_factory=list)
    phase: PodPhase = PodPhase.PENDING
    container_statuses: list[str] = field(default_factory=list)


class _RequestGenerator(Protocol):
    def generate_resource_requests(self, container: Container) -> Any: ...


def resource_requests(
    pod: Pod, devices: Mapping[str, _RequestGenerator]
) -> list[dict[str, Any]]:
    """Collect, per container, the device requests with a positive count."""
    counts: list[dict[str, Any]] = []
    for container in pod.containers:
        per_container: dict[str, Any] = {}
        for name, device in devices.items():
            request = device.generate_resource_requests(container)
            if request.nums > 0:
                per_container[name] = request
        counts.append(per_container)
    logger.info("collect requestreqs counts=%s", counts)
    return counts


def is_pod_in_terminated_state(pod: Pod) -> bool:
    """Return True if the pod has failed or succeeded."""
    return pod.phase in (PodPhase.FAILED, PodPhase.SUCCEEDED)


def all_containers_created(pod: Pod) -> bool:
    """Return True once every container of the pod has a status."""
    return len(pod.container_statuses) >= len(pod.containers)