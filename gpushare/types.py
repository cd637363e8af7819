"""Core data types, annotation keys and scheduler configuration."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Dict, List, Optional

ASSIGNED_TIME_ANNOTATIONS = "hami.io/vgpu-time"
ASSIGNED_NODE_ANNOTATIONS = "hami.io/vgpu-node"
BIND_TIME_ANNOTATIONS = "hami.io/bind-time"
DEVICE_BIND_PHASE = "hami.io/bind-phase"

DEVICE_BIND_ALLOCATING = "allocating"
DEVICE_BIND_FAILED = "failed"
DEVICE_BIND_SUCCESS = "success"

DEVICE_LIMIT = 100

BEST_EFFORT = "best-effort"
RESTRICTED = "restricted"
GUARANTEED = "guaranteed"

NODE_NAME_ENV_NAME = "NODE_NAME"

NODE_SCHEDULER_POLICY_ANNOTATION_KEY = "hami.io/node-scheduler-policy"
GPU_SCHEDULER_POLICY_ANNOTATION_KEY = "hami.io/gpu-scheduler-policy"

WEIGHT = 10

POD_PENDING = "Pending"
POD_RUNNING = "Running"
POD_SUCCEEDED = "Succeeded"
POD_FAILED = "Failed"
POD_UNKNOWN = "Unknown"


class SchedulerPolicy(str, enum.Enum):
    """Placement policy for nodes or for devices within a node."""

    BINPACK = "binpack"
    SPREAD = "spread"

    def __str__(self) -> str:
        return self.value


@dataclass
class ContainerDevice:
    """One device slice assigned to a container."""

    idx: int = 0
    uuid: str = ""
    type: str = ""
    usedmem: int = 0
    usedcores: int = 0


@dataclass
class ContainerDeviceRequest:
    """What a container asks for from one device vendor."""

    nums: int = 0
    type: str = ""
    memreq: int = 0
    mem_percentagereq: int = 0
    coresreq: int = 0


ContainerDevices = List[ContainerDevice]
ContainerDeviceRequests = Dict[str, ContainerDeviceRequest]
PodSingleDevice = List[ContainerDevices]
PodDeviceRequests = List[ContainerDeviceRequests]
PodDevices = Dict[str, PodSingleDevice]


@dataclass
class DeviceUsage:
    """A device on a node together with its current usage."""

    id: str = ""
    index: int = 0
    used: int = 0
    count: int = 0
    usedmem: int = 0
    totalmem: int = 0
    totalcore: int = 0
    usedcores: int = 0
    numa: int = 0
    type: str = ""
    health: bool = False


@dataclass
class DeviceInfo:
    """A device registered on a node, tagged with its vendor."""

    id: str = ""
    index: int = 0
    count: int = 0
    devmem: int = 0
    devcore: int = 0
    type: str = ""
    numa: int = 0
    health: bool = False
    device_vendor: str = ""


@dataclass
class NodeDevice:
    """A device as reported by a node in its annotations."""

    id: str = ""
    index: int = 0
    count: int = 0
    devmem: int = 0
    devcore: int = 0
    type: str = ""
    numa: int = 0
    health: bool = False


@dataclass
class Container:
    """A container specification with its resource limits."""

    name: str = ""
    image: str = ""
    args: List[str] = field(default_factory=list)
    limits: Dict[str, int] = field(default_factory=dict)
    requests: Dict[str, int] = field(default_factory=dict)
    privileged: Optional[bool] = None


@dataclass
class Pod:
    """The parts of a pod the scheduler works with."""

    name: str = ""
    namespace: str = ""
    uid: str = ""
    annotations: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    node_name: str = ""
    scheduler_name: str = ""
    containers: List[Container] = field(default_factory=list)
    phase: str = POD_PENDING

    def is_terminated(self) -> bool:
        """True once the pod has finished, successfully or not."""
        return self.phase in (POD_SUCCEEDED, POD_FAILED)


@dataclass
class Node:
    """The parts of a cluster node the scheduler works with."""

    name: str = ""
    annotations: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass
class NodeInfo:
    """A node and the devices registered on it."""

    id: str = ""
    node: Optional[Node] = None
    devices: List[DeviceInfo] = field(default_factory=list)


@dataclass
class SchedulerConfig:
    """Runtime settings of the scheduler."""

    http_bind: str = ""
    scheduler_name: str = ""
    metrics_bind_address: str = ""
    default_mem: int = 0
    default_cores: int = 0
    default_resource_num: int = 0
    node_scheduler_policy: str = SchedulerPolicy.BINPACK.value
    gpu_scheduler_policy: str = SchedulerPolicy.SPREAD.value
    node_label_selector: Dict[str, str] = field(default_factory=dict)