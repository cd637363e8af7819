"""Device vendors and the registry the scheduler consults for them."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterator, List, Mapping, MutableMapping, Optional, Sequence, Tuple

from gpushare import nodelock
from gpushare.codec import (
    CodecError,
    check_health as check_handshake,
    decode_node_devices,
    encode_pod_single_device,
    handshake_timestamp,
)
from gpushare.kubeclient import KubeClient
from gpushare.types import (
    Container,
    ContainerDevice,
    ContainerDeviceRequest,
    DeviceUsage,
    Node,
    NodeDevice,
    Pod,
    PodDevices,
    PodSingleDevice,
)

log = logging.getLogger(__name__)


@dataclass
class DeviceVendor:
    """A kind of device, described by the annotations and resources it uses."""

    name: str
    client: Optional[KubeClient] = field(default=None, repr=False, compare=False)
    handshake_annotation: str = ""
    register_annotation: str = ""
    in_request_annotation: str = ""
    support_annotation: str = ""
    count_resource: str = ""
    memory_resource: str = ""
    memory_percentage_resource: str = ""
    cores_resource: str = ""
    use_uuid_annotation: str = ""
    no_use_uuid_annotation: str = ""
    default_memory: int = 0
    default_cores: int = 0
    default_count: int = 0

    def _require_client(self) -> KubeClient:
        if self.client is None:
            raise RuntimeError(f"device vendor {self.name} has no cluster client")
        return self.client

    @staticmethod
    def _quantity(container: Container, resource: str) -> Optional[int]:
        if not resource:
            return None
        if resource in container.limits:
            return container.limits[resource]
        return container.requests.get(resource)

    def _requests_devices(self, pod: Optional[Pod]) -> bool:
        if pod is None:
            return False
        return any(self.resource_requests(c).nums > 0 for c in pod.containers)

    def check_type(
        self, annotations: Mapping[str, str], device: DeviceUsage, request: ContainerDeviceRequest
    ) -> Tuple[bool, bool, bool]:
        """Return (handled by this vendor, type passes, NUMA must match)."""
        if request.type != self.name:
            return False, False, False
        return True, True, False

    def check_uuid(self, annotations: Mapping[str, str], device: DeviceUsage) -> bool:
        """Honour the pod's allow and deny lists of device UUIDs."""
        if self.use_uuid_annotation and self.use_uuid_annotation in annotations:
            return device.id in annotations[self.use_uuid_annotation].split(",")
        if self.no_use_uuid_annotation and self.no_use_uuid_annotation in annotations:
            return device.id not in annotations[self.no_use_uuid_annotation].split(",")
        return True

    def custom_filter_rule(
        self,
        allocated: Optional[PodDevices],
        request_devices: Optional[Sequence[ContainerDevice]],
        device: DeviceUsage,
    ) -> bool:
        """Extra per-vendor admission of a device; every device passes here."""
        return True

    def patch_annotations(
        self, annotations: MutableMapping[str, str], pod_devices: PodDevices
    ) -> MutableMapping[str, str]:
        """Write this vendor's assigned devices into the pod annotations."""
        single: PodSingleDevice = pod_devices.get(self.name, [])
        if single:
            encoded = encode_pod_single_device(single)
            if self.in_request_annotation:
                annotations[self.in_request_annotation] = encoded
            if self.support_annotation:
                annotations[self.support_annotation] = encoded
        return annotations

    def lock_node(self, node: Node, pod: Optional[Pod]) -> None:
        """Lock the node for the pod if it asks for this vendor's devices."""
        if not self._requests_devices(pod):
            return
        nodelock.lock_node(self._require_client(), node.name, pod)

    def release_node_lock(self, node: Node, pod: Optional[Pod]) -> None:
        """Release the node lock taken by lock_node."""
        if not self._requests_devices(pod):
            return
        nodelock.release_node_lock(self._require_client(), node.name)

    def score_node(self, node: Optional[Node], pod_single: PodSingleDevice, policy: str) -> float:
        """Vendor-specific node score; zero keeps the default score."""
        return 0.0

    def check_health(self, vendor_name: str, node: Node) -> Tuple[bool, bool]:
        """Return (healthy, needs update) from the node handshake annotation."""
        handshake = node.annotations.get(self.handshake_annotation, "")
        result = check_handshake(handshake)
        log.debug("health of %s on %s: %s", vendor_name, node.name, result)
        return result

    def node_cleanup(self, node_name: str) -> None:
        """Mark the node's handshake annotation as deleted."""
        stamp = handshake_timestamp("Deleted", datetime.now())
        self._require_client().patch_node_annotations(node_name, {self.handshake_annotation: stamp})

    def get_node_devices(self, node: Node) -> List[NodeDevice]:
        """The devices the node registered for this vendor."""
        value = node.annotations.get(self.register_annotation)
        if value is None:
            raise CodecError(f"annos not found {self.register_annotation}")
        return decode_node_devices(value)

    def resource_requests(self, container: Container) -> ContainerDeviceRequest:
        """What the container asks of this vendor; nums is 0 if nothing."""
        count = self._quantity(container, self.count_resource)
        if count is None:
            return ContainerDeviceRequest()
        mem = self._quantity(container, self.memory_resource)
        percentage = self._quantity(container, self.memory_percentage_resource)
        memreq = mem if mem is not None else 0
        mem_percentage = percentage if percentage is not None else 101
        if mem_percentage == 101 and memreq == 0:
            if self.default_memory:
                memreq = self.default_memory
            else:
                mem_percentage = 100
        cores = self._quantity(container, self.cores_resource)
        return ContainerDeviceRequest(
            nums=count,
            type=self.name,
            memreq=memreq,
            mem_percentagereq=mem_percentage,
            coresreq=cores if cores is not None else self.default_cores,
        )

    def mutate_admission(self, container: Container, pod: Pod) -> bool:
        """Report whether the container uses this vendor, filling a default count."""
        if self._quantity(container, self.count_resource) is not None:
            return True
        wants = any(
            self._quantity(container, r) is not None
            for r in (self.memory_resource, self.memory_percentage_resource, self.cores_resource)
        )
        if wants and self.default_count > 0 and self.count_resource:
            container.limits[self.count_resource] = self.default_count
            return True
        return False


class DeviceRegistry:
    """The device vendors known to the scheduler, by name."""

    def __init__(self, vendors: Optional[Mapping[str, DeviceVendor]] = None) -> None:
        self._vendors: Dict[str, DeviceVendor] = dict(vendors or {})

    def register(self, name: str, vendor: DeviceVendor) -> None:
        self._vendors[name] = vendor

    def get(self, name: str) -> Optional[DeviceVendor]:
        return self._vendors.get(name)

    def items(self) -> List[Tuple[str, DeviceVendor]]:
        return list(self._vendors.items())

    def clear(self) -> None:
        self._vendors.clear()

    def __contains__(self, name: object) -> bool:
        return name in self._vendors

    def __len__(self) -> int:
        return len(self._vendors)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._vendors))