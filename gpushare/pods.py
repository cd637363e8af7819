"""Registry of pods that the scheduler has placed on devices."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List

from gpushare.types import Pod, PodDevices

log = logging.getLogger(__name__)


@dataclass
class PodInfo:
    """A scheduled pod, its node and the devices it was given."""

    namespace: str = ""
    name: str = ""
    uid: str = ""
    node_id: str = ""
    devices: PodDevices = field(default_factory=dict)
    ctr_ids: List[str] = field(default_factory=list)


@dataclass
class PodUseDeviceStat:
    """Counts of finished pods on a node, and of those that used devices."""

    total_pod: int = 0
    use_device_pod: int = 0


class PodManager:
    """Thread-safe map from pod UID to its scheduling information."""

    def __init__(self) -> None:
        self._pods: Dict[str, PodInfo] = {}
        self._lock = threading.RLock()

    def add_pod(self, pod: Pod, node_id: str, devices: PodDevices) -> None:
        """Record a pod; for a known pod only its devices are replaced."""
        with self._lock:
            existing = self._pods.get(pod.uid)
            if existing is None:
                self._pods[pod.uid] = PodInfo(
                    namespace=pod.namespace,
                    name=pod.name,
                    uid=pod.uid,
                    node_id=node_id,
                    devices=devices,
                )
                log.info(
                    "Pod added: Name: %s, UID: %s, Namespace: %s, NodeID: %s",
                    pod.name,
                    pod.uid,
                    pod.namespace,
                    node_id,
                )
            else:
                existing.devices = devices

    def delete_pod(self, pod: Pod) -> None:
        """Forget a pod by UID; unknown pods are ignored."""
        with self._lock:
            info = self._pods.pop(pod.uid, None)
            if info is not None:
                log.info("Deleted pod %s with node ID %s", info.name, info.node_id)

    def list_pod_uids(self) -> List[Pod]:
        """Bare pods carrying only the UIDs of the recorded pods."""
        with self._lock:
            return [Pod(uid=uid) for uid in self._pods]

    def list_pods_info(self) -> List[PodInfo]:
        """Information on every recorded pod."""
        with self._lock:
            return list(self._pods.values())

    def scheduled_pods(self) -> Dict[str, PodInfo]:
        """Recorded pods by UID."""
        with self._lock:
            log.info("Getting all scheduled pods with %d nums", len(self._pods))
            return dict(self._pods)