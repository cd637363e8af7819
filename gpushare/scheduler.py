"""The scheduler extender: node registration, usage accounting, filter and bind."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from gpushare.codec import decode_pod_devices, handshake_timestamp
from gpushare.events import (
    EVENT_REASON_BINDING_FAILED,
    EVENT_REASON_BINDING_SUCCEED,
    EVENT_REASON_FILTERING_FAILED,
    EVENT_REASON_FILTERING_SUCCEED,
    EventRecorder,
    record_binding_result,
    record_filter_result,
)
from gpushare.kubeclient import KubeClient
from gpushare.nodes import NodeManager, NodeNotFoundError
from gpushare.pods import PodManager, PodUseDeviceStat
from gpushare.policy import DeviceListsScore, DeviceUsageList
from gpushare.score import NodeUsage, calc_score
from gpushare.types import (
    ASSIGNED_NODE_ANNOTATIONS,
    ASSIGNED_TIME_ANNOTATIONS,
    BIND_TIME_ANNOTATIONS,
    DEVICE_BIND_ALLOCATING,
    DEVICE_BIND_PHASE,
    DEVICE_BIND_SUCCESS,
    GPU_SCHEDULER_POLICY_ANNOTATION_KEY,
    POD_SUCCEEDED,
    DeviceInfo,
    DeviceUsage,
    Node,
    NodeInfo,
    Pod,
    PodDeviceRequests,
    SchedulerConfig,
)
from gpushare.vendors import DeviceRegistry, DeviceVendor

log = logging.getLogger(__name__)


@dataclass
class ExtenderArgs:
    """A filter request: the pod and the candidate node names."""

    pod: Pod
    node_names: Optional[List[str]] = None


@dataclass
class ExtenderFilterResult:
    """The nodes left after filtering, or the failure."""

    node_names: Optional[List[str]] = None
    failed_nodes: Optional[Dict[str, str]] = None
    error: str = ""


@dataclass
class ExtenderBindingArgs:
    """A bind request for a pod onto a node."""

    pod_name: str = ""
    pod_namespace: str = ""
    pod_uid: str = ""
    node: str = ""


@dataclass
class ExtenderBindingResult:
    """The outcome of a bind request; empty error on success."""

    error: str = ""


class Scheduler:
    """Tracks device nodes and pods and decides where pods go."""

    def __init__(
        self,
        client: Optional[KubeClient] = None,
        registry: Optional[DeviceRegistry] = None,
        config: Optional[SchedulerConfig] = None,
        recorder: Optional[EventRecorder] = None,
    ) -> None:
        log.info("New Scheduler")
        self.client = client
        self.registry = registry if registry is not None else DeviceRegistry()
        self.config = config if config is not None else SchedulerConfig()
        self.recorder = recorder if recorder is not None else EventRecorder(self.config.scheduler_name)
        self.nodes = NodeManager()
        self.pods = PodManager()
        self.cached_status: Dict[str, NodeUsage] = {}
        self.overview_status: Dict[str, NodeUsage] = {}
        self._node_notify = threading.Event()
        self._stop = threading.Event()

    def _require_client(self) -> KubeClient:
        if self.client is None:
            raise RuntimeError("scheduler has no cluster client")
        return self.client

    def _support_checklist(self) -> Dict[str, str]:
        return {
            name: vendor.support_annotation
            for name, vendor in self.registry.items()
            if vendor.support_annotation
        }

    def _resource_requests(self, pod: Pod) -> PodDeviceRequests:
        requests: PodDeviceRequests = []
        for container in pod.containers:
            per_container = {}
            for name, vendor in self.registry.items():
                request = vendor.resource_requests(container)
                if request.nums > 0:
                    per_container[name] = request
            requests.append(per_container)
        return requests

    # Pod and node change handlers.

    def on_add_pod(self, pod: Pod) -> None:
        """Track a pod that has been assigned a node."""
        node_id = pod.annotations.get(ASSIGNED_NODE_ANNOTATIONS)
        if node_id is None:
            return
        if pod.is_terminated():
            self.pods.delete_pod(pod)
            return
        devices = decode_pod_devices(self._support_checklist(), pod.annotations)
        self.pods.add_pod(pod, node_id, devices)

    def on_update_pod(self, old: Optional[Pod], new: Pod) -> None:
        """Handle a pod change like an addition of the new pod."""
        self.on_add_pod(new)

    def on_delete_pod(self, pod: Pod) -> None:
        """Stop tracking a deleted pod that had been assigned a node."""
        if ASSIGNED_NODE_ANNOTATIONS not in pod.annotations:
            return
        self.pods.delete_pod(pod)

    def notify_nodes_changed(self) -> None:
        """Wake the registration loop."""
        self._node_notify.set()

    # Node registration.

    def _refresh_vendor(self, node: Node, vendor_name: str, vendor: DeviceVendor) -> None:
        healthy, need_update = vendor.check_health(vendor_name, node)
        log.debug(
            "device check health node=%s vendor=%s health=%s needUpdate=%s",
            node.name, vendor_name, healthy, need_update,
        )
        if not healthy:
            try:
                vendor.node_cleanup(node.name)
            except Exception as exc:
                log.error("node cleanup failed: %s", exc)
            try:
                info = self.nodes.get_node(node.name)
            except NodeNotFoundError:
                info = None
            if info is not None:
                log.info("node %s device %s leave", node.name, vendor_name)
                self.nodes.remove_node_devices(node.name, info, vendor_name)
                return
        if not need_update:
            return
        if vendor.handshake_annotation:
            client = self._require_client()
            stamp = handshake_timestamp("Requesting", datetime.now())
            try:
                client.get_node(node.name)
            except Exception as exc:
                log.error("get node failed: %s", exc)
                return
            try:
                client.patch_node_annotations(node.name, {vendor.handshake_annotation: stamp})
            except Exception as exc:
                log.info("patch node %s failed: %s", node.name, exc)
        try:
            reported = vendor.get_node_devices(node)
        except ValueError:
            return
        try:
            existing: Optional[NodeInfo] = self.nodes.get_node(node.name)
        except NodeNotFoundError:
            existing = None
        new_devices: List[DeviceInfo] = []
        for dev in reported:
            match = None
            if existing is not None:
                match = next((d for d in existing.devices if d.id == dev.id), None)
            if match is not None:
                match.devmem = dev.devmem
                match.devcore = dev.devcore
            else:
                new_devices.append(
                    DeviceInfo(
                        id=dev.id,
                        index=dev.index,
                        count=dev.count,
                        devmem=dev.devmem,
                        devcore=dev.devcore,
                        type=dev.type,
                        numa=dev.numa,
                        health=dev.health,
                        device_vendor=vendor_name,
                    )
                )
        self.nodes.add_node(node.name, NodeInfo(id=node.name, node=node, devices=new_devices))
        if new_devices:
            log.info("node %s device %s come: %s", node.name, vendor_name, new_devices)

    def refresh_nodes(self, nodes: Optional[Iterable[Node]] = None) -> None:
        """Register the devices of the given nodes, or of every cluster node."""
        if nodes is None:
            nodes = self._require_client().list_nodes()
        selector = self.config.node_label_selector
        if selector:
            nodes = [n for n in nodes if all(n.labels.get(k) == v for k, v in selector.items())]
        names: List[str] = []
        for node in nodes:
            names.append(node.name)
            for vendor_name, vendor in self.registry.items():
                self._refresh_vendor(node, vendor_name, vendor)
        self.nodes_usage(names, None)

    def run_registration_loop(self, interval: float = 15.0) -> None:
        """Refresh nodes on every notification or interval until stopped."""
        log.debug("Scheduler into registration loop")
        while not self._stop.is_set():
            self._node_notify.wait(interval)
            self._node_notify.clear()
            if self._stop.is_set():
                return
            try:
                self.refresh_nodes()
            except Exception as exc:
                log.error("nodes refresh failed: %s", exc)

    def stop(self) -> None:
        """Stop the registration loop."""
        self._stop.set()
        self._node_notify.set()

    # Usage accounting.

    def nodes_usage(
        self, node_names: Optional[Iterable[str]], pod: Optional[Pod]
    ) -> Tuple[Dict[str, NodeUsage], Dict[str, str]]:
        """Usage of the named nodes' devices, and the nodes that are unknown."""
        gpu_policy = self.config.gpu_scheduler_policy
        if pod is not None and pod.annotations:
            gpu_policy = pod.annotations.get(GPU_SCHEDULER_POLICY_ANNOTATION_KEY, gpu_policy)
        overall: Dict[str, NodeUsage] = {}
        for info in self.nodes.list_nodes().values():
            overall[info.id] = NodeUsage(
                node=info.node,
                devices=DeviceUsageList(
                    policy=gpu_policy,
                    device_lists=[
                        DeviceListsScore(
                            device=DeviceUsage(
                                id=d.id,
                                index=d.index,
                                count=d.count,
                                totalmem=d.devmem,
                                totalcore=d.devcore,
                                type=d.type,
                                numa=d.numa,
                                health=d.health,
                            )
                        )
                        for d in info.devices
                    ],
                ),
            )
        for pod_info in self.pods.list_pods_info():
            usage = overall.get(pod_info.node_id)
            if usage is None:
                continue
            for single in pod_info.devices.values():
                for ctr_devices in single:
                    for used in ctr_devices:
                        for entry in usage.devices.device_lists:
                            if entry.device.id == used.uuid:
                                entry.device.used += 1
                                entry.device.usedmem += used.usedmem
                                entry.device.usedcores += used.usedcores
        self.overview_status = overall
        cached: Dict[str, NodeUsage] = {}
        failed: Dict[str, str] = {}
        for name in node_names or []:
            try:
                info = self.nodes.get_node(name)
            except NodeNotFoundError:
                log.debug("node unregistered: %s", name)
                failed[name] = "node unregistered"
                continue
            usage = overall.get(info.id)
            if usage is not None:
                cached[info.id] = usage
        self.cached_status = cached
        return cached, failed

    def inspect_all_nodes_usage(self) -> Dict[str, NodeUsage]:
        """The usage of every registered node from the last accounting."""
        return self.overview_status

    def pod_usage(self, pods: Optional[Iterable[Pod]] = None) -> Dict[str, PodUseDeviceStat]:
        """Per node, the succeeded pods and those among them bound to devices."""
        if pods is None:
            pods = self._require_client().list_pods()
        stats: Dict[str, PodUseDeviceStat] = {}
        for pod in pods:
            if pod.phase != POD_SUCCEEDED:
                continue
            uses = 1 if pod.annotations.get(DEVICE_BIND_PHASE) == DEVICE_BIND_SUCCESS else 0
            stat = stats.setdefault(pod.node_name, PodUseDeviceStat())
            stat.total_pod += 1
            stat.use_device_pod += uses
        return stats

    # Extender verbs.

    def bind(self, args: ExtenderBindingArgs) -> ExtenderBindingResult:
        """Lock the node, mark the pod as allocating and bind it."""
        log.info(
            "Bind pod=%s namespace=%s uid=%s node=%s",
            args.pod_name, args.pod_namespace, args.pod_uid, args.node,
        )
        client = self._require_client()
        current: Optional[Pod]
        try:
            current = client.get_pod(args.pod_namespace, args.pod_name)
        except Exception as exc:
            log.error("Get pod failed: %s", exc)
            current = None
        try:
            node = client.get_node(args.node)
        except Exception as exc:
            log.error("Failed to get node %s: %s", args.node, exc)
            record_binding_result(
                self.recorder, current, EVENT_REASON_BINDING_FAILED, [],
                RuntimeError(f"failed to get node {args.node}"),
            )
            return ExtenderBindingResult(error=str(exc))

        error: Optional[Exception] = None
        vendors = [vendor for _, vendor in self.registry.items()]
        for vendor in vendors:
            try:
                vendor.lock_node(node, current)
            except Exception as exc:
                error = exc
                break
        if error is None:
            patch = {
                DEVICE_BIND_PHASE: DEVICE_BIND_ALLOCATING,
                BIND_TIME_ANNOTATIONS: str(int(time.time())),
            }
            namespace = current.namespace if current is not None else args.pod_namespace
            name = current.name if current is not None else args.pod_name
            try:
                client.patch_pod_annotations(namespace, name, patch)
            except Exception as exc:
                log.error("patch pod annotation failed: %s", exc)
            try:
                client.bind_pod(args.pod_namespace, args.pod_name, args.pod_uid, args.node)
            except Exception as exc:
                log.error("Failed to bind pod %s: %s", args.pod_name, exc)
                error = exc
        if error is None:
            record_binding_result(
                self.recorder, current, EVENT_REASON_BINDING_SUCCEED, [args.node], None
            )
            log.info("After Binding Process")
            return ExtenderBindingResult(error="")

        log.info("bind failed: %s", error)
        for vendor in vendors:
            try:
                vendor.release_node_lock(node, current)
            except Exception as exc:
                log.error("release node lock failed: %s", exc)
        record_binding_result(self.recorder, current, EVENT_REASON_BINDING_FAILED, [], error)
        return ExtenderBindingResult(error=str(error))

    def filter(self, args: ExtenderArgs) -> ExtenderFilterResult:
        """Choose the node and devices for a pod and annotate the pod with them."""
        pod = args.pod
        log.info("begin schedule filter pod=%s uid=%s namespace=%s", pod.name, pod.uid, pod.namespace)
        requests = self._resource_requests(pod)
        total = sum(r.nums for ctr in requests for r in ctr.values())
        if total == 0:
            log.info("pod %s not find resource", pod.name)
            record_filter_result(
                self.recorder, pod, EVENT_REASON_FILTERING_FAILED, [],
                RuntimeError("does not request any resource"),
            )
            return ExtenderFilterResult(node_names=args.node_names, failed_nodes=None, error="")

        annotations = pod.annotations
        self.pods.delete_pod(pod)
        usage, failed = self.nodes_usage(args.node_names, pod)
        if failed:
            log.debug("nodes_usage failed nodes: %s", failed)
        try:
            scores = calc_score(
                usage, requests, annotations, pod, self.registry, self.config.node_scheduler_policy
            )
        except Exception as exc:
            err = RuntimeError(f"calcScore failed {exc} for pod {pod.name}")
            record_filter_result(self.recorder, pod, EVENT_REASON_FILTERING_FAILED, [], err)
            raise err from exc
        if not scores.node_list:
            log.info("All node scores do not meet for pod %s", pod.name)
            record_filter_result(
                self.recorder, pod, EVENT_REASON_FILTERING_FAILED, [],
                RuntimeError("no available node, all node scores do not meet"),
            )
            return ExtenderFilterResult(failed_nodes=failed)

        scores.sort()
        best = scores.node_list[-1]
        log.info("schedule %s/%s to %s %s", pod.namespace, pod.name, best.node_id, best.devices)
        patch: Dict[str, str] = {
            ASSIGNED_NODE_ANNOTATIONS: best.node_id,
            ASSIGNED_TIME_ANNOTATIONS: str(int(time.time())),
        }
        for _, vendor in self.registry.items():
            vendor.patch_annotations(patch, best.devices)

        self.pods.add_pod(pod, best.node_id, best.devices)
        try:
            self._require_client().patch_pod_annotations(pod.namespace, pod.name, patch)
        except Exception as exc:
            record_filter_result(self.recorder, pod, EVENT_REASON_FILTERING_FAILED, [], exc)
            self.pods.delete_pod(pod)
            raise
        record_filter_result(
            self.recorder, pod, EVENT_REASON_FILTERING_SUCCEED, [best.node_id], None
        )
        return ExtenderFilterResult(node_names=[best.node_id])