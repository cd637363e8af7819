"""Fitting container device requests onto nodes and scoring the candidates."""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Tuple

from gpushare.policy import DeviceUsageList, NodeScore, NodeScoreList
from gpushare.types import (
    NODE_SCHEDULER_POLICY_ANNOTATION_KEY,
    ContainerDevice,
    ContainerDeviceRequest,
    ContainerDeviceRequests,
    ContainerDevices,
    DeviceUsage,
    Node,
    Pod,
    PodDeviceRequests,
    PodDevices,
    SchedulerPolicy,
)
from gpushare.vendors import DeviceRegistry

log = logging.getLogger(__name__)


@dataclass
class NodeUsage:
    """A node together with the usage of each of its devices."""

    node: Optional[Node] = None
    devices: DeviceUsageList = field(default_factory=DeviceUsageList)


def _pod_ref(pod: Optional[Pod]) -> str:
    if pod is None:
        return "<nil>"
    return f"{pod.namespace}/{pod.name}" if pod.namespace else pod.name


def _trunc_div(a: int, b: int) -> int:
    quotient = abs(a) // abs(b)
    return quotient if (a >= 0) == (b >= 0) else -quotient


def _view_status(usage: NodeUsage) -> None:
    for entry in usage.devices.device_lists:
        log.debug("device status: id=%s detail=%s", entry.device.id, entry)


def check_type(
    annotations: Mapping[str, str],
    device: DeviceUsage,
    request: ContainerDeviceRequest,
    registry: DeviceRegistry,
) -> Tuple[bool, bool]:
    """Return (device type fits the request, NUMA must match)."""
    if request.type not in device.type:
        return False, False
    for _, vendor in registry.items():
        found, passed, numa = vendor.check_type(annotations, device, request)
        if found:
            return passed, numa
    log.info("Unrecognized device %s", request.type)
    return False, False


def check_uuid(
    annotations: Mapping[str, str],
    device: DeviceUsage,
    request: ContainerDeviceRequest,
    registry: DeviceRegistry,
) -> bool:
    """Whether the pod's UUID selection allows this device."""
    vendor = registry.get(request.type)
    if vendor is None:
        log.error("can not get device for %s type", request.type)
        return False
    result = vendor.check_uuid(annotations, device)
    log.debug("checkUUID result is %s for %s type", result, request.type)
    return result


def fit_in_certain_device(
    node: NodeUsage,
    request: ContainerDeviceRequest,
    annotations: Mapping[str, str],
    pod: Optional[Pod],
    allocated: Optional[PodDevices],
    registry: DeviceRegistry,
) -> Tuple[bool, Dict[str, ContainerDevices]]:
    """Pick devices for one request, trying the node's devices from last to first."""
    req = dataclasses.replace(request)
    origin_nums = req.nums
    prev_numa = -1
    chosen: Dict[str, ContainerDevices] = {}
    pod_ref = _pod_ref(pod)
    log.info("Allocating device for container request pod=%s request=%s", pod_ref, req)
    for entry in reversed(node.devices.device_lists):
        dev = entry.device
        found, numa = check_type(annotations, dev, req, registry)
        if not found:
            log.info("card type mismatch pod=%s device=%s request=%s", pod_ref, dev.type, req.type)
            continue
        if numa and prev_numa != dev.numa:
            req.nums = origin_nums
            prev_numa = dev.numa
            chosen = {}
        if not check_uuid(annotations, dev, req, registry):
            log.info("card uuid mismatch pod=%s device=%s", pod_ref, dev)
            continue
        if dev.count <= dev.used:
            continue
        if req.coresreq > 100:
            log.error("core limit can't exceed 100 pod=%s", pod_ref)
            req.coresreq = 100
        memreq = req.memreq if req.memreq > 0 else 0
        if req.mem_percentagereq != 101 and req.memreq == 0:
            memreq = _trunc_div(dev.totalmem * req.mem_percentagereq, 100)
        if dev.totalmem - dev.usedmem < memreq:
            log.debug("card %s insufficient remaining memory for pod %s", dev.id, pod_ref)
            continue
        if dev.totalcore - dev.usedcores < req.coresreq:
            log.debug("card %s insufficient remaining cores for pod %s", dev.id, pod_ref)
            continue
        if dev.totalcore == 100 and req.coresreq == 100 and dev.used > 0:
            log.debug("card %s already in use, pod %s wants it exclusively", dev.id, pod_ref)
            continue
        if dev.totalcore != 0 and dev.usedcores == dev.totalcore and req.coresreq == 0:
            log.debug("can't allocate core=0 job to full card %s", dev.id)
            continue
        vendor = registry.get(req.type)
        if vendor is None or not vendor.custom_filter_rule(allocated, chosen.get(req.type), dev):
            continue
        if req.nums > 0:
            log.info("first fitted pod=%s device=%s", pod_ref, dev.id)
            req.nums -= 1
            chosen.setdefault(req.type, []).append(
                ContainerDevice(
                    idx=dev.index,
                    uuid=dev.id,
                    type=req.type,
                    usedmem=memreq,
                    usedcores=req.coresreq,
                )
            )
        if req.nums == 0:
            log.info("device allocate success pod=%s devices=%s", pod_ref, chosen)
            return True, chosen
    return False, chosen


def fit_in_devices(
    node: NodeUsage,
    requests: ContainerDeviceRequests,
    annotations: Mapping[str, str],
    pod: Optional[Pod],
    allocated: PodDevices,
    registry: DeviceRegistry,
) -> Tuple[bool, float]:
    """Fit every request of one container, recording the choice in ``allocated``."""
    devs: ContainerDevices = []
    for entry in node.devices.device_lists:
        entry.compute_score(requests)
    for req in requests.values():
        if req.nums > len(node.devices.device_lists):
            log.info(
                "request devices nums %d exceeds node device nums %d for pod %s",
                req.nums,
                len(node.devices.device_lists),
                _pod_ref(pod),
            )
            return False, 0.0
        node.devices.sort()
        fit, chosen = fit_in_certain_device(node, req, annotations, pod, allocated, registry)
        if not fit:
            return False, 0.0
        for picked in chosen.get(req.type, []):
            for entry in node.devices.device_lists:
                if entry.device.index != picked.idx:
                    continue
                entry.device.used += 1
                entry.device.usedcores += picked.usedcores
                entry.device.usedmem += picked.usedmem
        devs.extend(chosen.get(req.type, []))
        allocated.setdefault(req.type, []).append(list(devs))
    return True, 0.0


def calc_score(
    nodes: Mapping[str, NodeUsage],
    requests: PodDeviceRequests,
    annotations: Optional[Mapping[str, str]],
    pod: Optional[Pod],
    registry: DeviceRegistry,
    node_policy: str = SchedulerPolicy.BINPACK.value,
) -> NodeScoreList:
    """Score every node that can hold all of the pod's containers."""
    policy = node_policy
    if annotations and NODE_SCHEDULER_POLICY_ANNOTATION_KEY in annotations:
        policy = annotations[NODE_SCHEDULER_POLICY_ANNOTATION_KEY]
    annos: Mapping[str, str] = annotations or {}
    result = NodeScoreList(policy=policy)
    for node_id, usage in nodes.items():
        _view_status(usage)
        score = NodeScore(node_id=node_id, node=usage.node, devices={}, score=0.0)
        score.compute_default_score(usage.devices)
        container_fit = False
        for ctr_id, ctr_requests in enumerate(requests):
            if sum(r.nums for r in ctr_requests.values()) == 0:
                for single in score.devices.values():
                    while len(single) <= ctr_id:
                        single.append([])
                    single[ctr_id].append(ContainerDevice())
            log.debug("fitInDevices pod=%s node=%s", _pod_ref(pod), node_id)
            container_fit, _ = fit_in_devices(usage, ctr_requests, annos, pod, score.devices, registry)
            if not container_fit:
                log.info("calcScore: node %s does not fit pod %s", node_id, _pod_ref(pod))
                break
        if container_fit:
            result.node_list.append(score)
            score.override_score(registry, policy)
    return result