"""Scoring and ordering of devices and nodes under binpack or spread."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from functools import cmp_to_key
from typing import List, Optional

from gpushare.types import (
    WEIGHT,
    ContainerDeviceRequests,
    DeviceUsage,
    Node,
    PodDevices,
    SchedulerPolicy,
)
from gpushare.vendors import DeviceRegistry

log = logging.getLogger(__name__)


def _ratio(numerator: float, denominator: float) -> float:
    if denominator == 0:
        if numerator == 0:
            return math.nan
        return math.copysign(math.inf, numerator)
    return numerator / denominator


def _trunc_div(a: int, b: int) -> int:
    quotient = abs(a) // abs(b)
    return quotient if (a >= 0) == (b >= 0) else -quotient


def _compare(less, a, b) -> int:
    if less(a, b):
        return -1
    if less(b, a):
        return 1
    return 0


@dataclass
class DeviceListsScore:
    """A device and the score it would have after a request."""

    device: DeviceUsage
    score: float = 0.0

    def compute_score(self, requests: ContainerDeviceRequests) -> None:
        """Score the device as if the requests were placed on it."""
        request = core = mem = 0
        for req in requests.values():
            request += req.nums
            core += req.coresreq
            if req.mem_percentagereq not in (0, 101):
                mem += self.device.totalmem * _trunc_div(req.mem_percentagereq, 100)
                continue
            mem += req.memreq
        used_score = _ratio(request + self.device.used, self.device.count)
        core_score = _ratio(core + self.device.usedcores, self.device.totalcore)
        mem_score = _ratio(mem + self.device.usedmem, self.device.totalmem)
        self.score = WEIGHT * (used_score + core_score + mem_score)
        log.debug("device %s computed score is %f", self.device.id, self.score)


@dataclass
class DeviceUsageList:
    """The devices of a node, ordered by the GPU policy."""

    device_lists: List[DeviceListsScore] = field(default_factory=list)
    policy: str = ""

    def __len__(self) -> int:
        return len(self.device_lists)

    def _less(self, a: DeviceListsScore, b: DeviceListsScore) -> bool:
        if self.policy == SchedulerPolicy.BINPACK.value:
            if a.device.numa == b.device.numa:
                return a.score < b.score
            return a.device.numa > b.device.numa
        if a.device.numa == b.device.numa:
            return a.score > b.score
        return a.device.numa < b.device.numa

    def less(self, i: int, j: int) -> bool:
        return self._less(self.device_lists[i], self.device_lists[j])

    def swap(self, i: int, j: int) -> None:
        self.device_lists[i], self.device_lists[j] = self.device_lists[j], self.device_lists[i]

    def sort(self) -> None:
        """Order in place; the preferred device ends up last."""
        self.device_lists.sort(key=cmp_to_key(lambda a, b: _compare(self._less, a, b)))


@dataclass
class NodeScore:
    """A candidate node, the devices it would give the pod and its score."""

    node_id: str = ""
    node: Optional[Node] = None
    devices: PodDevices = field(default_factory=dict)
    score: float = 0.0

    def override_score(self, registry: DeviceRegistry, policy: str) -> None:
        """Replace the score with the vendors' own, when they give one."""
        devscore = 0.0
        for name, single in self.devices.items():
            vendor = registry.get(name)
            if vendor is None:
                raise KeyError(f"unknown device vendor {name}")
            devscore += vendor.score_node(self.node, single, policy)
        if devscore > 0:
            self.score = devscore
            log.debug("node %s overridden score is %f", self.node_id, self.score)

    def compute_default_score(self, devices: DeviceUsageList) -> None:
        """Score the node by the share of its devices already in use."""
        lists = devices.device_lists
        used = sum(d.device.used for d in lists)
        used_core = sum(d.device.usedcores for d in lists)
        used_mem = sum(d.device.usedmem for d in lists)
        total = sum(d.device.count for d in lists)
        total_core = sum(d.device.totalcore for d in lists)
        total_mem = sum(d.device.totalmem for d in lists)
        self.score = WEIGHT * (
            _ratio(used, total) + _ratio(used_core, total_core) + _ratio(used_mem, total_mem)
        )
        log.debug("node %s default score is %f", self.node_id, self.score)


@dataclass
class NodeScoreList:
    """Candidate nodes, ordered by the node policy."""

    node_list: List[NodeScore] = field(default_factory=list)
    policy: str = ""

    def __len__(self) -> int:
        return len(self.node_list)

    def _less(self, a: NodeScore, b: NodeScore) -> bool:
        if self.policy == SchedulerPolicy.SPREAD.value:
            return a.score > b.score
        return a.score < b.score

    def less(self, i: int, j: int) -> bool:
        return self._less(self.node_list[i], self.node_list[j])

    def swap(self, i: int, j: int) -> None:
        self.node_list[i], self.node_list[j] = self.node_list[j], self.node_list[i]

    def sort(self) -> None:
        """Order in place; the preferred node ends up last."""
        self.node_list.sort(key=cmp_to_key(lambda a, b: _compare(self._less, a, b)))