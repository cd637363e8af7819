"""Access to the cluster API: config discovery, patch bodies and an in-memory client."""

from __future__ import annotations

import abc
import copy
import json
import os
import threading
from typing import Dict, List, Mapping, Optional, Tuple

from gpushare.types import ASSIGNED_NODE_ANNOTATIONS, Node, Pod


class NotFoundError(LookupError):
    """The requested object does not exist."""


def kubeconfig_path(environ: Optional[Mapping[str, str]] = None) -> str:
    """The kubeconfig file to use: $KUBECONFIG, else ~/.kube/config."""
    env = os.environ if environ is None else environ
    path = env.get("KUBECONFIG", "")
    if path:
        return path
    return os.path.join(env.get("HOME", ""), ".kube", "config")


def build_pod_patch(annotations: Mapping[str, str]) -> str:
    """JSON merge patch setting pod annotations and the assigned-node label."""
    metadata: Dict[str, Dict[str, str]] = {}
    if annotations:
        metadata["annotations"] = dict(annotations)
    node = annotations.get(ASSIGNED_NODE_ANNOTATIONS, "")
    if node:
        metadata["labels"] = {ASSIGNED_NODE_ANNOTATIONS: node}
    return json.dumps({"metadata": metadata}, separators=(",", ":"), sort_keys=True)


def build_node_patch(annotations: Mapping[str, str]) -> str:
    """JSON merge patch setting node annotations."""
    metadata: Dict[str, Dict[str, str]] = {}
    if annotations:
        metadata["annotations"] = dict(annotations)
    return json.dumps({"metadata": metadata}, separators=(",", ":"), sort_keys=True)


def _merge(target: Dict[str, str], patch: Optional[Mapping[str, Optional[str]]]) -> None:
    for key, value in (patch or {}).items():
        if value is None:
            target.pop(key, None)
        else:
            target[key] = value


class KubeClient(abc.ABC):
    """Operations the scheduler needs from the cluster API."""

    @abc.abstractmethod
    def get_node(self, name: str) -> Node: ...

    @abc.abstractmethod
    def list_nodes(self) -> List[Node]: ...

    @abc.abstractmethod
    def update_node(self, node: Node) -> Node: ...

    @abc.abstractmethod
    def patch_node_annotations(self, name: str, annotations: Mapping[str, str]) -> Node: ...

    @abc.abstractmethod
    def create_pod(self, pod: Pod) -> Pod: ...

    @abc.abstractmethod
    def get_pod(self, namespace: str, name: str) -> Pod: ...

    @abc.abstractmethod
    def list_pods(self) -> List[Pod]: ...

    @abc.abstractmethod
    def patch_pod_annotations(self, namespace: str, name: str, annotations: Mapping[str, str]) -> Pod: ...

    @abc.abstractmethod
    def bind_pod(self, namespace: str, name: str, uid: str, node: str) -> None: ...


class InMemoryClient(KubeClient):
    """A cluster held in memory; objects are copied in and out."""

    def __init__(self) -> None:
        self._nodes: Dict[str, Node] = {}
        self._pods: Dict[Tuple[str, str], Pod] = {}
        self._lock = threading.Lock()

    def add_node(self, node: Node) -> Node:
        with self._lock:
            self._nodes[node.name] = copy.deepcopy(node)
            return copy.deepcopy(node)

    def get_node(self, name: str) -> Node:
        with self._lock:
            try:
                return copy.deepcopy(self._nodes[name])
            except KeyError:
                raise NotFoundError(f"node {name} not found") from None

    def list_nodes(self) -> List[Node]:
        with self._lock:
            return [copy.deepcopy(n) for n in self._nodes.values()]

    def update_node(self, node: Node) -> Node:
        with self._lock:
            if node.name not in self._nodes:
                raise NotFoundError(f"node {node.name} not found")
            self._nodes[node.name] = copy.deepcopy(node)
            return copy.deepcopy(node)

    def patch_node_annotations(self, name: str, annotations: Mapping[str, str]) -> Node:
        patch = json.loads(build_node_patch(annotations))["metadata"]
        with self._lock:
            node = self._nodes.get(name)
            if node is None:
                raise NotFoundError(f"node {name} not found")
            _merge(node.annotations, patch.get("annotations"))
            return copy.deepcopy(node)

    def create_pod(self, pod: Pod) -> Pod:
        key = (pod.namespace, pod.name)
        with self._lock:
            if key in self._pods:
                raise ValueError(f"pod {pod.namespace}/{pod.name} already exists")
            self._pods[key] = copy.deepcopy(pod)
            return copy.deepcopy(pod)

    def get_pod(self, namespace: str, name: str) -> Pod:
        with self._lock:
            try:
                return copy.deepcopy(self._pods[(namespace, name)])
            except KeyError:
                raise NotFoundError(f"pod {namespace}/{name} not found") from None

    def list_pods(self) -> List[Pod]:
        with self._lock:
            return [copy.deepcopy(p) for p in self._pods.values()]

    def patch_pod_annotations(self, namespace: str, name: str, annotations: Mapping[str, str]) -> Pod:
        patch = json.loads(build_pod_patch(annotations))["metadata"]
        with self._lock:
            pod = self._pods.get((namespace, name))
            if pod is None:
                raise NotFoundError(f"pod {namespace}/{name} not found")
            _merge(pod.annotations, patch.get("annotations"))
            _merge(pod.labels, patch.get("labels"))
            return copy.deepcopy(pod)

    def bind_pod(self, namespace: str, name: str, uid: str, node: str) -> None:
        with self._lock:
            pod = self._pods.get((namespace, name))
            if pod is None:
                raise NotFoundError(f"pod {namespace}/{name} not found")
            if uid and pod.uid and uid != pod.uid:
                raise ValueError(f"pod {namespace}/{name} uid mismatch")
            if pod.node_name:
                raise ValueError(f"pod {namespace}/{name} is already assigned to node {pod.node_name}")
            pod.node_name = node