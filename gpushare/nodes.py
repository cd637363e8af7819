"""Registry of cluster nodes and the devices registered on them."""

from __future__ import annotations

import logging
import threading
from typing import Dict, Optional

from gpushare.types import NodeInfo

log = logging.getLogger(__name__)


class NodeNotFoundError(LookupError):
    """The node is not registered with the scheduler."""


class NodeManager:
    """Thread-safe map from node name to its registered devices."""

    def __init__(self) -> None:
        self._nodes: Dict[str, NodeInfo] = {}
        self._lock = threading.RLock()

    def add_node(self, node_id: str, node_info: Optional[NodeInfo]) -> None:
        """Register a node, appending to the devices it already has."""
        if node_info is None or not node_info.devices:
            return
        with self._lock:
            existing = self._nodes.get(node_id)
            if existing is not None:
                existing.devices = [*existing.devices, *node_info.devices]
            else:
                self._nodes[node_id] = node_info

    def remove_node_devices(self, node_id: str, node_info: NodeInfo, vendor: str) -> None:
        """Drop the given devices of one vendor; forget the node once it has none.

        Only devices of ``vendor`` that are not listed in ``node_info`` survive.
        """
        with self._lock:
            existing = self._nodes.get(node_id)
            if existing is None:
                return
            if not existing.devices:
                del self._nodes[node_id]
                return
            log.debug("before rm: %s needs remove %s", existing.devices, node_info.devices)
            removed_ids = {d.id for d in node_info.devices}
            existing.devices = [
                d
                for d in existing.devices
                if d.device_vendor == vendor and d.id not in removed_ids and d.id
            ]
            if not existing.devices:
                del self._nodes[node_id]
                return
            log.debug("Rm Devices res: %s", existing.devices)

    def get_node(self, node_id: str) -> NodeInfo:
        """The registered node; raises NodeNotFoundError if unknown."""
        with self._lock:
            try:
                return self._nodes[node_id]
            except KeyError:
                raise NodeNotFoundError(f"node {node_id} not found") from None

    def list_nodes(self) -> Dict[str, NodeInfo]:
        """All registered nodes by name."""
        with self._lock:
            return dict(self._nodes)