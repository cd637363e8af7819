"""Node locks stored as an annotation on the node object."""

from __future__ import annotations

import copy
import logging
import re
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Tuple

from gpushare.kubeclient import KubeClient
from gpushare.types import Node, Pod

log = logging.getLogger(__name__)

NODE_LOCK_KEY = "hami.io/mutex.lock"
MAX_LOCK_RETRY = 5
NODE_LOCK_SEP = ","
LOCK_EXPIRY = timedelta(minutes=5)

_RETRY_INTERVAL = 0.1
_RFC3339_RE = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})[Tt](\d{2}):(\d{2}):(\d{2})(\.\d+)?([Zz]|[+-]\d{2}:\d{2})"
)


class NodeLockError(RuntimeError):
    """A node lock could not be taken, released or parsed."""


def _parse_rfc3339(text: str) -> datetime:
    match = _RFC3339_RE.fullmatch(text)
    if match is None:
        raise NodeLockError(f"cannot parse {text!r} as an RFC 3339 time")
    year, month, day, hour, minute, second = (int(g) for g in match.groups()[:6])
    fraction, zone = match.group(7), match.group(8)
    micro = int((fraction[1:] + "000000")[:6]) if fraction else 0
    if zone in ("Z", "z"):
        tz = timezone.utc
    else:
        sign = 1 if zone[0] == "+" else -1
        tz = timezone(sign * timedelta(hours=int(zone[1:3]), minutes=int(zone[4:6])))
    try:
        return datetime(year, month, day, hour, minute, second, micro, tzinfo=tz)
    except ValueError as exc:
        raise NodeLockError(f"cannot parse {text!r} as an RFC 3339 time: {exc}") from exc


def _format_rfc3339(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.astimezone()
    text = moment.replace(microsecond=0).isoformat()
    if moment.utcoffset() == timedelta(0):
        text = text[: -len("+00:00")] + "Z"
    return text


def parse_node_lock(value: str) -> Tuple[datetime, str, str]:
    """Split a lock value into (lock time, pod namespace, pod name)."""
    if NODE_LOCK_SEP not in value:
        return _parse_rfc3339(value), "", ""
    parts = value.split(NODE_LOCK_SEP)
    if len(parts) != 3:
        return _parse_rfc3339(value), "", ""
    return _parse_rfc3339(parts[0]), parts[1], parts[2]


def generate_node_lock_key(pod: Optional[Pod], now: Optional[datetime] = None) -> str:
    """The lock value for a pod: its time, namespace and name."""
    stamp = _format_rfc3339(now if now is not None else datetime.now().astimezone())
    if pod is None:
        return stamp
    return NODE_LOCK_SEP.join((stamp, pod.namespace, pod.name))


def _update_with_retry(
    client: KubeClient,
    node_name: str,
    node: Node,
    mutate: Callable[[Dict[str, str]], None],
    action: str,
) -> None:
    updated = copy.deepcopy(node)
    mutate(updated.annotations)
    try:
        client.update_node(updated)
        return
    except Exception as exc:  # any API failure is retried
        error: Exception = exc
    for attempt in range(MAX_LOCK_RETRY):
        log.error("Failed to update node %s (retry %d): %s", node_name, attempt, error)
        time.sleep(_RETRY_INTERVAL)
        try:
            node = client.get_node(node_name)
        except Exception as exc:
            log.error("Failed to get node %s when retrying update: %s", node_name, exc)
            error = exc
            continue
        updated = copy.deepcopy(node)
        mutate(updated.annotations)
        try:
            client.update_node(updated)
            return
        except Exception as exc:
            error = exc
    raise NodeLockError(f"{action} exceeds retry count {MAX_LOCK_RETRY}") from error


def set_node_lock(client: KubeClient, node_name: str, pod: Optional[Pod]) -> None:
    """Put a lock on an unlocked node."""
    node = client.get_node(node_name)
    if NODE_LOCK_KEY in node.annotations:
        raise NodeLockError(f"node {node_name} is locked")

    def mutate(annotations: Dict[str, str]) -> None:
        annotations[NODE_LOCK_KEY] = generate_node_lock_key(pod)

    _update_with_retry(client, node_name, node, mutate, "setNodeLock")
    log.info("Node lock set on %s", node_name)


def release_node_lock(client: KubeClient, node_name: str) -> None:
    """Remove the lock from a node; an unlocked node is left alone."""
    node = client.get_node(node_name)
    if NODE_LOCK_KEY not in node.annotations:
        log.info("Node lock not set on %s", node_name)
        return

    def mutate(annotations: Dict[str, str]) -> None:
        annotations.pop(NODE_LOCK_KEY, None)

    _update_with_retry(client, node_name, node, mutate, "releaseNodeLock")
    log.info("Node lock released on %s", node_name)


def lock_node(client: KubeClient, node_name: str, pod: Optional[Pod]) -> None:
    """Lock a node, taking over a lock older than five minutes."""
    node = client.get_node(node_name)
    if NODE_LOCK_KEY not in node.annotations:
        set_node_lock(client, node_name, pod)
        return
    lock_time, _, _ = parse_node_lock(node.annotations[NODE_LOCK_KEY])
    if datetime.now(timezone.utc) - lock_time > LOCK_EXPIRY:
        log.info("Node lock on %s expired at %s", node_name, lock_time)
        release_node_lock(client, node_name)
        set_node_lock(client, node_name, pod)
        return
    raise NodeLockError(f"node {node_name} has been locked within 5 minutes")