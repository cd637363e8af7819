"""Scheduling events recorded against pods."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import List, Optional, Sequence

from gpushare.types import Pod

log = logging.getLogger(__name__)

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"

EVENT_REASON_FILTERING_FAILED = "FilteringFailed"
EVENT_REASON_FILTERING_SUCCEED = "FilteringSucceed"
EVENT_REASON_BINDING_FAILED = "BindingFailed"
EVENT_REASON_BINDING_SUCCEED = "BindingSucceed"


@dataclass(frozen=True)
class Event:
    """One event attached to a pod."""

    namespace: str
    name: str
    uid: str
    event_type: str
    reason: str
    message: str
    component: str = ""


class EventRecorder:
    """Keeps the events emitted by the scheduler, in order."""

    def __init__(self, component: str = "") -> None:
        self.component = component
        self._events: List[Event] = []
        self._lock = threading.Lock()

    @property
    def events(self) -> List[Event]:
        """A copy of every event recorded so far."""
        with self._lock:
            return list(self._events)

    def record(self, pod: Pod, event_type: str, reason: str, message: str) -> Event:
        """Record an event about a pod and return it."""
        event = Event(
            namespace=pod.namespace,
            name=pod.name,
            uid=pod.uid,
            event_type=event_type,
            reason=reason,
            message=message,
            component=self.component,
        )
        with self._lock:
            self._events.append(event)
        log.info("event %s %s for %s/%s: %s", event_type, reason, pod.namespace, pod.name, message)
        return event


def _format_nodes(nodes: Sequence[str]) -> str:
    return "[" + " ".join(nodes) + "]"


def record_binding_result(
    recorder: EventRecorder,
    pod: Optional[Pod],
    reason: str,
    nodes: Sequence[str],
    error: Optional[BaseException],
) -> Optional[Event]:
    """Record the outcome of binding a pod; nothing is recorded without a pod."""
    if pod is None:
        return None
    if error is None:
        message = (
            f"Successfully binding node {_format_nodes(nodes)} to {pod.namespace}/{pod.name}"
        )
        return recorder.record(pod, EVENT_TYPE_NORMAL, reason, message)
    return recorder.record(pod, EVENT_TYPE_WARNING, reason, str(error))


def record_filter_result(
    recorder: EventRecorder,
    pod: Optional[Pod],
    reason: str,
    nodes: Sequence[str],
    error: Optional[BaseException],
) -> Optional[Event]:
    """Record the outcome of filtering nodes for a pod."""
    if pod is None:
        return None
    if error is None:
        message = (
            f"Successfully filtered to following nodes: {_format_nodes(nodes)} "
            f"for {pod.namespace}/{pod.name} "
        )
        return recorder.record(pod, EVENT_TYPE_NORMAL, reason, message)
    return recorder.record(pod, EVENT_TYPE_WARNING, reason, str(error))