"""Admission webhook that sends device-using pods to this scheduler."""

from __future__ import annotations

import base64
import copy
import json
import logging
import math
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from http import HTTPStatus
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from gpushare.types import POD_PENDING, Container, Pod, SchedulerConfig
from gpushare.vendors import DeviceRegistry

log = logging.getLogger(__name__)

_TEMPLATE = "Processing admission hook for pod %s/%s, UID: %s"

_SUFFIXES: Dict[str, Decimal] = {
    "": Decimal(1),
    "m": Decimal("0.001"),
    "k": Decimal(10) ** 3,
    "M": Decimal(10) ** 6,
    "G": Decimal(10) ** 9,
    "T": Decimal(10) ** 12,
    "P": Decimal(10) ** 15,
    "E": Decimal(10) ** 18,
    "Ki": Decimal(2) ** 10,
    "Mi": Decimal(2) ** 20,
    "Gi": Decimal(2) ** 30,
    "Ti": Decimal(2) ** 40,
    "Pi": Decimal(2) ** 50,
    "Ei": Decimal(2) ** 60,
}
_QUANTITY_RE = re.compile(r"([+-]?(?:\d+\.?\d*|\.\d+))([a-zA-Z]*)")


def _parse_quantity(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError(f"invalid quantity {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return math.ceil(value)
    if not isinstance(value, str):
        raise ValueError(f"invalid quantity {value!r}")
    match = _QUANTITY_RE.fullmatch(value.strip())
    if match is None or match.group(2) not in _SUFFIXES:
        raise ValueError(f"invalid quantity {value!r}")
    try:
        amount = Decimal(match.group(1)) * _SUFFIXES[match.group(2)]
    except InvalidOperation as exc:
        raise ValueError(f"invalid quantity {value!r}") from exc
    return math.ceil(amount)


def _mapping(value: Any, what: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"{what} must be a JSON object")
    return value


def _strings(value: Any, what: str) -> Dict[str, str]:
    result = _mapping(value, what)
    if not all(isinstance(v, str) for v in result.values()):
        raise ValueError(f"{what} values must be strings")
    return dict(result)


def _quantities(value: Any, what: str) -> Dict[str, int]:
    return {key: _parse_quantity(v) for key, v in _mapping(value, what).items()}


def _decode_container(doc: Any) -> Container:
    doc = _mapping(doc, "container")
    resources = _mapping(doc.get("resources"), "resources")
    security = _mapping(doc.get("securityContext"), "securityContext")
    privileged = security.get("privileged")
    if privileged is not None and not isinstance(privileged, bool):
        raise ValueError("securityContext.privileged must be a boolean")
    args = doc.get("args") or []
    if not isinstance(args, list):
        raise ValueError("container args must be a list")
    return Container(
        name=str(doc.get("name", "")),
        image=str(doc.get("image", "")),
        args=[str(a) for a in args],
        limits=_quantities(resources.get("limits"), "limits"),
        requests=_quantities(resources.get("requests"), "requests"),
        privileged=privileged,
    )


def _decode_pod(doc: Any) -> Pod:
    """Build a Pod from its JSON manifest."""
    if not isinstance(doc, dict):
        raise ValueError("pod must be a JSON object")
    meta = _mapping(doc.get("metadata"), "metadata")
    spec = _mapping(doc.get("spec"), "spec")
    status = _mapping(doc.get("status"), "status")
    containers = spec.get("containers") or []
    if not isinstance(containers, list):
        raise ValueError("spec.containers must be a list")
    return Pod(
        name=str(meta.get("name", "")),
        namespace=str(meta.get("namespace", "")),
        uid=str(meta.get("uid", "")),
        annotations=_strings(meta.get("annotations"), "annotations"),
        labels=_strings(meta.get("labels"), "labels"),
        node_name=str(spec.get("nodeName", "")),
        scheduler_name=str(spec.get("schedulerName", "")),
        containers=[_decode_container(c) for c in containers],
        phase=str(status.get("phase", POD_PENDING)),
    )


def _sync_quantities(ctr_doc: Dict[str, Any], key: str, values: Mapping[str, int]) -> None:
    resources = ctr_doc.get("resources") or {}
    current = resources.get(key) or {}
    changed = {
        name: str(value)
        for name, value in values.items()
        if name not in current or _parse_quantity(current[name]) != value
    }
    removed = [name for name in current if name not in values]
    if not changed and not removed:
        return
    updated = {name: v for name, v in current.items() if name not in removed}
    updated.update(changed)
    resources = dict(resources)
    resources[key] = updated
    ctr_doc["resources"] = resources


def _sync_strings(doc: Dict[str, Any], key: str, values: Mapping[str, str]) -> None:
    if dict(values) == (doc.get(key) or {}):
        return
    if values:
        doc[key] = dict(values)
    else:
        doc.pop(key, None)


def _apply_pod(doc: Mapping[str, Any], pod: Pod) -> Dict[str, Any]:
    """The manifest with the pod's mutable fields written back into it."""
    result = copy.deepcopy(dict(doc))
    meta = dict(result.get("metadata") or {})
    _sync_strings(meta, "annotations", pod.annotations)
    _sync_strings(meta, "labels", pod.labels)
    result["metadata"] = meta
    spec = dict(result.get("spec") or {})
    if pod.scheduler_name != spec.get("schedulerName", ""):
        spec["schedulerName"] = pod.scheduler_name
    containers = [dict(c) for c in spec.get("containers") or []]
    for ctr_doc, container in zip(containers, pod.containers):
        _sync_quantities(ctr_doc, "limits", container.limits)
        _sync_quantities(ctr_doc, "requests", container.requests)
    if containers:
        spec["containers"] = containers
    result["spec"] = spec
    return result


def _pointer(parts: Sequence[Any]) -> str:
    return "".join("/" + str(p).replace("~", "~0").replace("/", "~1") for p in parts)


def _json_patch(source: Any, target: Any, path: Tuple[Any, ...] = ()) -> List[Dict[str, Any]]:
    ops: List[Dict[str, Any]] = []
    if isinstance(source, dict) and isinstance(target, dict):
        for key in source:
            if key not in target:
                ops.append({"op": "remove", "path": _pointer((*path, key))})
        for key, value in target.items():
            if key not in source:
                ops.append({"op": "add", "path": _pointer((*path, key)), "value": value})
            else:
                ops.extend(_json_patch(source[key], value, (*path, key)))
    elif isinstance(source, list) and isinstance(target, list) and len(source) == len(target):
        for index, (old, new) in enumerate(zip(source, target)):
            ops.extend(_json_patch(old, new, (*path, index)))
    elif type(source) is not type(target) or source != target:
        ops.append({"op": "replace", "path": _pointer(path), "value": target})
    return ops


@dataclass
class AdmissionRequest:
    """An admission request carrying the raw pod manifest."""

    uid: str = ""
    namespace: str = ""
    name: str = ""
    object: bytes = b""

    @classmethod
    def from_review(cls, review: Any) -> "AdmissionRequest":
        """Read the request out of an AdmissionReview document."""
        if not isinstance(review, dict):
            raise ValueError("admission review must be a JSON object")
        request = _mapping(review.get("request"), "request")
        if not request:
            raise ValueError("admission review has no request")
        obj = request.get("object")
        raw = json.dumps(obj).encode() if obj is not None else b""
        return cls(
            uid=str(request.get("uid", "")),
            namespace=str(request.get("namespace", "")),
            name=str(request.get("name", "")),
            object=raw,
        )


@dataclass
class AdmissionResponse:
    """The verdict on an admission request, with a JSON patch if allowed."""

    allowed: bool
    uid: str = ""
    code: int = HTTPStatus.OK
    message: str = ""
    patch: List[Dict[str, Any]] = field(default_factory=list)

    def to_review(self) -> Dict[str, Any]:
        """This response as an AdmissionReview document."""
        status: Dict[str, Any] = {"code": int(self.code)}
        if self.message:
            status["message"] = self.message
        response: Dict[str, Any] = {"uid": self.uid, "allowed": self.allowed, "status": status}
        if self.patch:
            response["patchType"] = "JSONPatch"
            response["patch"] = base64.b64encode(json.dumps(self.patch).encode()).decode()
        return {"apiVersion": "admission.k8s.io/v1", "kind": "AdmissionReview", "response": response}


def _errored(code: int, message: str, uid: str) -> AdmissionResponse:
    return AdmissionResponse(allowed=False, uid=uid, code=code, message=message)


def _denied(message: str, uid: str) -> AdmissionResponse:
    return AdmissionResponse(allowed=False, uid=uid, code=HTTPStatus.FORBIDDEN, message=message)


class WebHook:
    """Mutating admission hook for pods that ask for devices."""

    def __init__(
        self, registry: Optional[DeviceRegistry] = None, config: Optional[SchedulerConfig] = None
    ) -> None:
        self.registry = registry if registry is not None else DeviceRegistry()
        self.config = config if config is not None else SchedulerConfig()

    def handle(self, request: AdmissionRequest) -> AdmissionResponse:
        """Let vendors adjust the pod and route it to this scheduler."""
        ref = (request.namespace, request.name, request.uid)
        try:
            doc = json.loads(request.object)
            pod = _decode_pod(doc)
        except (ValueError, TypeError) as exc:
            log.error("Failed to decode request: %s", exc)
            return _errored(HTTPStatus.BAD_REQUEST, str(exc), request.uid)
        if not pod.containers:
            log.warning(_TEMPLATE + " - Denying admission as pod has no containers", *ref)
            return _denied("pod has no containers", request.uid)
        log.info(_TEMPLATE, *ref)
        has_resource = False
        for container in pod.containers:
            if container.privileged:
                log.warning(
                    _TEMPLATE + " - Denying admission as container %s is privileged",
                    *ref,
                    container.name,
                )
                continue
            for _, vendor in self.registry.items():
                try:
                    found = vendor.mutate_admission(container, pod)
                except Exception as exc:
                    log.error("validating pod failed: %s", exc)
                    return _errored(HTTPStatus.INTERNAL_SERVER_ERROR, str(exc), request.uid)
                has_resource = has_resource or found
        if not has_resource:
            log.info(_TEMPLATE + " - Allowing admission for pod: no resource found", *ref)
        elif self.config.scheduler_name:
            pod.scheduler_name = self.config.scheduler_name
            if pod.node_name:
                log.info(_TEMPLATE + " - Pod already has node assigned", *ref)
                return _denied("pod has node assigned", request.uid)
        try:
            patched = _apply_pod(doc, pod)
        except (ValueError, TypeError) as exc:
            log.error(_TEMPLATE + " - Failed to marshal pod, error: %s", *ref, exc)
            return _errored(HTTPStatus.INTERNAL_SERVER_ERROR, str(exc), request.uid)
        return AdmissionResponse(allowed=True, uid=request.uid, patch=_json_patch(doc, patched))