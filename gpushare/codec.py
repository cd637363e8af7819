"""Encoding and decoding of device information carried in annotations."""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timedelta
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from gpushare.types import (
    Container,
    ContainerDevice,
    ContainerDevices,
    NodeDevice,
    Pod,
    PodDevices,
    PodSingleDevice,
)

log = logging.getLogger(__name__)

ONE_CONTAINER_MULTI_DEVICE_SPLIT_SYMBOL = ":"
ONE_POD_MULTI_CONTAINER_SPLIT_SYMBOL = ";"
HANDSHAKE_TIME_FORMAT = "%Y.%m.%d %H:%M:%S"

_INT32_MIN = -(2**31)
_INT32_MAX = 2**31 - 1
_INT_RE = re.compile(r"[+-]?\d+")
_TRUE_WORDS = {"1", "t", "T", "TRUE", "true", "True"}


class CodecError(ValueError):
    """An annotation could not be decoded."""


def _parse_int32(text: str) -> int:
    if not _INT_RE.fullmatch(text):
        return 0
    return max(_INT32_MIN, min(_INT32_MAX, int(text)))


def _parse_int(text: str) -> int:
    return int(text) if _INT_RE.fullmatch(text) else 0


def decode_node_devices(text: str) -> List[NodeDevice]:
    """Decode the node device annotation written by encode_node_devices."""
    if ONE_CONTAINER_MULTI_DEVICE_SPLIT_SYMBOL not in text:
        raise CodecError("node annotations not decode successfully")
    devices = []
    for entry in text.split(ONE_CONTAINER_MULTI_DEVICE_SPLIT_SYMBOL):
        if "," not in entry:
            continue
        items = entry.split(",")
        if len(items) != 7:
            raise CodecError("node annotations not decode successfully")
        devices.append(
            NodeDevice(
                id=items[0],
                count=_parse_int32(items[1]),
                devmem=_parse_int32(items[2]),
                devcore=_parse_int32(items[3]),
                type=items[4],
                numa=_parse_int(items[5]),
                health=items[6] in _TRUE_WORDS,
            )
        )
    return devices


def encode_node_devices(devices: Sequence[NodeDevice]) -> str:
    """Encode node devices into the colon separated annotation form."""
    encoded = "".join(
        f"{d.id},{d.count},{d.devmem},{d.devcore},{d.type},{d.numa},"
        f"{'true' if d.health else 'false'}"
        + ONE_CONTAINER_MULTI_DEVICE_SPLIT_SYMBOL
        for d in devices
    )
    log.info("Encoded node Devices: %s", encoded)
    return encoded


def marshal_node_devices(devices: Sequence[NodeDevice]) -> str:
    """Serialise node devices to JSON; an empty string if that fails."""
    payload = [
        {
            "index": d.index,
            "id": d.id,
            "count": d.count,
            "devmem": d.devmem,
            "devcore": d.devcore,
            "type": d.type,
            "numa": d.numa,
            "health": d.health,
        }
        for d in devices
    ]
    try:
        return json.dumps(payload, separators=(",", ":"))
    except (TypeError, ValueError):
        return ""


def unmarshal_node_devices(text: str) -> List[NodeDevice]:
    """Parse the JSON form produced by marshal_node_devices."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise CodecError(str(exc)) from exc
    if data is None:
        return []
    if not isinstance(data, list):
        raise CodecError("expected a JSON array of devices")
    devices = []
    for item in data:
        if item is None:
            devices.append(NodeDevice())
            continue
        if not isinstance(item, dict):
            raise CodecError("expected a JSON object for each device")
        fields = {key.lower(): value for key, value in item.items()}
        devices.append(
            NodeDevice(
                id=fields.get("id", ""),
                index=fields.get("index", 0),
                count=fields.get("count", 0),
                devmem=fields.get("devmem", 0),
                devcore=fields.get("devcore", 0),
                type=fields.get("type", ""),
                numa=fields.get("numa", 0),
                health=fields.get("health", False),
            )
        )
    return devices


def _encode_container_device(dev: ContainerDevice) -> str:
    return f"{dev.uuid},{dev.type},{dev.usedmem},{dev.usedcores}"


def encode_container_devices(devices: Sequence[ContainerDevice]) -> str:
    """Encode the devices of one container."""
    encoded = "".join(
        _encode_container_device(d) + ONE_CONTAINER_MULTI_DEVICE_SPLIT_SYMBOL for d in devices
    )
    log.info("Encoded container Devices: %s", encoded)
    return encoded


def encode_container_device_type(devices: Sequence[ContainerDevice], device_type: str) -> str:
    """Encode only devices of one type, keeping a separator per device."""
    encoded = "".join(
        (_encode_container_device(d) if d.type == device_type else "")
        + ONE_CONTAINER_MULTI_DEVICE_SPLIT_SYMBOL
        for d in devices
    )
    log.info("Encoded container Certain Device type: %s->%s", device_type, encoded)
    return encoded


def encode_pod_single_device(pod_single: Sequence[Sequence[ContainerDevice]]) -> str:
    """Encode the devices of every container of a pod for one vendor."""
    encoded = "".join(
        encode_container_devices(ctr) + ONE_POD_MULTI_CONTAINER_SPLIT_SYMBOL for ctr in pod_single
    )
    log.info("Encoded pod single devices %s", encoded)
    return encoded


def encode_pod_devices(checklist: Mapping[str, str], pod_devices: PodDevices) -> Dict[str, str]:
    """Map each vendor's devices to its annotation key."""
    result = {
        checklist.get(dev_type, ""): encode_pod_single_device(single)
        for dev_type, single in pod_devices.items()
    }
    log.info("Encoded pod Devices %s", result)
    return result


def decode_container_devices(text: str) -> ContainerDevices:
    """Decode the devices of one container."""
    if not text:
        return []
    devices = []
    for entry in text.split(ONE_CONTAINER_MULTI_DEVICE_SPLIT_SYMBOL):
        if "," not in entry:
            continue
        parts = entry.split(",")
        if len(parts) < 4:
            raise CodecError(
                "pod annotation format error; information missing, "
                "please do not use nodeName field in task"
            )
        devices.append(
            ContainerDevice(
                uuid=parts[0],
                type=parts[1],
                usedmem=_parse_int32(parts[2]),
                usedcores=_parse_int32(parts[3]),
            )
        )
    return devices


def decode_pod_devices(checklist: Mapping[str, str], annotations: Mapping[str, str]) -> PodDevices:
    """Decode the device annotations named in checklist.

    A malformed annotation yields an empty result rather than an error.
    """
    if not annotations:
        return {}
    result: PodDevices = {}
    for dev_type, key in checklist.items():
        if key not in annotations:
            continue
        single: PodSingleDevice = []
        result[dev_type] = single
        for chunk in annotations[key].split(ONE_POD_MULTI_CONTAINER_SPLIT_SYMBOL):
            try:
                devices = decode_container_devices(chunk)
            except CodecError:
                return {}
            if devices:
                single.append(devices)
    return result


def get_next_device_request(
    device_type: str, pod: Pod, checklist: Mapping[str, str]
) -> Tuple[Container, ContainerDevices]:
    """Return the first container still waiting for devices of a type."""
    pod_devices = decode_pod_devices(checklist, pod.annotations)
    single = pod_devices.get(device_type)
    if single is None:
        raise CodecError("device request not found")
    for ctr_idx, devices in enumerate(single):
        if devices:
            return pod.containers[ctr_idx], devices
    raise CodecError("device request not found")


def container_device_uuids(devices: Sequence[ContainerDevice]) -> List[str]:
    """The UUIDs of the given devices, in order."""
    return [d.uuid for d in devices]


def erase_next_device_type(
    device_type: str, pod: Pod, checklist: Mapping[str, str]
) -> Dict[str, str]:
    """Build the annotation patch that clears the next pending container."""
    pod_devices = decode_pod_devices(checklist, pod.annotations)
    single = pod_devices.get(device_type)
    if single is None:
        raise CodecError("erase device annotation not found")
    remaining: PodSingleDevice = []
    found = False
    for devices in single:
        if not found and devices:
            found = True
            remaining.append([])
        else:
            remaining.append(devices)
    log.info("After erase res=%s", remaining)
    return {checklist.get(device_type, ""): encode_pod_single_device(remaining)}


def handshake_timestamp(prefix: str, now: datetime) -> str:
    """Format a handshake annotation value such as 'Requesting_<time>'."""
    return f"{prefix}_{now.strftime(HANDSHAKE_TIME_FORMAT)}"


def check_health(handshake: str, now: Optional[datetime] = None) -> Tuple[bool, bool]:
    """Judge a handshake annotation; returns (healthy, needs_update)."""
    if now is None:
        now = datetime.now()
    if "Requesting" in handshake:
        parts = handshake.split("_")
        if len(parts) < 2:
            raise CodecError(f"malformed handshake annotation {handshake!r}")
        try:
            former = datetime.strptime(parts[1], HANDSHAKE_TIME_FORMAT)
        except ValueError:
            return False, False
        if now.tzinfo is not None:
            former = former.replace(tzinfo=now.tzinfo)
        return now < former + timedelta(seconds=60), False
    if "Deleted" in handshake:
        return True, False
    return True, True