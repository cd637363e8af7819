from datetime import datetime, timedelta, timezone
from unittest import mock

import pytest

from gpushare.kubeclient import InMemoryClient, NotFoundError
from gpushare.nodelock import (
    MAX_LOCK_RETRY,
    NODE_LOCK_KEY,
    NodeLockError,
    generate_node_lock_key,
    lock_node,
    parse_node_lock,
    release_node_lock,
    set_node_lock,
)
from gpushare.types import Node, Pod


@pytest.fixture
def client():
    c = InMemoryClient()
    c.add_node(Node(name="node1"))
    return c


@pytest.fixture
def pod():
    return Pod(name="pod1", namespace="default", uid="uid1")


class FlakyClient(InMemoryClient):
    def __init__(self, failures):
        super().__init__()
        self.failures = failures
        self.attempts = 0

    def update_node(self, node):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise ValueError("conflict")
        return super().update_node(node)


def test_parse_plain_time():
    when, ns, name = parse_node_lock("2024-01-02T03:04:05Z")
    assert when == datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    assert (ns, name) == ("", "")


def test_parse_time_with_pod():
    when, ns, name = parse_node_lock("2024-01-02T03:04:05+02:00,default,pod1")
    assert when == datetime(2024, 1, 2, 1, 4, 5, tzinfo=timezone.utc)
    assert (ns, name) == ("default", "pod1")


@pytest.mark.parametrize("value", ["garbage", "2024-01-02T03:04:05Z,a,b,c", "2024-13-02T03:04:05Z"])
def test_parse_rejects_malformed(value):
    with pytest.raises(NodeLockError):
        parse_node_lock(value)


def test_generate_without_pod():
    now = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    assert generate_node_lock_key(None, now) == "2024-01-02T03:04:05Z"


def test_generate_round_trip(pod):
    now = datetime(2024, 5, 6, 7, 8, 9, tzinfo=timezone(timedelta(hours=8)))
    when, ns, name = parse_node_lock(generate_node_lock_key(pod, now))
    assert when == now
    assert (ns, name) == (pod.namespace, pod.name)


def test_set_node_lock(client, pod):
    set_node_lock(client, "node1", pod)
    _, ns, name = parse_node_lock(client.get_node("node1").annotations[NODE_LOCK_KEY])
    assert (ns, name) == ("default", "pod1")


def test_set_node_lock_twice_fails(client, pod):
    set_node_lock(client, "node1", pod)
    with pytest.raises(NodeLockError, match="is locked"):
        set_node_lock(client, "node1", pod)


def test_release_node_lock(client, pod):
    set_node_lock(client, "node1", pod)
    release_node_lock(client, "node1")
    assert NODE_LOCK_KEY not in client.get_node("node1").annotations


def test_release_unlocked_node_keeps_annotations(client):
    client.patch_node_annotations("node1", {"other": "value"})
    release_node_lock(client, "node1")
    assert client.get_node("node1").annotations == {"other": "value"}


def test_lock_node_missing_node(client, pod):
    with pytest.raises(NotFoundError):
        lock_node(client, "absent", pod)


def test_lock_node_recent_lock_refused(client, pod):
    lock_node(client, "node1", pod)
    with pytest.raises(NodeLockError, match="within 5 minutes"):
        lock_node(client, "node1", pod)


def test_lock_node_takes_over_expired_lock(client, pod):
    old = datetime.now(timezone.utc) - timedelta(minutes=10)
    stale = Pod(name="old", namespace="other")
    client.patch_node_annotations("node1", {NODE_LOCK_KEY: generate_node_lock_key(stale, old)})
    lock_node(client, "node1", pod)
    when, ns, name = parse_node_lock(client.get_node("node1").annotations[NODE_LOCK_KEY])
    assert (ns, name) == ("default", "pod1")
    assert datetime.now(timezone.utc) - when < timedelta(minutes=1)


def test_lock_node_bad_value(client, pod):
    client.patch_node_annotations("node1", {NODE_LOCK_KEY: "not a time"})
    with pytest.raises(NodeLockError):
        lock_node(client, "node1", pod)


@mock.patch("gpushare.nodelock.time.sleep")
def test_set_lock_retries_then_succeeds(sleep, pod):
    client = FlakyClient(failures=2)
    client.add_node(Node(name="node1"))
    set_node_lock(client, "node1", pod)
    assert NODE_LOCK_KEY in client.get_node("node1").annotations
    assert client.attempts == 3
    assert sleep.call_count == 2


@mock.patch("gpushare.nodelock.time.sleep")
def test_set_lock_gives_up(sleep, pod):
    client = FlakyClient(failures=100)
    client.add_node(Node(name="node1"))
    with pytest.raises(NodeLockError, match=f"retry count {MAX_LOCK_RETRY}"):
        set_node_lock(client, "node1", pod)
    assert client.attempts == MAX_LOCK_RETRY + 1