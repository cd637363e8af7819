from gpushare.pods import PodInfo, PodManager
from gpushare.types import ContainerDevice, Pod


def _devices(uuid):
    return {"NVIDIA": [[ContainerDevice(idx=0, uuid=uuid, type="NVIDIA", usedmem=100, usedcores=10)]]}


def test_add_pod_records_info():
    manager = PodManager()
    pod = Pod(name="test1", namespace="default", uid="1111")
    devices = _devices("GPU0")
    manager.add_pod(pod, "node1", devices)
    assert manager.list_pods_info() == [
        PodInfo(namespace="default", name="test1", uid="1111", node_id="node1", devices=devices)
    ]


def test_add_existing_pod_replaces_devices_only():
    manager = PodManager()
    pod = Pod(name="test1", namespace="default", uid="1111")
    manager.add_pod(pod, "node1", _devices("GPU0"))
    manager.add_pod(pod, "node2", _devices("GPU1"))
    info = manager.scheduled_pods()["1111"]
    assert info.node_id == "node1"
    assert info.devices == _devices("GPU1")


def test_delete_pod():
    manager = PodManager()
    first = Pod(name="test1", uid="1111")
    second = Pod(name="test2", uid="2222")
    manager.add_pod(first, "node1", {})
    manager.add_pod(second, "node1", {})
    manager.delete_pod(first)
    assert list(manager.scheduled_pods()) == ["2222"]


def test_delete_unknown_pod_leaves_others():
    manager = PodManager()
    manager.add_pod(Pod(name="test1", uid="1111"), "node1", {})
    manager.delete_pod(Pod(uid="ghost"))
    assert len(manager.list_pods_info()) == 1


def test_list_pod_uids():
    manager = PodManager()
    manager.add_pod(Pod(name="test1", uid="1111"), "node1", {})
    manager.add_pod(Pod(name="test2", uid="2222"), "node2", {})
    uids = sorted(p.uid for p in manager.list_pod_uids())
    assert uids == ["1111", "2222"]


def test_removing_listed_pods_empties_manager():
    manager = PodManager()
    manager.add_pod(Pod(name="test1", uid="1111"), "node1", {})
    manager.add_pod(Pod(name="test2", uid="2222"), "node2", {})
    for pod in manager.list_pod_uids():
        manager.delete_pod(pod)
    assert manager.scheduled_pods() == {}