import json

from gpushare.types import SchedulerConfig
from gpushare.vendors import DeviceRegistry, DeviceVendor
from gpushare.webhook import AdmissionRequest, AdmissionResponse, WebHook


def _vendor(**kwargs):
    return DeviceVendor(
        name="NVIDIA",
        count_resource="hami.io/gpu",
        memory_resource="hami.io/gpumem",
        memory_percentage_resource="hami.io/gpumem-percentage",
        cores_resource="hami.io/gpucores",
        **kwargs,
    )


def _pod_doc(limits, node_name="", privileged=None, containers=True):
    security = {} if privileged is None else {"privileged": privileged}
    spec = {}
    if containers:
        spec["containers"] = [
            {"name": "container1", "securityContext": security, "resources": {"limits": limits}}
        ]
    if node_name:
        spec["nodeName"] = node_name
    return {"metadata": {"name": "test-pod", "namespace": "default"}, "spec": spec}


def _request(doc):
    return AdmissionRequest(
        uid="test-uid", namespace="default", name="test-pod", object=json.dumps(doc).encode()
    )


def test_handle_allows_pod_without_known_resource():
    hook = WebHook(DeviceRegistry({"NVIDIA": _vendor()}), SchedulerConfig())
    resp = hook.handle(_request(_pod_doc({"nvidia.com/gpu": "1"})))
    assert resp.allowed is True
    assert resp.patch == []
    assert resp.uid == "test-uid"


def test_pod_with_node_name_is_denied():
    hook = WebHook(
        DeviceRegistry({"NVIDIA": _vendor()}), SchedulerConfig(scheduler_name="hami-scheduler")
    )
    resp = hook.handle(_request(_pod_doc({"hami.io/gpu": "1"}, node_name="test-node")))
    assert resp.allowed is False
    assert resp.message == "pod has node assigned"
    assert resp.code == 403


def test_pod_without_containers_is_denied():
    hook = WebHook(DeviceRegistry({"NVIDIA": _vendor()}), SchedulerConfig())
    resp = hook.handle(_request(_pod_doc({}, containers=False)))
    assert resp.allowed is False
    assert resp.message == "pod has no containers"


def test_scheduler_name_is_patched_in():
    hook = WebHook(
        DeviceRegistry({"NVIDIA": _vendor()}), SchedulerConfig(scheduler_name="hami-scheduler")
    )
    resp = hook.handle(_request(_pod_doc({"hami.io/gpu": "1"})))
    assert resp.allowed is True
    assert resp.patch == [{"op": "add", "path": "/spec/schedulerName", "value": "hami-scheduler"}]


def test_privileged_container_is_skipped():
    hook = WebHook(
        DeviceRegistry({"NVIDIA": _vendor()}), SchedulerConfig(scheduler_name="hami-scheduler")
    )
    resp = hook.handle(_request(_pod_doc({"hami.io/gpu": "1"}, privileged=True)))
    assert resp.allowed is True
    assert resp.patch == []


def test_default_count_is_added_to_limits():
    hook = WebHook(
        DeviceRegistry({"NVIDIA": _vendor(default_count=1)}),
        SchedulerConfig(scheduler_name="hami-scheduler"),
    )
    resp = hook.handle(_request(_pod_doc({"hami.io/gpumem": "1000"})))
    assert resp.allowed is True
    assert {
        "op": "add",
        "path": "/spec/containers/0/resources/limits/hami.io~1gpu",
        "value": "1",
    } in resp.patch


def test_undecodable_object_is_a_bad_request():
    hook = WebHook()
    resp = hook.handle(AdmissionRequest(uid="u", object=b"{not json"))
    assert resp.allowed is False
    assert resp.code == 400


def test_vendor_failure_is_an_internal_error():
    class FailingVendor(DeviceVendor):
        def mutate_admission(self, container, pod):
            raise RuntimeError("vendor failed")

    hook = WebHook(DeviceRegistry({"X": FailingVendor(name="X")}))
    resp = hook.handle(_request(_pod_doc({"hami.io/gpu": "1"})))
    assert resp.allowed is False
    assert resp.code == 500
    assert resp.message == "vendor failed"


def test_review_round_trip():
    doc = {"request": {"uid": "abc", "namespace": "ns", "name": "p", "object": _pod_doc({})}}
    req = AdmissionRequest.from_review(doc)
    assert (req.uid, req.namespace, req.name) == ("abc", "ns", "p")
    assert json.loads(req.object) == _pod_doc({})
    review = AdmissionResponse(allowed=True, uid="abc").to_review()
    assert review["response"]["uid"] == "abc"
    assert review["response"]["allowed"] is True
    assert "patch" not in review["response"]