import json
import threading
import urllib.error
import urllib.request

import pytest

from gpushare.events import EVENT_REASON_BINDING_SUCCEED, EVENT_REASON_FILTERING_FAILED
from gpushare.kubeclient import InMemoryClient
from gpushare.routes import (
    bind_route,
    healthz_route,
    make_server,
    predicate_route,
    webhook_route,
)
from gpushare.scheduler import Scheduler
from gpushare.types import DEVICE_BIND_PHASE, DeviceInfo, Node, NodeInfo, Pod
from gpushare.vendors import DeviceRegistry, DeviceVendor
from gpushare.webhook import WebHook


def _plain_pod_doc():
    return {
        "metadata": {"name": "p1", "namespace": "default", "uid": "uid-p1"},
        "spec": {"containers": [{"name": "c", "resources": {}}]},
    }


def _gpu_scheduler():
    vendor = DeviceVendor(
        name="NVIDIA",
        count_resource="hami.io/gpu",
        memory_resource="hami.io/gpumem",
        cores_resource="hami.io/gpucores",
    )
    scheduler = Scheduler(registry=DeviceRegistry({"NVIDIA": vendor}))
    scheduler.nodes.add_node(
        "node1",
        NodeInfo(
            id="node1",
            devices=[
                DeviceInfo(
                    id="device1", count=10, devmem=8000, devcore=100,
                    type="NVIDIA", health=True, device_vendor="NVIDIA",
                )
            ],
        ),
    )
    return scheduler


def test_healthz():
    assert healthz_route() == (200, b"")


def test_predicate_without_body():
    assert predicate_route(Scheduler(), None) == (400, b"Please send a request body")


def test_predicate_invalid_json_reports_error():
    status, body = predicate_route(Scheduler(), b"{broken")
    assert status == 200
    assert json.loads(body)["error"]


def test_predicate_missing_pod_reports_error():
    status, body = predicate_route(Scheduler(), json.dumps({"NodeNames": ["a"]}).encode())
    assert status == 200
    assert json.loads(body)["error"]


def test_predicate_pod_without_resources_keeps_nodes():
    scheduler = Scheduler()
    body = json.dumps({"Pod": _plain_pod_doc(), "NodeNames": ["node1", "node2"]}).encode()
    status, payload = predicate_route(scheduler, body)
    assert status == 200
    assert json.loads(payload) == {"nodenames": ["node1", "node2"]}
    assert scheduler.recorder.events[-1].reason == EVENT_REASON_FILTERING_FAILED


def test_predicate_filter_failure_is_reported():
    pod = _plain_pod_doc()
    pod["spec"]["containers"][0]["resources"] = {
        "limits": {"hami.io/gpu": "1", "hami.io/gpumem": "1000", "hami.io/gpucores": "20"}
    }
    body = json.dumps({"pod": pod, "nodenames": ["node1"]}).encode()
    status, payload = predicate_route(_gpu_scheduler(), body)
    assert status == 200
    assert json.loads(payload) == {"error": "scheduler has no cluster client"}


def test_bind_invalid_json_reports_error():
    status, payload = bind_route(Scheduler(), b"[")
    assert status == 200
    assert json.loads(payload)["error"]


def test_bind_without_client_reports_error():
    body = json.dumps({"PodName": "p", "PodNamespace": "default", "PodUID": "u", "Node": "n"})
    status, payload = bind_route(Scheduler(), body.encode())
    assert status == 200
    assert json.loads(payload) == {"error": "scheduler has no cluster client"}


def test_bind_success():
    client = InMemoryClient()
    client.add_node(Node(name="node1"))
    client.create_pod(Pod(name="p", namespace="default", uid="uid-1"))
    scheduler = Scheduler(client=client)
    body = json.dumps(
        {"podName": "p", "podNamespace": "default", "podUID": "uid-1", "node": "node1"}
    ).encode()
    status, payload = bind_route(scheduler, body)
    assert status == 200
    assert json.loads(payload) == {}
    assert client.get_pod("default", "p").annotations[DEVICE_BIND_PHASE] == "allocating"
    assert scheduler.recorder.events[-1].reason == EVENT_REASON_BINDING_SUCCEED


def test_webhook_route_denies_pod_without_containers():
    review = {
        "request": {
            "uid": "r1",
            "namespace": "default",
            "name": "p",
            "object": {"metadata": {"name": "p"}, "spec": {"containers": []}},
        }
    }
    status, payload = webhook_route(WebHook(), json.dumps(review).encode())
    response = json.loads(payload)["response"]
    assert status == 200
    assert response["uid"] == "r1"
    assert response["allowed"] is False


def test_webhook_route_empty_body():
    status, payload = webhook_route(WebHook(), b"")
    response = json.loads(payload)["response"]
    assert response["allowed"] is False
    assert response["status"]["code"] == 400


@pytest.fixture
def server():
    srv = make_server(Scheduler(), WebHook(), "127.0.0.1", 0)
    thread = threading.Thread(target=srv.serve_forever, daemon=True)
    thread.start()
    yield srv
    srv.shutdown()
    srv.server_close()


def _url(srv, path):
    host, port = srv.server_address[:2]
    return f"http://{host}:{port}{path}"


def test_server_healthz(server):
    with urllib.request.urlopen(_url(server, "/healthz")) as resp:
        assert resp.status == 200
        assert resp.read() == b""


def test_server_filter(server):
    body = json.dumps({"pod": _plain_pod_doc(), "nodenames": ["n1"]}).encode()
    req = urllib.request.Request(_url(server, "/filter"), data=body, method="POST")
    with urllib.request.urlopen(req) as resp:
        assert resp.headers["Content-Type"] == "application/json"
        assert json.loads(resp.read()) == {"nodenames": ["n1"]}


def test_server_unknown_path(server):
    with pytest.raises(urllib.error.HTTPError) as info:
        urllib.request.urlopen(_url(server, "/nowhere"))
    assert info.value.code == 404