"""HTTP endpoints of the scheduler extender and the server that hosts them."""

from __future__ import annotations

import argparse
import json
import logging
import threading
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, Optional, Tuple

from gpushare.kubeclient import InMemoryClient
from gpushare.scheduler import (
    ExtenderArgs,
    ExtenderBindingArgs,
    ExtenderBindingResult,
    ExtenderFilterResult,
    Scheduler,
)
from gpushare.types import SchedulerConfig, SchedulerPolicy
from gpushare.vendors import DeviceRegistry, DeviceVendor
from gpushare.webhook import AdmissionRequest, AdmissionResponse, WebHook, _decode_pod

log = logging.getLogger(__name__)

JSON_CONTENT_TYPE = "application/json"

Response = Tuple[int, bytes]


def _lower_keys(doc: Any) -> Dict[str, Any]:
    if not isinstance(doc, dict):
        raise ValueError("request body must be a JSON object")
    return {str(k).lower(): v for k, v in doc.items()}


def _decode_extender_args(body: bytes) -> ExtenderArgs:
    doc = _lower_keys(json.loads(body))
    pod_doc = doc.get("pod")
    if pod_doc is None:
        raise ValueError("pod is missing from the request")
    node_names = doc.get("nodenames")
    if node_names is not None:
        if not isinstance(node_names, list) or not all(isinstance(n, str) for n in node_names):
            raise ValueError("nodenames must be a list of strings")
        node_names = list(node_names)
    return ExtenderArgs(pod=_decode_pod(pod_doc), node_names=node_names)


def _encode_filter_result(result: ExtenderFilterResult) -> Dict[str, Any]:
    doc: Dict[str, Any] = {}
    if result.node_names is not None:
        doc["nodenames"] = list(result.node_names)
    if result.failed_nodes:
        doc["failedNodes"] = dict(result.failed_nodes)
    if result.error:
        doc["error"] = result.error
    return doc


def _decode_binding_args(body: bytes) -> ExtenderBindingArgs:
    doc = _lower_keys(json.loads(body))
    fields = {}
    for key in ("podname", "podnamespace", "poduid", "node"):
        value = doc.get(key, "")
        if not isinstance(value, str):
            raise ValueError(f"{key} must be a string")
        fields[key] = value
    return ExtenderBindingArgs(
        pod_name=fields["podname"],
        pod_namespace=fields["podnamespace"],
        pod_uid=fields["poduid"],
        node=fields["node"],
    )


def _json_response(doc: Dict[str, Any]) -> Response:
    try:
        return HTTPStatus.OK, json.dumps(doc).encode()
    except (TypeError, ValueError) as exc:
        log.error("Failed to marshal result %r: %s", doc, exc)
        return HTTPStatus.INTERNAL_SERVER_ERROR, json.dumps({"error": str(exc)}).encode()


def predicate_route(scheduler: Scheduler, body: Optional[bytes]) -> Response:
    """Answer a filter request with the chosen node or the failure."""
    if body is None:
        return HTTPStatus.BAD_REQUEST, b"Please send a request body"
    try:
        args = _decode_extender_args(body)
    except (ValueError, TypeError) as exc:
        log.error("decode error: %s", exc)
        result = ExtenderFilterResult(error=str(exc))
    else:
        try:
            result = scheduler.filter(args)
        except Exception as exc:
            log.error("pod %s filter error, %s", args.pod.name, exc)
            result = ExtenderFilterResult(error=str(exc))
    return _json_response(_encode_filter_result(result))


def bind_route(scheduler: Scheduler, body: Optional[bytes]) -> Response:
    """Answer a bind request with the binding outcome."""
    if body is None:
        return HTTPStatus.BAD_REQUEST, b"Please send a request body"
    try:
        args = _decode_binding_args(body)
    except (ValueError, TypeError) as exc:
        log.error("Decode extender binding args: %s", exc)
        result = ExtenderBindingResult(error=str(exc))
    else:
        try:
            result = scheduler.bind(args)
        except Exception as exc:
            log.error("Bind pod %s failed: %s", args.pod_name, exc)
            result = ExtenderBindingResult(error=str(exc))
    return _json_response({"error": result.error} if result.error else {})


def webhook_route(webhook: WebHook, body: Optional[bytes]) -> Response:
    """Answer an AdmissionReview with the webhook's verdict."""
    if not body:
        response = AdmissionResponse(
            allowed=False, code=HTTPStatus.BAD_REQUEST, message="request body is empty"
        )
    else:
        try:
            request = AdmissionRequest.from_review(json.loads(body))
        except (ValueError, TypeError) as exc:
            log.error("Failed to decode admission review: %s", exc)
            response = AdmissionResponse(
                allowed=False, code=HTTPStatus.BAD_REQUEST, message=str(exc)
            )
        else:
            log.info("Start to handle webhook request for %s/%s", request.namespace, request.name)
            response = webhook.handle(request)
    return _json_response(response.to_review())


def healthz_route() -> Response:
    """Report that the server is alive."""
    return HTTPStatus.OK, b""


def make_server(
    scheduler: Scheduler, webhook: WebHook, host: str = "127.0.0.1", port: int = 0
) -> ThreadingHTTPServer:
    """An HTTP server with /filter, /bind, /webhook and /healthz."""
    routes: Dict[Tuple[str, str], Callable[[bytes], Response]] = {
        ("POST", "/filter"): lambda body: predicate_route(scheduler, body),
        ("POST", "/bind"): lambda body: bind_route(scheduler, body),
        ("POST", "/webhook"): lambda body: webhook_route(webhook, body),
        ("GET", "/healthz"): lambda body: healthz_route(),
    }

    class Handler(BaseHTTPRequestHandler):
        def _dispatch(self, method: str) -> None:
            path = self.path.split("?", 1)[0]
            handler = routes.get((method, path))
            if handler is None:
                self.send_error(HTTPStatus.NOT_FOUND)
                return
            length = int(self.headers.get("Content-Length") or 0)
            body = self.rfile.read(length) if length else b""
            status, payload = handler(body)
            self.send_response(status)
            if path != "/healthz":
                self.send_header("Content-Type", JSON_CONTENT_TYPE)
            self.send_header("Content-Length", str(len(payload)))
            self.end_headers()
            self.wfile.write(payload)

        def do_GET(self) -> None:
            self._dispatch("GET")

        def do_POST(self) -> None:
            self._dispatch("POST")

        def log_message(self, format: str, *args: Any) -> None:
            log.debug(format, *args)

    return ThreadingHTTPServer((host, port), Handler)


def _parse_selector(text: str) -> Dict[str, str]:
    selector: Dict[str, str] = {}
    for item in filter(None, (part.strip() for part in text.split(","))):
        key, sep, value = item.partition("=")
        if not sep:
            raise ValueError(f"invalid label selector item {item!r}")
        selector[key] = value
    return selector


def main(argv: Optional[list] = None) -> int:
    """Run the scheduler extender HTTP server."""
    parser = argparse.ArgumentParser(prog="scheduler", description="device-sharing scheduler extender")
    parser.add_argument("--http-bind", default="127.0.0.1:8080")
    parser.add_argument("--scheduler-name", default="")
    policies = [p.value for p in SchedulerPolicy]
    parser.add_argument("--node-scheduler-policy", default=SchedulerPolicy.BINPACK.value, choices=policies)
    parser.add_argument("--gpu-scheduler-policy", default=SchedulerPolicy.SPREAD.value, choices=policies)
    parser.add_argument("--node-label-selector", default="")
    parser.add_argument("--default-mem", type=int, default=0)
    parser.add_argument("--default-cores", type=int, default=0)
    parser.add_argument("--default-gpu", type=int, default=1)
    parser.add_argument("--resource-name", default="hami.io/gpu")
    parser.add_argument("--resource-mem", default="hami.io/gpumem")
    parser.add_argument("--resource-mem-percentage", default="hami.io/gpumem-percentage")
    parser.add_argument("--resource-cores", default="hami.io/gpucores")
    parser.add_argument("--handshake-annotation", default="")
    parser.add_argument("--register-annotation", default="")
    args = parser.parse_args(argv)

    host, sep, port_text = args.http_bind.rpartition(":")
    if not sep or not port_text.isdigit():
        parser.error(f"invalid --http-bind {args.http_bind!r}")
    try:
        selector = _parse_selector(args.node_label_selector)
    except ValueError as exc:
        parser.error(str(exc))

    config = SchedulerConfig(
        http_bind=args.http_bind,
        scheduler_name=args.scheduler_name,
        default_mem=args.default_mem,
        default_cores=args.default_cores,
        default_resource_num=args.default_gpu,
        node_scheduler_policy=args.node_scheduler_policy,
        gpu_scheduler_policy=args.gpu_scheduler_policy,
        node_label_selector=selector,
    )
    client = InMemoryClient()
    vendor = DeviceVendor(
        name="NVIDIA",
        client=client,
        handshake_annotation=args.handshake_annotation,
        register_annotation=args.register_annotation,
        in_request_annotation="hami.io/vgpu-devices-to-allocate",
        support_annotation="hami.io/vgpu-devices-allocated",
        count_resource=args.resource_name,
        memory_resource=args.resource_mem,
        memory_percentage_resource=args.resource_mem_percentage,
        cores_resource=args.resource_cores,
        default_memory=args.default_mem,
        default_cores=args.default_cores,
        default_count=args.default_gpu,
    )
    registry = DeviceRegistry({"NVIDIA": vendor})
    scheduler = Scheduler(client=client, registry=registry, config=config)
    webhook = WebHook(registry=registry, config=config)
    server = make_server(scheduler, webhook, host or "0.0.0.0", int(port_text))
    loop = threading.Thread(target=scheduler.run_registration_loop, daemon=True)
    loop.start()
    log.info("listening on %s", args.http_bind)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        scheduler.stop()
        server.server_close()
    return 0