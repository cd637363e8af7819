# gpushare

`gpushare` is a scheduler extender and admission webhook for sharing GPU
devices between cluster workloads. It keeps track of the devices each node
offers and of the slices of memory and compute that scheduled pods have
taken. For a new pod it picks a node and concrete devices.

## What it does

- **Admission webhook** (`gpushare.webhook.WebHook.handle`): decodes the pod
  in an `AdmissionRequest` and denies pods with no containers. Privileged
  containers are skipped. Each registered `DeviceVendor` may adjust a
  container; if any container uses a vendor's devices and a scheduler name is
  configured, the pod's `schedulerName` is set to it, and a pod that already
  names a node is denied. An allowed response carries a JSON patch.
- **Filter** (`gpushare.scheduler.Scheduler.filter`): computes the usage of
  the candidate nodes, fits each container's device requests onto their
  devices (`gpushare.score.calc_score`) and returns the single best node.
  The chosen devices are written into the pod's annotations. A pod that
  requests no devices gets the candidate list back unchanged.
- **Bind** (`gpushare.scheduler.Scheduler.bind`): locks the node for vendors
  whose devices the pod requests, marks the pod as `allocating` and binds it.
  If locking or binding fails, the locks are released and the error is
  returned in the `ExtenderBindingResult`.
- **Node registration** (`Scheduler.refresh_nodes`,
  `Scheduler.run_registration_loop`): reads each vendor's device annotation
  on the nodes, checks the handshake annotation and keeps the device list in
  a `gpushare.nodes.NodeManager`.
- **Scoring policies** (`gpushare.policy`): nodes and devices are ranked by
  `binpack` or `spread`. By default nodes use `binpack` and devices use
  `spread`. A pod can override either with the annotations
  `hami.io/node-scheduler-policy` and `hami.io/gpu-scheduler-policy`.
- **Node locking** (`gpushare.nodelock`): a lock is stored in the node
  annotation `hami.io/mutex.lock`. A lock older than five minutes is taken
  over by `lock_node`.
- **Events** (`gpushare.events.EventRecorder`): filter and bind outcomes are
  recorded as `Normal` or `Warning` events against the pod.
- **Annotation codec** (`gpushare.codec`): encodes and decodes the compact
  device strings kept in pod and node annotations.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Running the scheduler

```
gpushare-scheduler --http-bind 127.0.0.1:8080 --scheduler-name my-scheduler
```

This serves over HTTP:

- `POST /filter` – extender filter request
- `POST /bind` – extender bind request
- `POST /webhook` – AdmissionReview for the webhook
- `GET /healthz` – health check

Options include `--node-scheduler-policy` and `--gpu-scheduler-policy`
(`binpack` or `spread`), `--node-label-selector key=value,...`,
`--default-mem`, `--default-cores`, `--default-gpu`, the resource names
`--resource-name`, `--resource-mem`, `--resource-mem-percentage`,
`--resource-cores`, and the node annotations `--handshake-annotation` and
`--register-annotation`. One device vendor, `NVIDIA`, is registered.

To print the version:

```
gpushare-version
```

## Device annotations

A container's devices are stored as `uuid,type,memory,cores` entries, each
followed by `:`. The containers of a pod are separated by `;`.

```python
from gpushare.codec import decode_pod_devices, encode_pod_devices

checklist = {"NVIDIA": "hami.io/vgpu-devices-to-allocate"}
annotations = {
    "hami.io/vgpu-devices-to-allocate": "GPU-0000,NVIDIA,500,3:;GPU-0001,NVIDIA,500,3:;",
}

pod_devices = decode_pod_devices(checklist, annotations)
assert encode_pod_devices(checklist, pod_devices) == annotations
```

Node device lists use `encode_node_devices` / `decode_node_devices`, and
have a JSON form through `marshal_node_devices` and `unmarshal_node_devices`.

## Using it from Python

```python
from gpushare.kubeclient import InMemoryClient
from gpushare.scheduler import Scheduler
from gpushare.vendors import DeviceRegistry, DeviceVendor

client = InMemoryClient()
vendor = DeviceVendor(name="NVIDIA", client=client, count_resource="hami.io/gpu")
scheduler = Scheduler(client=client, registry=DeviceRegistry({"NVIDIA": vendor}))
```

Nodes and pods are added with `InMemoryClient.add_node` and
`InMemoryClient.create_pod`; `Scheduler.refresh_nodes` then registers the
devices the nodes advertise.

## What it does not do

- There is no client for a real cluster API. `gpushare.kubeclient.KubeClient`
  is an abstract interface, and the only implementation is `InMemoryClient`,
  which keeps nodes and pods in memory. `gpushare-scheduler` runs on such an
  in-memory cluster, and the HTTP server offers no way to add nodes or pods
  to it, so on its own it has no devices to schedule onto.
- It does not watch a cluster for pod or node changes; the handlers
  `Scheduler.on_add_pod`, `on_update_pod`, `on_delete_pod` and
  `notify_nodes_changed` must be called by the embedding program.
- There is no metrics endpoint, no device plugin and no TLS for the webhook.
- Vendors other than the generic `DeviceVendor` are not included;
  `score_node` always returns 0 and `custom_filter_rule` admits every device.