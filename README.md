# vmlb

`vmlb` manages load balancers whose backends are virtual machine instances.
It is a library with no command of its own. It covers four jobs.

- **Health probing** (`vmlb.prober`). A `ProberManager` runs one `Worker`
  thread for each backend address. Every `period` seconds the worker opens a
  TCP connection through `TCPProber`. It counts consecutive successes and
  failures against the thresholds in a `HealthOption`. When a threshold is
  reached it passes a `HealthCondition` to the callback you supplied.
- **Service and endpoint reconciliation** (`vmlb.servicelb`). A
  `ServiceLBManager` keeps a `Service` and an `EndpointSlice` in line with a
  `LoadBalancer`.
  - It selects backend servers by label and wraps each instance as a
    `Server`.
  - Endpoints it has already seen keep their readiness.
  - It starts and stops the health probes.
  - While no backend is ready, it keeps a placeholder endpoint in the slice.
- **Admission checks** (`vmlb.webhook.validator`, `vmlb.webhook.mutator`).
  - `LoadBalancerValidator` rejects listener names and ports that are
    missing, duplicated or out of range.
  - It also rejects health checks on unknown or non-TCP backend ports, and
    changes of IPAM mode or workload type.
  - `LoadBalancerMutator` fills in the namespace, project and network
    annotations.
  - It also gives unset health-check values defaults. Both results come back
    as a list of `PatchOp`.
- **Version conversion** (`vmlb.webhook.converter`). `Converter.convert`
  turns a load balancer document, given as a plain mapping, between the
  `v1alpha1` and `v1beta1` forms. Along the way it looks up IP pools and VM
  addresses. It raises `ConversionError` when a document cannot be converted.

The resource types live in `vmlb.resources`: `LoadBalancer`, `Listener`,
`HealthCheck`, `EndpointSlice`, `Service`, `VirtualMachineInstance` and
others. The same module holds the errors `NotFoundError`,
`AlreadyExistsError` and `WaitExternalIPError`.

Helpers live in `vmlb.utils`:

- `new_selector` builds a `LabelSelector`.
- `get_vid` reads a VLAN id.
- `get_subdirectories` lists the immediate subdirectories of a directory.
- `parse_from_file` reads a multi-document YAML file.
- `set_log_level` sets the level of the root logger.

## Installing

```
pip install .
```

Python 3.10 or later is required. The only runtime dependency is PyYAML.

## Validating a load balancer

```python
from vmlb.resources import HealthCheck, Listener, LoadBalancer, LoadBalancerSpec
from vmlb.webhook.validator import check_healthy_check, check_listeners

lb = LoadBalancer(
    namespace="default",
    name="web",
    spec=LoadBalancerSpec(
        listeners=[Listener(name="http", port=80, protocol="TCP", backend_port=8080)],
        health_check=HealthCheck(
            port=8080,
            success_threshold=1,
            failure_threshold=3,
            period_seconds=5,
            timeout_seconds=3,
        ),
    ),
)

check_listeners(lb)       # raises ValueError on a bad listener set
check_healthy_check(lb)   # raises ValueError on a bad health check
```

## Probing backends

Times in a `HealthOption` are given in seconds.

```python
from vmlb.prober import HealthOption, ProberManager

def on_change(uid, address, is_healthy):
    print(uid, address, is_healthy)

with ProberManager(on_change) as manager:
    manager.add_worker(
        "default/web",
        "10.0.0.5:8080",
        HealthOption(
            address="10.0.0.5:8080",
            success_threshold=1,
            failure_threshold=3,
            timeout=1.0,
            period=5.0,
        ),
    )
    ...
```

- `remove_worker` stops one worker and returns how many workers were
  removed.
- `remove_workers_by_uid` stops every worker of one load balancer and returns
  how many were removed.
- `get_worker_health_option_map` returns a copy of the options running for
  one load balancer, or `None` if it has no workers.
- `close` stops every worker and the dispatcher.

`ProberManager` also accepts `prober=`, any object with a
`probe(address, timeout)` method. Use it to replace the TCP check.

## Reconciling a load balancer

`ServiceLBManager` takes three objects that you supply:

- a service store with `get`, `create` and `update`;
- an endpoint-slice store with `get`, `create` and `update`;
- a VM instance cache with `list(namespace, selector)`.

A store's `get` raises `NotFoundError` when the object is missing. Call the
manager's methods in this order:

1. `ensure_load_balancer` creates or updates the service.
2. `ensure_load_balancer_service_ip` returns the external IP. It raises
   `WaitExternalIPError` until the service has an ingress IP.
3. `ensure_backend_servers` writes the endpoint slice, updates the probes and
   returns the backend servers.

Health results from the probes update endpoint readiness in the slice. To be
told of each change, register a handler once with
`register_health_check_handler`. Use the manager as a context manager, or
close its `probers`, to stop the probe threads.

## What this package does not do

- It includes no cluster API client. The stores and caches above must be
  provided by the caller.
- It includes no controller loop.
- It includes no HTTP server for the admission and conversion hooks. The
  validator, mutator and converter are plain objects for you to call.
- It has no IP pool allocation and no admission checks for IP pools.

## Running the tests

```
pip install .[test]
pytest
```