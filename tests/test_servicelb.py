import copy
from datetime import datetime

import pytest

from vmlb.resources import (
    AlreadyExistsError,
    AllocatedAddress,
    Endpoint,
    EndpointSlice,
    HealthCheck,
    IPAMMode,
    Listener,
    LoadBalancer,
    LoadBalancerSpec,
    LoadBalancerStatus,
    NotFoundError,
    ObjectReference,
    Service,
    VirtualMachineInstance,
    WaitExternalIPError,
)
from vmlb.servicelb import (
    DUMMY_ENDPOINT_ID,
    DUMMY_ENDPOINT_IPV4_ADDRESS,
    KEY_LABEL,
    KEY_SERVICE_NAME,
    Server,
    ServiceLBManager,
    append_dummy_endpoint,
    construct_service,
    is_dummy_endpoint,
    marshal_uid,
    unmarshal_prober_address,
    unmarshal_uid,
)


class FakeStore:
    def __init__(self):
        self.objects = {}
        self.updates = 0
        self.creates = 0

    def get(self, namespace, name):
        try:
            return copy.deepcopy(self.objects[(namespace, name)])
        except KeyError:
            raise NotFoundError(f"{namespace}/{name}") from None

    def create(self, obj):
        key = (obj.namespace, obj.name)
        if key in self.objects:
            raise AlreadyExistsError(f"{obj.namespace}/{obj.name}")
        self.creates += 1
        self.objects[key] = copy.deepcopy(obj)
        return copy.deepcopy(obj)

    def update(self, obj):
        key = (obj.namespace, obj.name)
        if key not in self.objects:
            raise NotFoundError(f"{obj.namespace}/{obj.name}")
        self.updates += 1
        self.objects[key] = copy.deepcopy(obj)
        return copy.deepcopy(obj)


class FakeVMICache:
    def __init__(self, vmis):
        self.vmis = vmis

    def list(self, namespace, selector):
        return [v for v in self.vmis if v.namespace == namespace and selector.matches(v.labels)]


class OkProber:
    def probe(self, address, timeout):
        return None


def make_lb(**spec):
    spec.setdefault("listeners", [Listener(name="http", port=80, protocol="TCP", backend_port=8080)])
    return LoadBalancer(
        name="lb",
        namespace="default",
        uid="lb-uid",
        spec=LoadBalancerSpec(**spec),
        status=LoadBalancerStatus(allocated_address=AllocatedAddress(ip_pool="pool", ip="192.168.1.10")),
    )


def make_vmi(name, ip, **kwargs):
    return VirtualMachineInstance(
        name=name,
        namespace="default",
        uid=f"{name}-uid",
        labels={"app": "web"},
        interfaces=[ip],
        **kwargs,
    )


@pytest.fixture
def env():
    services = FakeStore()
    slices = FakeStore()
    vmis = FakeVMICache([make_vmi("vm1", "10.0.0.5"), make_vmi("vm2", "10.0.0.6")])
    with ServiceLBManager(services, slices, vmis, prober=OkProber()) as manager:
        yield manager, services, slices, vmis


def test_server_address_picks_first_ipv4():
    vmi = VirtualMachineInstance(name="vm", interfaces=["fe80::1", "not-an-ip", "10.0.0.7", "10.0.0.8"])
    assert Server(vmi).address() == "10.0.0.7"
    assert Server(VirtualMachineInstance(interfaces=["fe80::1"])).address() is None


def test_server_exposes_identity():
    server = Server(make_vmi("vm1", "10.0.0.5"))
    assert (server.name, server.namespace, server.uid) == ("vm1", "default", "vm1-uid")


def test_uid_round_trip_and_error():
    assert unmarshal_uid(marshal_uid("ns", "name")) == ("ns", "name")
    with pytest.raises(ValueError):
        unmarshal_uid("a/b/c")


def test_prober_address():
    assert unmarshal_prober_address("10.52.0.214:80") == ("10.52.0.214", "80")
    with pytest.raises(ValueError):
        unmarshal_prober_address("fe80::1:80")


def test_construct_new_service_pool():
    lb = make_lb()
    svc = construct_service(None, lb)
    assert svc.name == lb.name and svc.namespace == lb.namespace
    assert svc.labels == {KEY_LABEL: "true"}
    assert svc.type == "LoadBalancer"
    assert svc.load_balancer_ip == "192.168.1.10"
    assert [(p.name, p.port, p.target_port, p.protocol) for p in svc.ports] == [("http", 80, 8080, "TCP")]
    assert svc.owner_references[0].uid == lb.uid


def test_construct_service_dhcp_keeps_existing_fields():
    lb = make_lb(ipam=IPAMMode.DHCP)
    current = Service(name="lb", namespace="default", labels={"x": "y"}, type="ClusterIP")
    svc = construct_service(current, lb)
    assert svc.load_balancer_ip == "0.0.0.0"
    assert svc.labels == {"x": "y"}
    assert svc.type == "ClusterIP"


def test_dummy_endpoint():
    lb = make_lb()
    original = [Endpoint(addresses=["10.0.0.1"], target_ref=ObjectReference(uid="u"))]
    result = append_dummy_endpoint(original, lb)
    assert len(original) == 1
    assert len(result) == 2
    dummy = result[-1]
    assert dummy.addresses == [DUMMY_ENDPOINT_IPV4_ADDRESS]
    assert dummy.ready is True
    assert is_dummy_endpoint(dummy)
    assert not is_dummy_endpoint(original[0])
    assert not is_dummy_endpoint(Endpoint(addresses=["10.0.0.1"]))


def test_ensure_load_balancer_creates_then_updates(env):
    manager, services, _, _ = env
    lb = make_lb()
    manager.ensure_load_balancer(lb)
    assert services.creates == 1
    manager.ensure_load_balancer(lb)
    assert services.updates == 0
    lb.spec.listeners.append(Listener(name="https", port=443, protocol="TCP", backend_port=8443))
    manager.ensure_load_balancer(lb)
    assert services.updates == 1
    assert [p.name for p in services.get("default", "lb").ports] == ["http", "https"]


def test_ensure_service_ip(env):
    manager, services, _, _ = env
    lb = make_lb()
    with pytest.raises(NotFoundError):
        manager.ensure_load_balancer_service_ip(lb)
    manager.ensure_load_balancer(lb)
    with pytest.raises(WaitExternalIPError):
        manager.ensure_load_balancer_service_ip(lb)
    services.objects[("default", "lb")].ingress_ips = ["192.168.1.10"]
    assert manager.ensure_load_balancer_service_ip(lb) == "192.168.1.10"


def test_ensure_backend_servers_needs_service(env):
    manager, _, _, _ = env
    with pytest.raises(NotFoundError):
        manager.ensure_backend_servers(make_lb(backend_server_selector={"app": ["web"]}))


def test_ensure_backend_servers_builds_slice(env):
    manager, _, slices, _ = env
    lb = make_lb(backend_server_selector={"app": ["web"]})
    manager.ensure_load_balancer(lb)
    servers = manager.ensure_backend_servers(lb)
    assert sorted(s.name for s in servers) == ["vm1", "vm2"]
    eps = slices.get("default", "lb")
    assert eps.labels == {KEY_LABEL: "true", KEY_SERVICE_NAME: "lb"}
    assert eps.address_type == "IPv4"
    assert [(p.name, p.port) for p in eps.ports] == [("http", 8080)]
    real = [ep for ep in eps.endpoints if not is_dummy_endpoint(ep)]
    assert sorted(ep.addresses[0] for ep in real) == ["10.0.0.5", "10.0.0.6"]


def test_ensure_backend_servers_without_selector_uses_dummy(env):
    manager, _, slices, _ = env
    lb = make_lb()
    manager.ensure_load_balancer(lb)
    assert manager.ensure_backend_servers(lb) == []
    eps = slices.get("default", "lb")
    assert [ep.target_ref.uid for ep in eps.endpoints] == [DUMMY_ENDPOINT_ID]


def test_list_backend_servers_skips_deleted_and_addressless(env):
    manager, _, _, vmis = env
    vmis.vmis.append(make_vmi("gone", "10.0.0.9", deletion_timestamp=datetime(2024, 1, 1)))
    vmis.vmis.append(make_vmi("v6only", "fe80::2"))
    servers = manager.list_backend_servers(make_lb(backend_server_selector={"app": ["web"]}))
    assert sorted(s.name for s in servers) == ["vm1", "vm2"]


def test_probe_ready_count(env):
    manager, _, slices, _ = env
    lb = make_lb()
    with pytest.raises(NotFoundError):
        manager.get_probe_ready_backend_server_count(lb)
    endpoints = [
        Endpoint(addresses=["10.0.0.1"], target_ref=ObjectReference(uid="a"), ready=True),
        Endpoint(addresses=["10.0.0.2"], target_ref=ObjectReference(uid="b"), ready=False),
        Endpoint(addresses=["10.0.0.3"], target_ref=ObjectReference(uid="c"), ready=None),
    ]
    slices.create(EndpointSlice(name="lb", namespace="default", endpoints=append_dummy_endpoint(endpoints, lb)))
    assert manager.get_probe_ready_backend_server_count(lb) == 1


def test_register_handler_once(env):
    manager, _, _, _ = env
    manager.register_health_check_handler(lambda ns, name: None)
    with pytest.raises(RuntimeError):
        manager.register_health_check_handler(lambda ns, name: None)


def test_health_condition_updates_endpoint(env):
    manager, _, slices, _ = env
    calls = []
    manager.register_health_check_handler(lambda ns, name: calls.append((ns, name)))
    slices.create(
        EndpointSlice(
            name="lb",
            namespace="default",
            endpoints=[Endpoint(addresses=["10.0.0.5"], target_ref=ObjectReference(uid="vm1-uid"), ready=False)],
        )
    )
    manager._update_health_condition("default/lb", "10.0.0.5:80", True)
    assert calls == [("default", "lb")]
    assert slices.get("default", "lb").endpoints[0].ready is True
    manager._update_health_condition("default/lb", "10.0.0.5:80", True)
    assert calls == [("default", "lb")]
    assert slices.updates == 1


def test_health_condition_missing_slice_and_bad_uid(env):
    manager, _, slices, _ = env
    manager._update_health_condition("default/missing", "10.0.0.5:80", True)
    assert slices.updates == 0
    with pytest.raises(ValueError):
        manager._update_health_condition("bad-uid", "10.0.0.5:80", True)


def test_health_check_probes_follow_spec(env):
    manager, _, _, _ = env
    lb = make_lb(
        backend_server_selector={"app": ["web"]},
        health_check=HealthCheck(port=8080),
    )
    manager.ensure_load_balancer(lb)
    manager.ensure_backend_servers(lb)
    options = manager.probers.get_worker_health_option_map(marshal_uid("default", "lb"))
    assert sorted(options) == ["10.0.0.5:8080", "10.0.0.6:8080"]
    option = options["10.0.0.5:8080"]
    assert (option.success_threshold, option.failure_threshold) == (1, 3)
    assert (option.timeout, option.period) == (3.0, 5.0)

    lb.spec.health_check = None
    manager.ensure_backend_servers(lb)
    assert manager.probers.get_worker_health_option_map(marshal_uid("default", "lb")) is None


def test_delete_load_balancer_removes_probes(env):
    manager, _, _, _ = env
    lb = make_lb(backend_server_selector={"app": ["web"]}, health_check=HealthCheck(port=8080))
    manager.ensure_load_balancer(lb)
    manager.ensure_backend_servers(lb)
    assert manager.probers.get_worker_health_option_map("default/lb")
    manager.delete_load_balancer(lb)
    assert manager.probers.get_worker_health_option_map("default/lb") is None