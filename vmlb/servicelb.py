"""Load balancing through a Service of type LoadBalancer and a managed EndpointSlice."""

from __future__ import annotations

import copy
import ipaddress
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Protocol, Tuple

from .prober import HealthOption, Prober, ProberManager
from .resources import (
    ADDRESS_TYPE_IPV4,
    SERVICE_TYPE_LOAD_BALANCER,
    AlreadyExistsError,
    BackendServer,
    Endpoint,
    EndpointPort,
    EndpointSlice,
    HealthCheckHandler,
    IPAMMode,
    LoadBalancer,
    NotFoundError,
    ObjectReference,
    Service,
    ServicePort,
    VirtualMachineInstance,
    WaitExternalIPError,
)
from .utils import ADDRESS4_ASK_DHCP, GROUP_NAME, VALUE_TRUE, LabelSelector, new_selector

log = logging.getLogger(__name__)

KEY_LABEL = f"{GROUP_NAME}/servicelb"
KEY_SERVICE_NAME = "kubernetes.io/service-name"

DEFAULT_SUCCESS_THRESHOLD = 1
DEFAULT_FAILURE_THRESHOLD = 3
DEFAULT_TIMEOUT = 3.0
DEFAULT_PERIOD = 5.0

DUMMY_ENDPOINT_IPV4_ADDRESS = "10.52.0.255"
DUMMY_ENDPOINT_ID = "dummy347-546a-4642-9da6-5608endpoint"


class ServiceStore(Protocol):
    def get(self, namespace: str, name: str) -> Service: ...

    def create(self, obj: Service) -> Service: ...

    def update(self, obj: Service) -> Service: ...


class EndpointSliceStore(Protocol):
    def get(self, namespace: str, name: str) -> EndpointSlice: ...

    def create(self, obj: EndpointSlice) -> EndpointSlice: ...

    def update(self, obj: EndpointSlice) -> EndpointSlice: ...


class VirtualMachineInstanceCache(Protocol):
    def list(self, namespace: str, selector: LabelSelector) -> Iterable[VirtualMachineInstance]: ...


def _is_ipv4(text: str) -> bool:
    try:
        ip = ipaddress.ip_address(text)
    except ValueError:
        return False
    if isinstance(ip, ipaddress.IPv4Address):
        return True
    return ip.ipv4_mapped is not None


@dataclass(frozen=True)
class Server:
    """A virtual machine instance acting as a backend server."""

    vmi: VirtualMachineInstance

    @property
    def uid(self) -> str:
        return self.vmi.uid

    @property
    def namespace(self) -> str:
        return self.vmi.namespace

    @property
    def name(self) -> str:
        return self.vmi.name

    def address(self) -> Optional[str]:
        """Return the first IPv4 address of the instance, or None."""
        return next((ip for ip in self.vmi.interfaces if _is_ipv4(ip)), None)


def marshal_uid(namespace: str, name: str) -> str:
    return f"{namespace}/{name}"


def unmarshal_uid(uid: str) -> Tuple[str, str]:
    fields = uid.split("/")
    if len(fields) != 2:
        raise ValueError(f"invalid uid {uid}")
    return fields[0], fields[1]


def _marshal_prober_address(lb: LoadBalancer, endpoint: Endpoint) -> str:
    return f"{endpoint.addresses[0]}:{int(lb.spec.health_check.port)}"


def unmarshal_prober_address(address: str) -> Tuple[str, str]:
    """Split a probe address such as ``10.52.0.214:80`` into ip and port."""
    fields = address.split(":")
    if len(fields) != 2:
        raise ValueError(f"invalid probe address {address}")
    return fields[0], fields[1]


def _owner_reference(lb: LoadBalancer) -> ObjectReference:
    return ObjectReference(api_version=lb.api_version, kind=lb.kind, name=lb.name, uid=lb.uid)


def construct_service(current: Optional[Service], lb: LoadBalancer) -> Service:
    """Fill ``current`` (or a new service) with what ``lb`` asks for and return it."""
    if current is not None:
        svc = current
    else:
        svc = Service(
            name=lb.name,
            namespace=lb.namespace,
            owner_references=[_owner_reference(lb)],
            labels={KEY_LABEL: VALUE_TRUE},
            type=SERVICE_TYPE_LOAD_BALANCER,
        )

    if lb.spec.ipam == IPAMMode.DHCP:
        # an address of 0.0.0.0 asks for the external IP by DHCP
        svc.load_balancer_ip = ADDRESS4_ASK_DHCP
    else:
        svc.load_balancer_ip = lb.status.allocated_address.ip

    svc.ports = [
        ServicePort(
            name=listener.name,
            protocol=listener.protocol,
            port=listener.port,
            target_port=listener.backend_port,
        )
        for listener in lb.spec.listeners
    ]
    return svc


def append_dummy_endpoint(endpoints: List[Endpoint], lb: LoadBalancer) -> List[Endpoint]:
    """Return ``endpoints`` with a ready placeholder endpoint appended."""
    dummy = Endpoint(
        addresses=[DUMMY_ENDPOINT_IPV4_ADDRESS],
        target_ref=ObjectReference(namespace=lb.namespace, name=lb.name, uid=DUMMY_ENDPOINT_ID),
        ready=True,
    )
    return [*endpoints, dummy]


def is_dummy_endpoint(endpoint: Endpoint) -> bool:
    return endpoint.target_ref is not None and endpoint.target_ref.uid == DUMMY_ENDPOINT_ID


def _is_ready(endpoint: Endpoint) -> bool:
    return endpoint.ready is True


def _needs_update(endpoint: Endpoint, ready: bool) -> bool:
    return endpoint.ready is None or endpoint.ready != ready


class ServiceLBManager:
    """Keeps a Service, its EndpointSlice and the health probes in line with a load balancer."""

    def __init__(
        self,
        services: ServiceStore,
        endpoint_slices: EndpointSliceStore,
        vmi_cache: VirtualMachineInstanceCache,
        prober: Optional[Prober] = None,
    ) -> None:
        self._services = services
        self._endpoint_slices = endpoint_slices
        self._vmi_cache = vmi_cache
        self._health_handler: Optional[HealthCheckHandler] = None
        self.probers = ProberManager(self._update_health_condition, prober=prober)

    def __enter__(self) -> "ServiceLBManager":
        return self

    def __exit__(self, *exc_info) -> None:
        self.probers.close()

    # health results

    def _update_health_condition(self, uid: str, address: str, is_healthy: bool) -> None:
        namespace, name = unmarshal_uid(uid)
        try:
            eps = self._endpoint_slices.get(namespace, name)
        except NotFoundError:
            log.warning("endpointSlice %s/%s is not found", namespace, name)
            return

        ip, _ = unmarshal_prober_address(address)
        for index, endpoint in enumerate(eps.endpoints):
            if len(endpoint.addresses) != 1:
                raise ValueError(
                    f"the length of lb {uid} endpoint addresses is {len(endpoint.addresses)}, endpoint: {endpoint}"
                )
            if endpoint.addresses[0] != ip:
                continue
            if _needs_update(endpoint, is_healthy):
                # tell the controller that an endpoint flipped between healthy and unhealthy
                if self._health_handler is not None:
                    self._health_handler(namespace, name)
                eps_copy = copy.deepcopy(eps)
                eps_copy.endpoints[index].ready = is_healthy
                log.info("update condition of lb %s endpoint ip %s to %s", uid, ip, is_healthy)
                self._endpoint_slices.update(eps_copy)
            break

    def _update_all_conditions(self, lb: LoadBalancer, eps: EndpointSlice, is_healthy: bool) -> None:
        eps_copy = copy.deepcopy(eps)
        updated = False
        for endpoint in eps_copy.endpoints:
            if not is_dummy_endpoint(endpoint) and _needs_update(endpoint, is_healthy):
                endpoint.ready = is_healthy
                updated = True
        if updated:
            log.info("update all conditions of lb %s/%s endpoints to %s", lb.namespace, lb.name, is_healthy)
            self._endpoint_slices.update(eps_copy)

    def register_health_check_handler(self, handler: HealthCheckHandler) -> None:
        """Register the handler told about health changes; allowed once."""
        if self._health_handler is not None:
            raise RuntimeError("health check handler can only be registered once")
        self._health_handler = handler

    # load balancer lifecycle

    def get_probe_ready_backend_server_count(self, lb: LoadBalancer) -> int:
        """Count ready endpoints, leaving out the placeholder."""
        try:
            eps = self._endpoint_slices.get(lb.namespace, lb.name)
        except NotFoundError:
            log.warning("lb %s/%s endpointSlice is not found", lb.namespace, lb.name)
            raise
        return sum(1 for ep in eps.endpoints if not is_dummy_endpoint(ep) and _is_ready(ep))

    def ensure_load_balancer(self, lb: LoadBalancer) -> None:
        svc = self._get_service(lb)
        if svc is not None:
            svc_copy = construct_service(copy.deepcopy(svc), lb)
            if svc_copy != svc:
                self._services.update(svc_copy)
        else:
            try:
                self._services.create(construct_service(None, lb))
            except AlreadyExistsError:
                pass

    def delete_load_balancer(self, lb: LoadBalancer) -> None:
        try:
            self._endpoint_slices.get(lb.namespace, lb.name)
        except NotFoundError:
            log.info("delete lb %s/%s endpointSlice is not found", lb.namespace, lb.name)
        self._remove_lb_probers(lb)

    def ensure_load_balancer_service_ip(self, lb: LoadBalancer) -> str:
        svc = self._get_service(lb)
        if svc is None:
            raise NotFoundError("service is not existing, ensure it first")
        if svc.ingress_ips:
            return svc.ingress_ips[0]
        raise WaitExternalIPError()

    def list_backend_servers(self, lb: LoadBalancer) -> List[BackendServer]:
        return self._get_service_backend_servers(lb)

    def ensure_backend_servers(self, lb: LoadBalancer) -> List[BackendServer]:
        if self._get_service(lb) is None:
            raise NotFoundError("service is not existing, ensure it first")

        try:
            eps: Optional[EndpointSlice] = self._endpoint_slices.get(lb.namespace, lb.name)
        except NotFoundError:
            eps = None

        servers = self._get_service_backend_servers(lb)
        eps_new = self._construct_endpoint_slice(eps, lb, servers)

        if eps is None:
            eps = self._endpoint_slices.create(eps_new)
        elif eps != eps_new:
            log.debug("update endpointslice %s/%s", lb.namespace, lb.name)
            eps = self._endpoint_slices.update(eps_new)

        self._ensure_probes(lb, eps)
        self._ensure_dummy_endpoint(lb, eps)
        return servers

    # helpers

    def _get_service(self, lb: LoadBalancer) -> Optional[Service]:
        try:
            return self._services.get(lb.namespace, lb.name)
        except NotFoundError:
            return None

    def _get_service_backend_servers(self, lb: LoadBalancer) -> List[BackendServer]:
        if not lb.spec.backend_server_selector:
            return []
        selector = new_selector(lb.spec.backend_server_selector)
        servers: List[BackendServer] = []
        for vmi in self._vmi_cache.list(lb.namespace, selector):
            if vmi.deletion_timestamp is not None:
                continue
            server = Server(vmi)
            if server.address() is not None:
                servers.append(server)
        return servers

    def _ensure_probes(self, lb: LoadBalancer, eps: EndpointSlice) -> None:
        if lb.spec.health_check is None or lb.spec.health_check.port == 0:
            self._remove_lb_probers(lb)
            # with probing off every endpoint is taken as ready
            self._update_all_conditions(lb, eps, True)
            return

        uid = marshal_uid(lb.namespace, lb.name)
        target = {
            _marshal_prober_address(lb, ep): self._generate_one_prober(lb, ep)
            for ep in eps.endpoints
            if ep.addresses and not is_dummy_endpoint(ep)
        }
        active = self.probers.get_worker_health_option_map(uid) or {}
        self._update_all_probers(uid, active, target)

    def _update_all_probers(
        self, uid: str, active: Dict[str, HealthOption], target: Dict[str, HealthOption]
    ) -> None:
        """Keep unchanged probes, replace changed ones, drop stale ones and add new ones."""
        target = dict(target)
        stale: List[HealthOption] = []
        for current in active.values():
            wanted = target.pop(current.address, None)
            if wanted is None:
                stale.append(current)
                continue
            if not current.equal(wanted):
                self.probers.remove_worker(uid, current.address)
                self.probers.add_worker(uid, wanted.address, wanted)

        for current in stale:
            log.debug("-probe %s %s", uid, current.address)
            self.probers.remove_worker(uid, current.address)

        for wanted in target.values():
            log.debug("+probe %s %s", uid, wanted.address)
            self.probers.add_worker(uid, wanted.address, wanted)

    def _ensure_dummy_endpoint(self, lb: LoadBalancer, eps: EndpointSlice) -> None:
        """Keep a ready placeholder endpoint exactly while no real endpoint is ready."""
        dummy_count = sum(1 for ep in eps.endpoints if is_dummy_endpoint(ep))
        active_count = sum(1 for ep in eps.endpoints if not is_dummy_endpoint(ep) and _is_ready(ep))

        if active_count == 0 and dummy_count == 0:
            eps_copy = copy.deepcopy(eps)
            eps_copy.endpoints = append_dummy_endpoint(eps_copy.endpoints, lb)
            self._endpoint_slices.update(eps_copy)
        elif active_count > 0 and dummy_count > 0:
            eps_copy = copy.deepcopy(eps)
            eps_copy.endpoints = [ep for ep in eps_copy.endpoints if not is_dummy_endpoint(ep)]
            self._endpoint_slices.update(eps_copy)

    def _remove_lb_probers(self, lb: LoadBalancer) -> int:
        return self.probers.remove_workers_by_uid(marshal_uid(lb.namespace, lb.name))

    @staticmethod
    def _generate_one_prober(lb: LoadBalancer, endpoint: Endpoint) -> HealthOption:
        hc = lb.spec.health_check
        return HealthOption(
            address=_marshal_prober_address(lb, endpoint),
            success_threshold=hc.success_threshold or DEFAULT_SUCCESS_THRESHOLD,
            failure_threshold=hc.failure_threshold or DEFAULT_FAILURE_THRESHOLD,
            timeout=float(hc.timeout_seconds) if hc.timeout_seconds else DEFAULT_TIMEOUT,
            period=float(hc.period_seconds) if hc.period_seconds else DEFAULT_PERIOD,
            initial_condition=True if endpoint.ready is None else endpoint.ready,
        )

    @staticmethod
    def _construct_endpoint_slice(
        current: Optional[EndpointSlice], lb: LoadBalancer, servers: List[BackendServer]
    ) -> EndpointSlice:
        if current is not None:
            eps = copy.deepcopy(current)
        else:
            eps = EndpointSlice(
                name=lb.name,
                namespace=lb.namespace,
                owner_references=[_owner_reference(lb)],
                labels={KEY_LABEL: VALUE_TRUE, KEY_SERVICE_NAME: lb.name},
                address_type=ADDRESS_TYPE_IPV4,
            )

        eps.ports = [
            EndpointPort(name=listener.name, protocol=listener.protocol, port=listener.backend_port)
            for listener in lb.spec.listeners
        ]

        # endpoints already known keep their condition
        endpoints: List[Endpoint] = []
        for server in servers:
            address = server.address()
            if address is None:
                continue
            existing = None
            for ep in eps.endpoints:
                if len(ep.addresses) != 1:
                    raise ValueError(f"the length of addresses is not 1, endpoint: {ep}")
                if ep.target_ref is not None and server.uid == ep.target_ref.uid and address == ep.addresses[0]:
                    existing = ep
                    break
            if existing is not None:
                endpoints.append(existing)
            else:
                endpoints.append(
                    Endpoint(
                        addresses=[address],
                        target_ref=ObjectReference(namespace=server.namespace, name=server.name, uid=server.uid),
                        ready=False,
                    )
                )

        # a placeholder keeps traffic from reaching other services or the local host
        if not endpoints:
            endpoints = append_dummy_endpoint(endpoints, lb)
        eps.endpoints = endpoints
        log.debug("constructed endpoint slice: %s", eps)
        return eps