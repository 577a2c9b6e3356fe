"""Resource models shared by the load-balancer components."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Protocol, runtime_checkable

PROTOCOL_TCP = "TCP"
PROTOCOL_UDP = "UDP"

SERVICE_TYPE_LOAD_BALANCER = "LoadBalancer"
ADDRESS_TYPE_IPV4 = "IPv4"

LOAD_BALANCER_API_VERSION = "loadbalancer.harvesterhci.io/v1beta1"
LOAD_BALANCER_KIND = "LoadBalancer"

# Called with (namespace, name) of a load balancer whose endpoint health changed.
HealthCheckHandler = Callable[[str, str], None]


class IPAMMode(str, enum.Enum):
    """How a load balancer obtains its external address. Empty means pool."""

    POOL = "pool"
    DHCP = "dhcp"

    def __str__(self) -> str:
        return self.value


class WorkloadType(str, enum.Enum):
    """What kind of workload a load balancer serves. Empty means VM."""

    VM = "vm"
    CLUSTER = "cluster"

    def __str__(self) -> str:
        return self.value


@dataclass
class Listener:
    name: str = ""
    port: int = 0
    protocol: str = ""
    backend_port: int = 0


@dataclass
class HealthCheck:
    port: int = 0
    success_threshold: int = 0
    failure_threshold: int = 0
    period_seconds: int = 0
    timeout_seconds: int = 0


@dataclass
class AllocatedAddress:
    ip_pool: str = ""
    ip: str = ""


@dataclass
class LoadBalancerSpec:
    ipam: str = ""
    ip_pool: str = ""
    workload_type: str = ""
    listeners: List[Listener] = field(default_factory=list)
    backend_server_selector: Dict[str, List[str]] = field(default_factory=dict)
    health_check: Optional[HealthCheck] = None


@dataclass
class LoadBalancerStatus:
    allocated_address: AllocatedAddress = field(default_factory=AllocatedAddress)
    backend_servers: List[str] = field(default_factory=list)


@dataclass
class LoadBalancer:
    name: str = ""
    namespace: str = ""
    uid: str = ""
    api_version: str = LOAD_BALANCER_API_VERSION
    kind: str = LOAD_BALANCER_KIND
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    deletion_timestamp: Optional[datetime] = None
    spec: LoadBalancerSpec = field(default_factory=LoadBalancerSpec)
    status: LoadBalancerStatus = field(default_factory=LoadBalancerStatus)


@dataclass
class ObjectReference:
    """Reference to another object; also used for owner references."""

    namespace: str = ""
    name: str = ""
    uid: str = ""
    api_version: str = ""
    kind: str = ""


@dataclass
class Endpoint:
    addresses: List[str] = field(default_factory=list)
    target_ref: Optional[ObjectReference] = None
    ready: Optional[bool] = None


@dataclass
class EndpointPort:
    name: Optional[str] = None
    protocol: Optional[str] = None
    port: Optional[int] = None


@dataclass
class EndpointSlice:
    name: str = ""
    namespace: str = ""
    owner_references: List[ObjectReference] = field(default_factory=list)
    labels: Dict[str, str] = field(default_factory=dict)
    address_type: str = ""
    ports: List[EndpointPort] = field(default_factory=list)
    endpoints: List[Endpoint] = field(default_factory=list)


@dataclass
class ServicePort:
    name: str = ""
    protocol: str = ""
    port: int = 0
    target_port: int = 0


@dataclass
class Service:
    name: str = ""
    namespace: str = ""
    owner_references: List[ObjectReference] = field(default_factory=list)
    labels: Dict[str, str] = field(default_factory=dict)
    type: str = ""
    load_balancer_ip: str = ""
    ports: List[ServicePort] = field(default_factory=list)
    ingress_ips: List[str] = field(default_factory=list)


@dataclass
class VirtualMachineInstance:
    """A running virtual machine.

    ``interfaces`` holds the IP address reported for each interface;
    ``networks`` holds, per network, its Multus network name or None.
    """

    name: str = ""
    namespace: str = ""
    uid: str = ""
    labels: Dict[str, str] = field(default_factory=dict)
    deletion_timestamp: Optional[datetime] = None
    interfaces: List[str] = field(default_factory=list)
    networks: List[Optional[str]] = field(default_factory=list)


@runtime_checkable
class BackendServer(Protocol):
    """A server that traffic of a load balancer is sent to."""

    @property
    def uid(self) -> str: ...

    @property
    def namespace(self) -> str: ...

    @property
    def name(self) -> str: ...

    def address(self) -> Optional[str]: ...


class NotFoundError(LookupError):
    """The requested object does not exist."""


class AlreadyExistsError(Exception):
    """The object to create exists already."""


class WaitExternalIPError(Exception):
    """The service has no external IP yet."""

    def __init__(self, message: str = "service is waiting for external IP") -> None:
        super().__init__(message)