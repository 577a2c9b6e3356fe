"""Admission checks for load balancers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

from ..resources import (
    LOAD_BALANCER_API_VERSION,
    PROTOCOL_TCP,
    IPAMMode,
    LoadBalancer,
    WorkloadType,
)

MAX_PORT = 65535

OPERATION_CREATE = "CREATE"
OPERATION_UPDATE = "UPDATE"
OPERATION_DELETE = "DELETE"

SCOPE_NAMESPACED = "Namespaced"
SCOPE_CLUSTER = "Cluster"

API_GROUP, _, API_VERSION = LOAD_BALANCER_API_VERSION.partition("/")


@dataclass(frozen=True)
class AdmissionResource:
    """Describes which resource and operations an admission hook handles."""

    names: Tuple[str, ...]
    scope: str
    api_group: str
    api_version: str
    object_type: type
    operation_types: Tuple[str, ...]


def check_listeners(lb: LoadBalancer) -> None:
    """Raise ValueError if the listeners are missing, duplicated or out of range."""
    # the guest cluster does the balancing for cluster-type load balancers
    if lb.spec.workload_type == WorkloadType.CLUSTER:
        return

    listeners = lb.spec.listeners
    if not listeners:
        raise ValueError("the loadbalancer needs to have at least one listener")

    names = set()
    ports = {}
    backend_ports = {}
    for index, listener in enumerate(listeners):
        if listener.name in names:
            raise ValueError(f"listener has duplicate name {listener.name}")
        names.add(listener.name)

        if listener.port in ports:
            other = listeners[ports[listener.port]].name
            raise ValueError(
                f"listener {listener.name} has duplicate port {listener.port} with listener {other}"
            )
        ports[listener.port] = index

        if listener.backend_port in backend_ports:
            other = listeners[backend_ports[listener.backend_port]].name
            raise ValueError(
                f"listener {listener.name} has duplicate backend port {listener.backend_port} "
                f"with listener {other}"
            )
        backend_ports[listener.backend_port] = index

    for listener in listeners:
        if listener.port > MAX_PORT:
            raise ValueError(f"listener port {listener.port} must <= {MAX_PORT}")
        if listener.port < 1:
            raise ValueError(f"listener port {listener.port} must >= 1")
        if listener.backend_port > MAX_PORT:
            raise ValueError(f"listener backend port {listener.backend_port} must <= {MAX_PORT}")
        if listener.backend_port < 1:
            raise ValueError(f"listener backend port {listener.backend_port} must >= 1")


def check_healthy_check(lb: LoadBalancer) -> None:
    """Raise ValueError if the health check does not fit a TCP backend port."""
    # health checking applies to VM-type load balancers only
    if lb.spec.workload_type == WorkloadType.CLUSTER:
        return

    hc = lb.spec.health_check
    if hc is None or hc.port == 0:
        return

    wrong_protocol = False
    for listener in lb.spec.listeners:
        if listener.backend_port != hc.port:
            continue
        if listener.protocol == PROTOCOL_TCP:
            if hc.success_threshold == 0:
                raise ValueError("healthcheck SuccessThreshold should > 0")
            if hc.failure_threshold == 0:
                raise ValueError("healthcheck FailureThreshold should > 0")
            if hc.period_seconds == 0:
                raise ValueError("healthcheck PeriodSeconds should > 0")
            if hc.timeout_seconds == 0:
                raise ValueError("healthcheck TimeoutSeconds should > 0")
            return
        wrong_protocol = True

    if wrong_protocol:
        raise ValueError(f"healthcheck port {hc.port} can only be a TCP backend port")
    raise ValueError(f"healthcheck port {hc.port} is not in listener backend port list")


def check_ipam(old_lb: LoadBalancer, new_lb: LoadBalancer) -> None:
    """Forbid switching between DHCP and pool addressing; empty counts as pool."""
    old_dhcp = old_lb.spec.ipam == IPAMMode.DHCP
    new_dhcp = new_lb.spec.ipam == IPAMMode.DHCP
    if old_dhcp != new_dhcp:
        raise ValueError(f"can't change the IPAM from {old_lb.spec.ipam} to {new_lb.spec.ipam}")


def check_workload_type(old_lb: LoadBalancer, new_lb: LoadBalancer) -> None:
    """Forbid switching between cluster and VM workloads; empty counts as VM."""
    old_cluster = old_lb.spec.workload_type == WorkloadType.CLUSTER
    new_cluster = new_lb.spec.workload_type == WorkloadType.CLUSTER
    if old_cluster != new_cluster:
        raise ValueError(
            f"can't change the WorkloadType from {old_lb.spec.workload_type} "
            f"to {new_lb.spec.workload_type}"
        )


class LoadBalancerValidator:
    """Validates load balancers on creation and update."""

    def create(self, new_obj: LoadBalancer) -> None:
        where = f"create loadbalancer {new_obj.namespace}/{new_obj.name}"
        try:
            check_listeners(new_obj)
        except ValueError as err:
            raise ValueError(f"{where} failed: {err}") from err
        try:
            check_healthy_check(new_obj)
        except ValueError as err:
            raise ValueError(f"{where} failed with healthyCheck: {err}") from err

    def update(self, old_obj: LoadBalancer, new_obj: LoadBalancer) -> None:
        if new_obj.deletion_timestamp is not None:
            return
        where = f"update loadbalancer {new_obj.namespace}/{new_obj.name}"
        try:
            check_listeners(new_obj)
        except ValueError as err:
            raise ValueError(f"{where} failed: {err}") from err
        try:
            check_healthy_check(new_obj)
        except ValueError as err:
            raise ValueError(f"{where} failed with healthyCheck: {err}") from err
        try:
            check_ipam(old_obj, new_obj)
            check_workload_type(old_obj, new_obj)
        except ValueError as err:
            raise ValueError(f"{where} failed: {err}") from err

    def resource(self) -> AdmissionResource:
        return AdmissionResource(
            names=("loadbalancers",),
            scope=SCOPE_NAMESPACED,
            api_group=API_GROUP,
            api_version=API_VERSION,
            object_type=LoadBalancer,
            operation_types=(OPERATION_CREATE, OPERATION_UPDATE),
        )