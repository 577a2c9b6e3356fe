"""Admission mutation of load balancers: annotations and health check defaults."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Protocol

from ..resources import (
    LoadBalancer,
    NotFoundError,
    VirtualMachineInstance,
    WorkloadType,
)
from ..utils import (
    ANNOTATION_KEY_CLUSTER,
    ANNOTATION_KEY_NAMESPACE,
    ANNOTATION_KEY_NETWORK,
    ANNOTATION_KEY_PROJECT,
    LabelSelector,
    new_selector,
)
from .validator import (
    API_GROUP,
    API_VERSION,
    OPERATION_CREATE,
    OPERATION_UPDATE,
    SCOPE_NAMESPACED,
    AdmissionResource,
)

PATCH_OP_REPLACE = "replace"

KEY_CREATOR = "harvesterhci.io/creator"
HARVESTER_NODE_DRIVER = "docker-machine-driver-harvester"
PROJECT_ID_ANNOTATION = "field.cattle.io/projectId"


class NamespaceCache(Protocol):
    def get(self, name: str) -> Mapping[str, Any]: ...


class VirtualMachineInstanceCache(Protocol):
    def list(self, namespace: str, selector: LabelSelector) -> Iterable[VirtualMachineInstance]: ...


@dataclass(frozen=True)
class PatchOp:
    """One JSON patch operation."""

    op: str
    path: str
    value: Any


class LoadBalancerMutator:
    """Fills in annotations and health check defaults of load balancers."""

    def __init__(self, namespace_cache: NamespaceCache, vmi_cache: VirtualMachineInstanceCache) -> None:
        self._namespace_cache = namespace_cache
        self._vmi_cache = vmi_cache

    def create(self, new_obj: LoadBalancer) -> List[PatchOp]:
        return self._annotations_patch(new_obj) + self._health_check_patch(new_obj)

    def update(self, old_obj: LoadBalancer, new_obj: LoadBalancer) -> List[PatchOp]:
        if new_obj.deletion_timestamp is not None:
            return []
        return self._annotations_patch(new_obj) + self._health_check_patch(new_obj)

    def resource(self) -> AdmissionResource:
        return AdmissionResource(
            names=("loadbalancers",),
            scope=SCOPE_NAMESPACED,
            api_group=API_GROUP,
            api_version=API_VERSION,
            object_type=LoadBalancer,
            operation_types=(OPERATION_CREATE, OPERATION_UPDATE),
        )

    @staticmethod
    def _health_check_patch(lb: LoadBalancer) -> List[PatchOp]:
        # these fields were not checked before, so raise zeros to working values
        hc = lb.spec.health_check
        if hc is None or hc.port == 0:
            return []
        patched = dataclasses.replace(
            hc,
            success_threshold=hc.success_threshold or 2,
            failure_threshold=hc.failure_threshold or 2,
            period_seconds=hc.period_seconds or 1,
            timeout_seconds=hc.timeout_seconds or 1,
        )
        if patched == hc:
            return []
        return [PatchOp(PATCH_OP_REPLACE, "/spec/healthCheck", patched)]

    def _annotations_patch(self, lb: LoadBalancer) -> List[PatchOp]:
        project = self.find_project(lb.namespace)

        network = ""
        cluster = lb.annotations.get(ANNOTATION_KEY_CLUSTER, "")
        if lb.spec.workload_type == WorkloadType.CLUSTER and cluster:
            network = self.find_network(lb.namespace, cluster)

        annotations = dict(lb.annotations)
        annotations[ANNOTATION_KEY_NAMESPACE] = lb.namespace
        annotations[ANNOTATION_KEY_PROJECT] = project
        annotations[ANNOTATION_KEY_NETWORK] = network
        return [PatchOp(PATCH_OP_REPLACE, "/metadata/annotations", annotations)]

    def find_project(self, namespace: str) -> str:
        """Return the project of a namespace as ``cluster/project``, or empty."""
        try:
            ns = self._namespace_cache.get(namespace)
        except NotFoundError as err:
            raise NotFoundError(f"get namespace {namespace} failed, error: {err}") from err
        annotations = (ns.get("metadata") or {}).get("annotations") or {}
        return annotations.get(PROJECT_ID_ANNOTATION, "").replace(":", "/", 1)

    def find_network(self, namespace: str, cluster_name: str) -> str:
        """Return the first Multus network of the guest cluster's machines, or empty.

        All machines of a guest cluster are assumed to share a namespace and networks.
        """
        selector = new_selector({KEY_CREATOR: [HARVESTER_NODE_DRIVER]})
        for vmi in self._vmi_cache.list(namespace, selector):
            if not vmi.name.startswith(cluster_name):
                continue
            network = next((n for n in vmi.networks if n is not None), None)
            if network is not None:
                return network
        return ""