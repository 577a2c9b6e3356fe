"""Conversion of load balancer objects between the v1alpha1 and v1beta1 schemas."""

from __future__ import annotations

import copy
import logging
from typing import Any, Dict, Iterable, List, Mapping, MutableMapping, Protocol, Tuple

from ..resources import IPAMMode, VirtualMachineInstance
from ..servicelb import Server
from ..utils import ADDRESS4_ASK_DHCP, GROUP_NAME, LabelSelector

log = logging.getLogger(__name__)

V1ALPHA1 = f"{GROUP_NAME}/v1alpha1"
V1BETA1 = f"{GROUP_NAME}/v1beta1"
LOAD_BALANCER_RESOURCE_NAME = "loadbalancers"

KEY_VM_NAME = "harvesterhci.io/vmName"

KEY_SPEC = "spec"
KEY_STATUS = "status"
KEY_ADDRESS = "address"
KEY_IPAM = "ipam"
KEY_IP_POOL = "ipPool"
KEY_ALLOCATED_ADDRESS = "allocatedAddress"
KEY_LISTENERS = "listeners"
KEY_NAME = "name"
KEY_PORT = "port"
KEY_PROTOCOL = "protocol"
KEY_BACKEND_PORT = "backendPort"
KEY_BACKEND_SERVERS = "backendServers"
KEY_BACKEND_SERVER_SELECTOR = "backendServerSelector"

# a selector without requirements matches every object
_EVERYTHING = LabelSelector()


class ConversionError(ValueError):
    """An object cannot be converted to the requested version."""


class VirtualMachineInstanceCache(Protocol):
    def list(self, namespace: str, selector: LabelSelector) -> Iterable[VirtualMachineInstance]: ...


class IPPoolCache(Protocol):
    def list(self, selector: LabelSelector) -> Iterable[Mapping[str, Any]]: ...


def _section(obj: MutableMapping[str, Any], key: str) -> Dict[str, Any]:
    value = obj.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConversionError(f"{key} of the object is not a map")
    return value


def _convert_listener(item: Any) -> Dict[str, Any]:
    if not isinstance(item, Mapping):
        raise ConversionError(f"invalid listener {item!r}")
    try:
        name, port = item[KEY_NAME], item[KEY_PORT]
        protocol, backend_port = item[KEY_PROTOCOL], item[KEY_BACKEND_PORT]
    except KeyError as err:
        raise ConversionError(f"listener {item!r} lacks {err}") from err
    if not isinstance(name, str) or not isinstance(protocol, str):
        raise ConversionError(f"invalid listener {item!r}")
    if isinstance(port, bool) or not isinstance(port, int):
        raise ConversionError(f"invalid listener port {port!r}")
    if isinstance(backend_port, bool) or not isinstance(backend_port, int):
        raise ConversionError(f"invalid listener backend port {backend_port!r}")
    return {KEY_NAME: name, KEY_PORT: port, KEY_PROTOCOL: protocol, KEY_BACKEND_PORT: backend_port}


def _convert_listeners(listeners: Any) -> List[Dict[str, Any]]:
    if not isinstance(listeners, list):
        raise ConversionError(f"listeners {listeners!r} are not a list")
    return [_convert_listener(item) for item in listeners]


class Converter:
    """Converts load balancer objects, given as plain mappings, between versions."""

    def __init__(self, vmi_cache: VirtualMachineInstanceCache, ippool_cache: IPPoolCache) -> None:
        self._vmi_cache = vmi_cache
        self._ippool_cache = ippool_cache

    def group_resource(self) -> Tuple[str, str]:
        """Return the (group, resource) this converter handles."""
        return GROUP_NAME, LOAD_BALANCER_RESOURCE_NAME

    def convert(self, obj: Mapping[str, Any], to_version: str) -> Dict[str, Any]:
        """Return a converted copy of ``obj``; ``obj`` itself is left unchanged."""
        from_version = obj.get("apiVersion", "")
        metadata = obj.get("metadata") or {}
        log.debug(
            "convert %s from %r to %r, obj: %s/%s",
            obj.get("kind", ""), from_version, to_version,
            metadata.get("namespace", ""), metadata.get("name", ""),
        )

        if from_version == to_version:
            raise ConversionError(
                f"conversion from a version to itself should not call the webhook: {to_version}"
            )

        converted = copy.deepcopy(dict(obj))
        converted["apiVersion"] = to_version

        if to_version == V1BETA1:
            self._v1alpha1_to_v1beta1(converted)
        elif to_version == V1ALPHA1:
            self._v1beta1_to_v1alpha1(converted)
        else:
            raise ConversionError(f"unexpected conversion version {to_version!r}")
        return converted

    def _v1alpha1_to_v1beta1(self, obj: Dict[str, Any]) -> None:
        spec = _section(obj, KEY_SPEC)
        status = _section(obj, KEY_STATUS)
        metadata = obj.get("metadata") or {}
        name = metadata.get("name", "")
        namespace = metadata.get("namespace", "")

        # spec.ipPool and status.allocatedAddress
        if KEY_ADDRESS in status:
            address = status[KEY_ADDRESS]
            if not isinstance(address, str):
                raise ConversionError(f"invalid address {address!r}")
            if spec.get(KEY_IPAM) == IPAMMode.POOL.value:
                pool = self._pool_of_address(address, name, namespace)
                spec[KEY_IP_POOL] = pool
                status[KEY_ALLOCATED_ADDRESS] = {"ipPool": pool, "ip": address}
            else:
                status[KEY_ALLOCATED_ADDRESS] = {"ip": ADDRESS4_ASK_DHCP}

        if spec.get(KEY_LISTENERS) is not None:
            spec[KEY_LISTENERS] = _convert_listeners(spec[KEY_LISTENERS])

        if spec.get(KEY_BACKEND_SERVERS) is not None:
            servers = spec[KEY_BACKEND_SERVERS]
            if not isinstance(servers, list) or not all(isinstance(s, str) for s in servers):
                raise ConversionError(f"invalid backend servers {servers!r}")
            backend_servers = list(servers)
            spec[KEY_BACKEND_SERVER_SELECTOR] = self._backend_servers_to_selector(backend_servers, namespace)
            status[KEY_BACKEND_SERVERS] = backend_servers

        obj[KEY_SPEC] = spec
        obj[KEY_STATUS] = status

    def _v1beta1_to_v1alpha1(self, obj: Dict[str, Any]) -> None:
        spec = _section(obj, KEY_SPEC)
        if spec.get(KEY_LISTENERS) is not None:
            spec[KEY_LISTENERS] = _convert_listeners(spec[KEY_LISTENERS])

        status = _section(obj, KEY_STATUS)
        if status.get(KEY_BACKEND_SERVERS) is not None:
            spec[KEY_BACKEND_SERVERS] = copy.deepcopy(status[KEY_BACKEND_SERVERS])
        else:
            spec.pop(KEY_BACKEND_SERVERS, None)

        obj[KEY_SPEC] = spec

    def _backend_servers_to_selector(self, backend_servers: List[str], namespace: str) -> Dict[str, List[str]]:
        """Select the machines in ``namespace`` whose address is one of the backend servers."""
        names_by_address: Dict[str, str] = {}
        for vmi in self._vmi_cache.list(namespace, _EVERYTHING):
            address = Server(vmi).address()
            if address is not None:
                names_by_address[address] = vmi.name
        return {
            KEY_VM_NAME: [names_by_address[s] for s in backend_servers if s in names_by_address]
        }

    def _pool_of_address(self, address: str, lb_name: str, lb_namespace: str) -> str:
        """Find the pool that allocated ``address`` to the load balancer."""
        owner = f"{lb_namespace}/{lb_name}"
        for pool in self._ippool_cache.list(_EVERYTHING):
            allocated = (pool.get("status") or {}).get("allocated") or {}
            if allocated.get(address) == owner:
                pool_name = (pool.get("metadata") or {}).get("name", "")
                log.info("pool: %s, name: %s", pool_name, owner)
                return pool_name
        raise ConversionError(f"not found pool for lb {owner} with address {address}")