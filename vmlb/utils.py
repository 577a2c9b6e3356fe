"""Shared constants and helpers: log level, label selectors, files and VLAN ids."""

from __future__ import annotations

import json
import logging
import os
import re
import stat
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, List, Mapping, Protocol, Tuple

import yaml

GROUP_NAME = "loadbalancer.harvesterhci.io"

KEY_GLOBAL_IP_POOL = f"{GROUP_NAME}/global-ip-pool"
VALUE_TRUE = "true"

ADDRESS4_ASK_DHCP = "0.0.0.0"

ANNOTATION_KEY_NETWORK = f"{GROUP_NAME}/network"
ANNOTATION_KEY_PROJECT = f"{GROUP_NAME}/project"
ANNOTATION_KEY_NAMESPACE = f"{GROUP_NAME}/namespace"
ANNOTATION_KEY_CLUSTER = f"{GROUP_NAME}/cluster"

KEY_VID = f"{GROUP_NAME}/vid"
KEY_VLAN_LABEL = "network.harvesterhci.io/vlan-id"

_LOG_LEVELS = {
    "panic": logging.CRITICAL,
    "fatal": logging.CRITICAL,
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
    "trace": logging.DEBUG,
}


def set_log_level(level: str) -> int:
    """Set the global log level by name, falling back to debug; return the level set."""
    resolved = _LOG_LEVELS.get(level.lower(), logging.DEBUG)
    logging.getLogger().setLevel(resolved)
    return resolved


_NAME_RE = re.compile(r"[A-Za-z0-9]([-A-Za-z0-9_.]*[A-Za-z0-9])?")
_SUBDOMAIN_RE = re.compile(r"[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*")
_MAX_NAME_LENGTH = 63
_MAX_PREFIX_LENGTH = 253


def _validate_key(key: str) -> None:
    parts = key.split("/")
    if len(parts) == 2:
        prefix, name = parts
        if not prefix or len(prefix) > _MAX_PREFIX_LENGTH or not _SUBDOMAIN_RE.fullmatch(prefix):
            raise ValueError(f"invalid label key {key!r}: bad prefix")
    elif len(parts) == 1:
        name = parts[0]
    else:
        raise ValueError(f"invalid label key {key!r}")
    if not name or len(name) > _MAX_NAME_LENGTH or not _NAME_RE.fullmatch(name):
        raise ValueError(f"invalid label key {key!r}: bad name")


def _validate_value(value: str) -> None:
    if len(value) > _MAX_NAME_LENGTH or (value and not _NAME_RE.fullmatch(value)):
        raise ValueError(f"invalid label value {value!r}")


@dataclass(frozen=True)
class LabelSelector:
    """Set-based selector: every key must be present with one of its values."""

    requirements: Tuple[Tuple[str, FrozenSet[str]], ...] = ()

    def matches(self, labels: Mapping[str, str]) -> bool:
        return all(key in labels and labels[key] in values for key, values in self.requirements)

    def __str__(self) -> str:
        return ",".join(f"{key} in ({','.join(sorted(values))})" for key, values in self.requirements)


def new_selector(selector: Mapping[str, List[str]]) -> LabelSelector:
    """Build a selector requiring each key to hold one of the listed values."""
    requirements = []
    for key, values in selector.items():
        _validate_key(key)
        if not values:
            raise ValueError(f"values for key {key!r} must be non-empty for operator in")
        for value in values:
            _validate_value(value)
        requirements.append((key, frozenset(values)))
    requirements.sort(key=lambda req: req[0])
    return LabelSelector(tuple(requirements))


def get_subdirectories(root: "str | os.PathLike[str]") -> List[str]:
    """Return the names of the immediate subdirectories of ``root``, sorted."""
    root_path = os.fspath(root)
    if not stat.S_ISDIR(os.lstat(root_path).st_mode):
        return []
    with os.scandir(root_path) as entries:
        return sorted(entry.name for entry in entries if entry.is_dir(follow_symlinks=False))


class NetworkAttachmentDefinitionCache(Protocol):
    def get(self, namespace: str, name: str) -> Mapping[str, Any]: ...


_INT_RE = re.compile(r"[+-]?[0-9]+")


def get_vid(network: str, nad_cache: NetworkAttachmentDefinitionCache) -> int:
    """Return the VLAN id of a ``namespace/name`` network attachment definition."""
    if not network:
        return 0
    fields = network.split("/")
    if len(fields) != 2:
        raise ValueError(f"invalid network {network}")
    nad = nad_cache.get(fields[0], fields[1])

    labels = (nad.get("metadata") or {}).get("labels") or {}
    if KEY_VLAN_LABEL in labels:
        vlan_label = labels[KEY_VLAN_LABEL]
        if not isinstance(vlan_label, str) or not _INT_RE.fullmatch(vlan_label):
            raise ValueError(f"invalid vlan {vlan_label}")
        return int(vlan_label)

    config = (nad.get("spec") or {}).get("config", "")
    net_conf = json.loads(config)
    if net_conf is None:
        return 0
    if not isinstance(net_conf, dict):
        raise ValueError(f"invalid network config {config}")
    if "vlan" in net_conf:
        vlan = net_conf["vlan"]
    else:
        vlan = next((v for k, v in net_conf.items() if k.lower() == "vlan"), None)
    if vlan is None:
        return 0
    if isinstance(vlan, bool) or not isinstance(vlan, int):
        raise ValueError(f"invalid vlan {vlan!r}")
    return vlan


def parse_from_file(path: "str | os.PathLike[str]") -> List[Dict[str, Any]]:
    """Read every object of a multi-document YAML file."""
    with open(path, encoding="utf-8") as fh:
        documents = list(yaml.safe_load_all(fh))
    objects = []
    for document in documents:
        if document is None:
            continue
        if not isinstance(document, dict):
            raise ValueError(f"document in {os.fspath(path)} is not an object")
        if not document.get("apiVersion") or not document.get("kind"):
            raise ValueError(f"object in {os.fspath(path)} lacks apiVersion or kind")
        objects.append(document)
    return objects