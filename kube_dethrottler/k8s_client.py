"""
Node taint access through the Kubernetes API.

Every write is a read-modify-write guarded by the node's resourceVersion so
that a concurrent change by the scheduler or another controller makes our
patch fail instead of overwriting the taint list with a stale copy.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

TAINT_VALUE = "high-load"

logger = logging.getLogger(__name__)


class TaintEffect(Enum):
    NO_SCHEDULE = "NoSchedule"
    PREFER_NO_SCHEDULE = "PreferNoSchedule"
    NO_EXECUTE = "NoExecute"


@dataclass(frozen=True)
class TaintDescriptor:
    """The single taint this controller manages; identity is (key, effect)"""
    key: str
    effect: TaintEffect
    value: str = TAINT_VALUE

    def __str__(self) -> str:
        return f"{self.key}={self.value}:{self.effect.value}"


class TaintStoreError(Exception):
    """A taint lookup or mutation failed"""


class TaintConflictError(TaintStoreError):
    """The node changed underneath a read-modify-write"""


class TaintStore(ABC):
    """Capability interface the controller uses to manage node taints"""

    @abstractmethod
    def has_taint(self, node_name: str, key: str, effect: TaintEffect,
                  timeout: Optional[float] = None) -> bool:
        pass

    @abstractmethod
    def apply_taint(self, node_name: str, key: str, value: str, effect: TaintEffect,
                    timeout: Optional[float] = None) -> None:
        """Add the taint, or update its value in place. Idempotent."""
        pass

    @abstractmethod
    def remove_taint(self, node_name: str, key: str, effect: TaintEffect,
                     timeout: Optional[float] = None) -> None:
        """Remove the taint; removing an absent taint is a no-op."""
        pass


def _matches(taint, key: str, effect: TaintEffect) -> bool:
    return taint.key == key and taint.effect == effect.value


class KubeTaintStore(TaintStore):
    """TaintStore backed by the Node objects of a Kubernetes cluster"""

    def __init__(self, core_v1: client.CoreV1Api):
        self.v1 = core_v1
        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_kubeconfig(cls, kubeconfig_path: Optional[str] = None) -> "KubeTaintStore":
        """Use in-cluster config first, then the given (or default) kubeconfig"""
        try:
            config.load_incluster_config()
        except config.ConfigException as in_cluster_err:
            logger.info(f"In-cluster config unavailable ({in_cluster_err}), trying kubeconfig")
            try:
                config.load_kube_config(config_file=kubeconfig_path or None)
            except (config.ConfigException, OSError) as e:
                raise TaintStoreError(
                    f"in-cluster config failed and kubeconfig {kubeconfig_path or '(default)'} "
                    f"could not be loaded: {e}"
                ) from e
        return cls(client.CoreV1Api())

    def _read_node(self, node_name: str, timeout: Optional[float]):
        try:
            return self.v1.read_node(name=node_name, _request_timeout=timeout)
        except ApiException as e:
            raise TaintStoreError(f"failed to get node {node_name}: {e.status} {e.reason}") from e
        except HTTPError as e:
            raise TaintStoreError(f"failed to get node {node_name}: {e}") from e

    def _serialize(self, taints: List[Any]) -> List[Dict[str, Any]]:
        return [self.v1.api_client.sanitize_for_serialization(t) for t in taints]

    def _patch_taints(self, node, new_taints: List[Any], timeout: Optional[float], action: str):
        node_name = node.metadata.name
        patch = []
        resource_version = node.metadata.resource_version
        if resource_version:
            patch.append({
                "op": "test",
                "path": "/metadata/resourceVersion",
                "value": resource_version,
            })
        # "add" on an object member replaces it when present
        patch.append({
            "op": "add",
            "path": "/spec/taints",
            "value": self._serialize(new_taints),
        })

        try:
            self.v1.patch_node(name=node_name, body=patch, _request_timeout=timeout)
        except ApiException as e:
            if e.status in (409, 422):
                raise TaintConflictError(
                    f"node {node_name} changed while trying to {action} taint: {e.status} {e.reason}"
                ) from e
            raise TaintStoreError(
                f"failed to {action} taint on node {node_name}: {e.status} {e.reason}"
            ) from e
        except HTTPError as e:
            raise TaintStoreError(f"failed to {action} taint on node {node_name}: {e}") from e

    def has_taint(self, node_name: str, key: str, effect: TaintEffect,
                  timeout: Optional[float] = None) -> bool:
        node = self._read_node(node_name, timeout)
        taints = (node.spec.taints if node.spec else None) or []
        return any(_matches(t, key, effect) for t in taints)

    def apply_taint(self, node_name: str, key: str, value: str, effect: TaintEffect,
                    timeout: Optional[float] = None) -> None:
        node = self._read_node(node_name, timeout)
        current = (node.spec.taints if node.spec else None) or []

        new_taints = []
        found = False
        for existing in current:
            if _matches(existing, key, effect):
                if existing.value == value:
                    self.logger.debug(f"Taint {key}={value}:{effect.value} already present on {node_name}")
                    return
                new_taints.append(client.V1Taint(key=key, value=value, effect=effect.value))
                found = True
            else:
                new_taints.append(existing)

        if not found:
            new_taints.append(client.V1Taint(key=key, value=value, effect=effect.value))

        self._patch_taints(node, new_taints, timeout, "apply")

    def remove_taint(self, node_name: str, key: str, effect: TaintEffect,
                     timeout: Optional[float] = None) -> None:
        node = self._read_node(node_name, timeout)
        current = (node.spec.taints if node.spec else None) or []

        new_taints = [t for t in current if not _matches(t, key, effect)]
        if len(new_taints) == len(current):
            self.logger.debug(f"Taint {key}:{effect.value} not present on {node_name}, nothing to remove")
            return

        self._patch_taints(node, new_taints, timeout, "remove")
