"""Pre-delete hooks run against a node before its VM is removed."""

from __future__ import annotations

from typing import Protocol

import structlog
from kubernetes.client.exceptions import ApiException

from kube_upgrade_server.clients.k8s_core import K8sCoreClient
from kube_upgrade_server.models import DiscoveredNode

log = structlog.get_logger()


class PreDeleteHook(Protocol):
    def __call__(self, node: DiscoveredNode) -> None: ...


def noop_drain(node: DiscoveredNode) -> None:
    """Default hook: replace the VM without touching the Kubernetes node object."""


class KubernetesDrainHook:
    """Cordons the node and evicts its pods before the VM is deleted.

    DaemonSet pods and static (mirror) pods are left in place since they are bound to
    the node. A node that is not registered with the API server is skipped.
    """

    def __init__(self, core_client: K8sCoreClient, grace_period_seconds: int | None = None) -> None:
        self._core = core_client
        self._grace_period_seconds = grace_period_seconds

    def __call__(self, node: DiscoveredNode) -> None:
        try:
            self._core.cordon_node(node.name)
        except ApiException as e:
            if e.status == 404:
                log.warning("drain_skipped_node_not_registered", node=node.name)
                return
            raise

        evicted = 0
        for pod in self._core.list_pods_on_node(node.name):
            if pod["mirror"] or "DaemonSet" in pod["owner_kinds"]:
                continue
            try:
                self._core.evict_pod(pod["name"], pod["namespace"], self._grace_period_seconds)
            except ApiException as e:
                # Already gone
                if e.status == 404:
                    continue
                raise
            evicted += 1
        log.info("node_drained", node=node.name, pool=node.pool_name, evicted_pods=evicted)
