"""Kubernetes Core API wrapper for node cordon, pod listing and eviction during drains."""

from __future__ import annotations

import threading
from typing import Any

import structlog
from kubernetes import client as k8s_client

from kube_upgrade_server.clients import load_k8s_api_client

log = structlog.get_logger()


class K8sCoreClient:
    """Wrapper around the Kubernetes Core V1 API for the drain step of a node replacement."""

    def __init__(self, kubeconfig: str, context: str | None = None) -> None:
        self._kubeconfig = kubeconfig
        self._context = context
        self._api: k8s_client.CoreV1Api | None = None
        # Agent pool workers share one client.
        self._lock = threading.Lock()

    def _get_api(self) -> k8s_client.CoreV1Api:
        with self._lock:
            if self._api is None:
                api_client = load_k8s_api_client(self._kubeconfig, self._context)
                self._api = k8s_client.CoreV1Api(api_client)
            return self._api

    def cordon_node(self, node_name: str) -> None:
        """Mark a node unschedulable."""
        api = self._get_api()
        try:
            api.patch_node(node_name, {"spec": {"unschedulable": True}})
        except Exception:
            log.error("failed_to_cordon_node", node=node_name)
            raise

    def list_pods_on_node(self, node_name: str) -> list[dict[str, Any]]:
        """List the pods scheduled on a node.

        Returns a list of dicts with keys: name, namespace, owner_kinds, mirror.
        """
        api = self._get_api()
        try:
            pod_list = api.list_pod_for_all_namespaces(field_selector=f"spec.nodeName={node_name}")
        except Exception:
            log.error("failed_to_list_node_pods", node=node_name)
            raise

        results: list[dict[str, Any]] = []
        for pod in pod_list.items:
            annotations = pod.metadata.annotations or {}
            results.append(
                {
                    "name": pod.metadata.name,
                    "namespace": pod.metadata.namespace,
                    "owner_kinds": [ref.kind for ref in (pod.metadata.owner_references or [])],
                    "mirror": "kubernetes.io/config.mirror" in annotations,
                }
            )
        return results

    def evict_pod(self, name: str, namespace: str, grace_period_seconds: int | None = None) -> None:
        """Evict a pod through the Eviction API so PodDisruptionBudgets are honoured."""
        api = self._get_api()
        body = k8s_client.V1Eviction(
            metadata=k8s_client.V1ObjectMeta(name=name, namespace=namespace),
            delete_options=k8s_client.V1DeleteOptions(grace_period_seconds=grace_period_seconds),
        )
        try:
            api.create_namespaced_pod_eviction(name, namespace, body)
        except Exception:
            log.error("failed_to_evict_pod", pod=name, namespace=namespace)
            raise
