"""Client wrappers for the Azure Resource Manager and Kubernetes APIs."""

from __future__ import annotations

from kubernetes import client as k8s_client
from kubernetes.config import new_client_from_config


def load_k8s_api_client(kubeconfig: str, context: str | None = None) -> k8s_client.ApiClient:
    """Create an isolated Kubernetes API client from a kubeconfig file.

    Uses new_client_from_config so the global Kubernetes SDK configuration is never
    mutated; drain workers for different nodes can share the process safely.
    """
    return new_client_from_config(config_file=kubeconfig, context=context)
