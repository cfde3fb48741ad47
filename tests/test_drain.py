"""Tests for pre-delete hooks: no-op default and Kubernetes cordon/evict drain."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from kubernetes.client.exceptions import ApiException

from kube_upgrade_server.models import DiscoveredNode, PoolRole
from kube_upgrade_server.upgrade.drain import KubernetesDrainHook, noop_drain


def _node(name: str = "k8s-agentpool1-12345678-0") -> DiscoveredNode:
    return DiscoveredNode(name=name, resource_id=f"/vm/{name}", pool_name="agentpool1", role=PoolRole.AGENT)


def _pod(name: str, namespace: str = "default", owner_kinds: list[str] | None = None, mirror: bool = False) -> dict:
    return {"name": name, "namespace": namespace, "owner_kinds": owner_kinds or ["ReplicaSet"], "mirror": mirror}


class TestNoopDrain:
    def test_returns_none(self) -> None:
        assert noop_drain(_node()) is None


class TestKubernetesDrainHook:
    def test_cordons_then_evicts(self) -> None:
        core = MagicMock()
        core.list_pods_on_node.return_value = [_pod("web-1"), _pod("web-2", namespace="apps")]

        KubernetesDrainHook(core, grace_period_seconds=30)(_node())

        core.cordon_node.assert_called_once_with("k8s-agentpool1-12345678-0")
        core.evict_pod.assert_any_call("web-1", "default", 30)
        core.evict_pod.assert_any_call("web-2", "apps", 30)
        assert core.evict_pod.call_count == 2

    def test_skips_daemonset_and_mirror_pods(self) -> None:
        core = MagicMock()
        core.list_pods_on_node.return_value = [
            _pod("kube-proxy-x", namespace="kube-system", owner_kinds=["DaemonSet"]),
            _pod("kube-apiserver", namespace="kube-system", owner_kinds=[], mirror=True),
            _pod("web-1"),
        ]

        KubernetesDrainHook(core)(_node())

        core.evict_pod.assert_called_once_with("web-1", "default", None)

    def test_unregistered_node_is_skipped(self) -> None:
        core = MagicMock()
        core.cordon_node.side_effect = ApiException(status=404, reason="Not Found")

        KubernetesDrainHook(core)(_node())

        core.list_pods_on_node.assert_not_called()

    def test_cordon_error_propagates(self) -> None:
        core = MagicMock()
        core.cordon_node.side_effect = ApiException(status=403, reason="Forbidden")

        with pytest.raises(ApiException):
            KubernetesDrainHook(core)(_node())

    def test_pod_already_gone_is_ignored(self) -> None:
        core = MagicMock()
        core.list_pods_on_node.return_value = [_pod("web-1"), _pod("web-2")]
        core.evict_pod.side_effect = [ApiException(status=404, reason="Not Found"), None]

        KubernetesDrainHook(core)(_node())

        assert core.evict_pod.call_count == 2

    def test_blocked_eviction_propagates(self) -> None:
        core = MagicMock()
        core.list_pods_on_node.return_value = [_pod("web-1")]
        core.evict_pod.side_effect = ApiException(status=429, reason="Too Many Requests")

        with pytest.raises(ApiException):
            KubernetesDrainHook(core)(_node())
