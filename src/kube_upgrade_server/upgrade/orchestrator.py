"""Top-level coordination of one cluster's in-place node upgrade."""

from __future__ import annotations

import time
from collections.abc import Iterable
from datetime import UTC, datetime

import structlog

from kube_upgrade_server.clients.cloud import CloudClient
from kube_upgrade_server.clients.k8s_core import K8sCoreClient
from kube_upgrade_server.config import UpgradeSettings, get_settings
from kube_upgrade_server.errors import QUERY_ERROR_PREFIX, UpgradeError, VersionIncompatibleError
from kube_upgrade_server.models import ClusterTopology, ContainerService, PoolRole, UpgradeRequest, UpgradeResult
from kube_upgrade_server.upgrade.drain import KubernetesDrainHook, PreDeleteHook, noop_drain
from kube_upgrade_server.upgrade.node_upgrader import NodeUpgrader
from kube_upgrade_server.upgrade.pool_upgrader import PoolUpgrader
from kube_upgrade_server.upgrade.templates import TemplateRenderer
from kube_upgrade_server.upgrade.topology import TopologyDiscoverer
from kube_upgrade_server.upgrade.version_gate import VersionGate
from kube_upgrade_server.validation import validate_agent_pool, validate_name_suffix, validate_resource_group

log = structlog.get_logger()


class UpgradeOrchestrator:
    """Runs discovery, the version gate, and pool upgrades for one request.

    Masters are upgraded before agents, and only the agent pools named in the request
    are touched. The first fatal error at any stage ends the run and is raised as is.
    """

    def __init__(
        self,
        client: CloudClient,
        settings: UpgradeSettings | None = None,
        renderer: TemplateRenderer | None = None,
        pre_delete_hook: PreDeleteHook = noop_drain,
    ) -> None:
        self._client = client
        self._settings = settings or get_settings()
        self._renderer = renderer
        self._pre_delete_hook = pre_delete_hook
        self.topology: ClusterTopology | None = None

    def run(self, request: UpgradeRequest) -> UpgradeResult:
        """Upgrade every in-scope node of the cluster to ``request.target_version``.

        Raises:
            ValueError: If the request has malformed names.
            DiscoveryError: If the VM listing fails.
            VersionIncompatibleError: If the transition is not supported.
            NodeOperationError: If replacing a node fails.
        """
        _validate_request(request)
        start = time.monotonic()
        structlog.contextvars.bind_contextvars(resource_group=request.resource_group, name_suffix=request.name_suffix)
        try:
            result = self._run(request, start)
        except UpgradeError as e:
            log.error("upgrade_failed", error=str(e), elapsed_seconds=round(time.monotonic() - start, 2))
            raise
        finally:
            structlog.contextvars.unbind_contextvars("resource_group", "name_suffix")
        return result

    def _run(self, request: UpgradeRequest, start: float) -> UpgradeResult:
        discoverer = TopologyDiscoverer(self._client, request.cluster, request.name_suffix)
        topology = discoverer.discover(request.resource_group)
        self.topology = topology

        self._check_version(request, topology)

        node_upgrader = NodeUpgrader(
            self._client,
            request.cluster,
            request.resource_group,
            request.name_suffix,
            request.target_version,
            renderer=self._renderer,
            pre_delete_hook=self._pre_delete_hook,
            skip_current=not request.force,
        )
        pool_upgrader = PoolUpgrader(node_upgrader, max_parallel=self._settings.agent_pool_parallelism)

        in_scope = [
            node for name in topology.pools_in_scope(request.agent_pools_to_upgrade) for node in topology.pool(name)
        ]
        already_current: set[str] = set()
        if not request.force:
            already_current = {node.name for node in in_scope if node_upgrader.runs_target_version(node)}

        pool_upgrader.upgrade_pool(PoolRole.MASTER.value, topology.master_nodes, PoolRole.MASTER)
        for pool_name in request.agent_pools_to_upgrade:
            if pool_name not in topology.agent_pools:
                log.warning("agent_pool_not_found", pool=pool_name)
                continue
            pool_upgrader.upgrade_pool(pool_name, topology.agent_pools[pool_name], PoolRole.AGENT)

        upgraded = [node.name for node in in_scope if node.upgraded and node.name not in already_current]
        skipped_nodes = [node.name for node in in_scope if node.name in already_current]
        duration = time.monotonic() - start

        summary = f"Upgraded {len(upgraded)} node{'s' if len(upgraded) != 1 else ''} to {request.target_version}"
        if skipped_nodes:
            summary += f", {len(skipped_nodes)} already current"
        log.info("upgrade_completed", upgraded=len(upgraded), skipped=len(skipped_nodes), duration_seconds=round(duration, 2))

        return UpgradeResult(
            succeeded=True,
            topology=topology,
            upgraded_nodes=upgraded,
            skipped_nodes=skipped_nodes,
            duration_seconds=duration,
            summary=summary,
            timestamp=datetime.now(tz=UTC).isoformat(),
        )

    def _check_version(self, request: UpgradeRequest, topology: ClusterTopology) -> None:
        current = topology.current_version
        if current is None:
            log.warning("current_version_unknown", target=request.target_version)
            return

        gate = VersionGate(
            orchestrator_type=request.cluster.orchestrator_profile.orchestrator_type,
            allowed_transitions=self._settings.allowed_transitions,
            force=request.force,
        )
        try:
            gate.validate(current, request.target_version)
        except VersionIncompatibleError as e:
            raise VersionIncompatibleError(f"{QUERY_ERROR_PREFIX}: {e}", current=e.current, target=e.target) from e


def _validate_request(request: UpgradeRequest) -> None:
    validate_resource_group(request.resource_group)
    validate_name_suffix(request.name_suffix)
    for pool_name in request.agent_pools_to_upgrade:
        validate_agent_pool(pool_name)


def build_pre_delete_hook(kubeconfig: str | None, settings: UpgradeSettings) -> PreDeleteHook:
    """Drain through the Kubernetes API when a kubeconfig is given and draining is enabled."""
    if kubeconfig and settings.drain_enabled:
        return KubernetesDrainHook(K8sCoreClient(kubeconfig), settings.drain_grace_seconds)
    return noop_drain


def upgrade_cluster(
    subscription_id: str,
    client: CloudClient,
    kubeconfig: str | None,
    resource_group: str,
    cluster: ContainerService,
    name_suffix: str,
    agent_pools_to_upgrade: Iterable[str],
    target_version: str | None = None,
    *,
    force: bool = False,
    settings: UpgradeSettings | None = None,
    renderer: TemplateRenderer | None = None,
    pre_delete_hook: PreDeleteHook | None = None,
) -> UpgradeResult:
    """Upgrade one cluster's master pool and the named agent pools.

    ``target_version`` defaults to the version in the cluster definition. When
    ``kubeconfig`` is given and draining is enabled in the settings, nodes are cordoned
    and drained before their VM is deleted.
    """
    settings = settings or get_settings()
    if pre_delete_hook is None:
        pre_delete_hook = build_pre_delete_hook(kubeconfig, settings)

    request = UpgradeRequest(
        subscription_id=subscription_id,
        resource_group=resource_group,
        cluster=cluster,
        name_suffix=name_suffix,
        agent_pools_to_upgrade=tuple(agent_pools_to_upgrade),
        target_version=target_version or cluster.orchestrator_profile.orchestrator_version,
        kubeconfig=kubeconfig,
        force=force,
    )
    orchestrator = UpgradeOrchestrator(client, settings=settings, renderer=renderer, pre_delete_hook=pre_delete_hook)
    return orchestrator.run(request)
