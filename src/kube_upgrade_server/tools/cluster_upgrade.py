"""upgrade_cluster — replace a cluster's nodes with VMs at the target orchestrator version."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime

from kube_upgrade_server.clients.azure_arm import AzureArmClient
from kube_upgrade_server.config import get_settings, load_cluster_definition, validate_subscription_id
from kube_upgrade_server.errors import NodeOperationError, UpgradeError
from kube_upgrade_server.models import NodeFailure, UpgradeRequest, UpgradeResult
from kube_upgrade_server.upgrade.orchestrator import UpgradeOrchestrator, build_pre_delete_hook


async def upgrade_cluster_handler(
    subscription_id: str,
    resource_group: str,
    cluster_definition: str,
    name_suffix: str,
    agent_pools: list[str],
    target_version: str | None = None,
    kubeconfig: str | None = None,
    force: bool = False,
) -> UpgradeResult:
    """Core handler for upgrade_cluster.

    Upgrade failures are reported in the result rather than raised, together with the
    topology as it stood when the run stopped. Invalid input is raised.
    """
    validate_subscription_id(subscription_id)
    cluster = load_cluster_definition(cluster_definition)
    settings = get_settings()

    request = UpgradeRequest(
        subscription_id=subscription_id,
        resource_group=resource_group,
        cluster=cluster,
        name_suffix=name_suffix,
        agent_pools_to_upgrade=tuple(agent_pools),
        target_version=target_version or cluster.orchestrator_profile.orchestrator_version,
        kubeconfig=kubeconfig,
        force=force,
    )
    orchestrator = UpgradeOrchestrator(
        AzureArmClient(subscription_id),
        settings=settings,
        pre_delete_hook=build_pre_delete_hook(kubeconfig, settings),
    )

    try:
        return await asyncio.to_thread(orchestrator.run, request)
    except UpgradeError as e:
        failure = NodeFailure(message=str(e))
        if isinstance(e, NodeOperationError):
            failure = NodeFailure(node=e.node, pool=e.pool, operation=e.operation, message=str(e))
        return UpgradeResult(
            succeeded=False,
            topology=orchestrator.topology,
            summary=f"Upgrade of {cluster.name} to {request.target_version} failed: {e}",
            timestamp=datetime.now(tz=UTC).isoformat(),
            error=failure,
        )
