"""get_cluster_topology — read-only view of the cluster's VMs grouped by pool."""

from __future__ import annotations

import asyncio

from kube_upgrade_server.clients.azure_arm import AzureArmClient
from kube_upgrade_server.config import load_cluster_definition, validate_subscription_id
from kube_upgrade_server.models import ClusterTopology
from kube_upgrade_server.upgrade.topology import TopologyDiscoverer
from kube_upgrade_server.validation import validate_name_suffix, validate_resource_group


async def get_cluster_topology_handler(
    subscription_id: str,
    resource_group: str,
    name_suffix: str,
    cluster_definition: str,
) -> ClusterTopology:
    """Core handler for get_cluster_topology. Nothing is modified."""
    validate_subscription_id(subscription_id)
    validate_resource_group(resource_group)
    validate_name_suffix(name_suffix)
    cluster = load_cluster_definition(cluster_definition)

    discoverer = TopologyDiscoverer(AzureArmClient(subscription_id), cluster, name_suffix)
    return await asyncio.to_thread(discoverer.discover, resource_group)
