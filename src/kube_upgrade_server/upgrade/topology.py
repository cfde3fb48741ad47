"""Discover the cluster's current topology from the live VM listing."""

from __future__ import annotations

import re

import structlog

from kube_upgrade_server.clients.cloud import CloudClient, CloudOperationError
from kube_upgrade_server.errors import DiscoveryError, VersionIncompatibleError
from kube_upgrade_server.models import (
    ClusterTopology,
    ContainerService,
    DiscoveredNode,
    PoolClassification,
    PoolRole,
    VirtualMachine,
)
from kube_upgrade_server.upgrade.version_gate import parse_version

log = structlog.get_logger()

POOL_NAME_TAG = "poolName"
NAME_SUFFIX_TAG = "resourceNameSuffix"
ORCHESTRATOR_TAG = "orchestrator"

# <prefix>-<pool>-<suffix>-<index>, e.g. k8s-master-12345678-0 or k8s-agentpool1-12345678-3
_VM_NAME_RE = re.compile(r"^(?P<prefix>[a-z0-9]+)-(?P<pool>[a-z0-9]+)-(?P<suffix>[A-Za-z0-9]+)-(?P<index>\d+)$")


def orchestrator_version_from_tag(value: str | None) -> str | None:
    """Extract ``1.7.9`` from an orchestrator tag such as ``Kubernetes:1.7.9``."""
    if not value:
        return None
    _, _, version = value.rpartition(":")
    return version.strip() or None


def classify_vm(vm: VirtualMachine) -> PoolClassification:
    """Classify a VM into a pool from its tags, falling back to its name."""
    tags = vm.tags or {}
    pool = (tags.get(POOL_NAME_TAG) or "").strip()
    if pool:
        if pool == PoolRole.MASTER.value:
            return PoolClassification(kind="master", pool_name=PoolRole.MASTER.value, source="tag")
        return PoolClassification(kind="agent", pool_name=pool, source="tag")

    match = _VM_NAME_RE.match(vm.name)
    if match:
        name_pool = match.group("pool")
        if name_pool == PoolRole.MASTER.value:
            return PoolClassification(kind="master", pool_name=PoolRole.MASTER.value, source="name")
        return PoolClassification(kind="agent", pool_name=name_pool, source="name")

    return PoolClassification(kind="unknown", source="default")


class TopologyDiscoverer:
    """Builds a ClusterTopology snapshot from one VM listing."""

    def __init__(self, client: CloudClient, cluster: ContainerService, name_suffix: str) -> None:
        self._client = client
        self._cluster = cluster
        self._name_suffix = name_suffix

    def discover(self, resource_group: str) -> ClusterTopology:
        """List the resource group's VMs and group them into master and agent pools.

        Raises:
            DiscoveryError: If the VM listing fails.
        """
        try:
            vms = self._client.list_virtual_machines(resource_group)
        except CloudOperationError as e:
            log.error("failed_to_list_vms", resource_group=resource_group, error=str(e))
            raise DiscoveryError(str(e)) from e

        topology = ClusterTopology(resource_group=resource_group, name_suffix=self._name_suffix)
        # Configured pools are present even when they currently have no VMs.
        for profile in self._cluster.agent_pool_profiles:
            topology.agent_pools.setdefault(profile.name, [])

        versions: list[str] = []
        for vm in vms:
            if not self._belongs_to_cluster(vm):
                log.debug("vm_skipped_other_cluster", vm=vm.name)
                continue

            node = self._build_node(vm, classify_vm(vm))
            if node.role is PoolRole.MASTER:
                topology.master_nodes.append(node)
            else:
                topology.agent_pools.setdefault(node.pool_name, []).append(node)
            if node.orchestrator_version:
                versions.append(node.orchestrator_version)

        topology.master_nodes.sort(key=_node_sort_key)
        for pool_nodes in topology.agent_pools.values():
            pool_nodes.sort(key=_node_sort_key)

        topology.current_version = _lowest_version(versions)
        log.info(
            "topology_discovered",
            resource_group=resource_group,
            masters=len(topology.master_nodes),
            agent_pools={name: len(nodes) for name, nodes in topology.agent_pools.items()},
            current_version=topology.current_version,
        )
        return topology

    def _belongs_to_cluster(self, vm: VirtualMachine) -> bool:
        tags = vm.tags or {}
        suffix = tags.get(NAME_SUFFIX_TAG)
        if suffix:
            return suffix == self._name_suffix
        match = _VM_NAME_RE.match(vm.name)
        if match:
            return match.group("suffix") == self._name_suffix
        # Untagged VMs with unrecognised names are kept rather than silently abandoned.
        return True

    def _build_node(self, vm: VirtualMachine, classification: PoolClassification) -> DiscoveredNode:
        if classification.kind == "unknown":
            classification = self._fallback_classification(vm)

        if classification.source != "tag":
            log.warning(
                "vm_classified_by_fallback",
                vm=vm.name,
                pool=classification.pool_name,
                source=classification.source,
            )

        role = PoolRole.MASTER if classification.kind == "master" else PoolRole.AGENT
        return DiscoveredNode(
            name=vm.name,
            resource_id=vm.id,
            pool_name=classification.pool_name or PoolRole.MASTER.value,
            role=role,
            index=DiscoveredNode.index_from_name(vm.name),
            orchestrator_version=orchestrator_version_from_tag((vm.tags or {}).get(ORCHESTRATOR_TAG)),
            network_interface_ids=list(vm.network_interface_ids),
            os_disk_vhd_uri=vm.os_disk_vhd_uri,
            os_disk_name=vm.os_disk_name,
            identity_principal_id=vm.identity_principal_id,
            classified_by=classification.source,
        )

    def _fallback_classification(self, vm: VirtualMachine) -> PoolClassification:
        """Place a VM nothing identifies: master if its name says so, else the first configured agent pool."""
        if PoolRole.MASTER.value in vm.name.lower() or not self._cluster.agent_pool_profiles:
            return PoolClassification(kind="master", pool_name=PoolRole.MASTER.value, source="default")
        return PoolClassification(kind="agent", pool_name=self._cluster.agent_pool_profiles[0].name, source="default")


def _node_sort_key(node: DiscoveredNode) -> tuple[int, str]:
    return (node.index if node.index is not None else -1, node.name)


def _lowest_version(versions: list[str]) -> str | None:
    parsed = []
    for version in versions:
        try:
            parsed.append((parse_version(version), version))
        except VersionIncompatibleError:
            log.warning("unparseable_orchestrator_tag", version=version)
    if not parsed:
        return None
    return min(parsed, key=lambda item: item[0])[1]
