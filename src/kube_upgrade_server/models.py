"""Pydantic v2 models for cluster configuration, discovered topology, and upgrade results."""

from __future__ import annotations

import re
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

# --- Cluster configuration ---


class KubernetesConfig(BaseModel):
    """Kubernetes-specific settings of the orchestrator profile."""

    use_managed_identity: bool = False


class OrchestratorProfile(BaseModel):
    """Orchestrator type and the version the cluster should run."""

    orchestrator_type: str = "Kubernetes"
    orchestrator_version: str
    kubernetes_config: KubernetesConfig | None = None


class MasterProfile(BaseModel):
    """Master pool definition."""

    count: int = Field(default=1, ge=1)
    dns_prefix: str
    vm_size: str = "Standard_D2_v2"
    vnet_subnet_id: str | None = None


class AgentPoolProfile(BaseModel):
    """A named agent pool definition."""

    name: str
    count: int = Field(default=1, ge=0)
    vm_size: str = "Standard_D2_v2"
    storage_profile: Literal["ManagedDisks", "StorageAccount"] = "ManagedDisks"
    vnet_subnet_id: str | None = None


class LinuxProfile(BaseModel):
    """Admin account provisioned on every node."""

    admin_username: str = "azureuser"
    ssh_public_keys: list[str] = Field(default_factory=list)


class ImageReference(BaseModel):
    """Marketplace image the node OS disk is created from."""

    publisher: str = "Canonical"
    offer: str = "UbuntuServer"
    sku: str = "16.04-LTS"
    version: str = "latest"


class ContainerService(BaseModel):
    """Cluster configuration document for one container service deployment."""

    name: str
    location: str = "westus2"
    orchestrator_profile: OrchestratorProfile
    master_profile: MasterProfile
    agent_pool_profiles: list[AgentPoolProfile] = Field(default_factory=list)
    linux_profile: LinuxProfile = Field(default_factory=LinuxProfile)
    image_reference: ImageReference = Field(default_factory=ImageReference)

    @property
    def use_managed_identity(self) -> bool:
        config = self.orchestrator_profile.kubernetes_config
        return bool(config and config.use_managed_identity)

    def agent_pool(self, name: str) -> AgentPoolProfile | None:
        """Return the agent pool profile with the given name, if configured."""
        for pool in self.agent_pool_profiles:
            if pool.name == name:
                return pool
        return None


# --- Cloud view ---


class VirtualMachine(BaseModel):
    """Cloud-neutral view of one ARM virtual machine."""

    name: str
    id: str
    tags: dict[str, str] | None = None
    network_interface_ids: list[str] = Field(default_factory=list)
    os_disk_vhd_uri: str | None = None
    os_disk_name: str | None = None
    identity_principal_id: str | None = None
    provisioning_state: str | None = None


class RoleAssignment(BaseModel):
    """A role assignment bound to a managed identity principal."""

    id: str
    principal_id: str
    scope: str | None = None


# --- Topology ---


class PoolRole(StrEnum):
    MASTER = "master"
    AGENT = "agent"


class PoolClassification(BaseModel):
    """Outcome of classifying a VM into a pool.

    ``kind`` is ``unknown`` when neither tags nor the VM name identify a pool; the
    discoverer resolves such nodes with its fallback rule instead of dropping them.
    """

    kind: Literal["master", "agent", "unknown"]
    pool_name: str | None = None
    source: Literal["tag", "name", "default"] = "tag"


class NodeState(StrEnum):
    PENDING = "pending"
    DEPROVISIONING = "deprovisioning"
    DEPROVISIONED = "deprovisioned"
    PROVISIONING = "provisioning"
    VALIDATING = "validating"
    UPGRADED = "upgraded"
    FAILED = "failed"


_TRANSITIONS: dict[NodeState, frozenset[NodeState]] = {
    NodeState.PENDING: frozenset({NodeState.DEPROVISIONING, NodeState.UPGRADED}),
    NodeState.DEPROVISIONING: frozenset({NodeState.DEPROVISIONED}),
    NodeState.DEPROVISIONED: frozenset({NodeState.PROVISIONING}),
    NodeState.PROVISIONING: frozenset({NodeState.VALIDATING}),
    NodeState.VALIDATING: frozenset({NodeState.UPGRADED}),
    NodeState.UPGRADED: frozenset(),
    NodeState.FAILED: frozenset(),
}


def advance(state: NodeState, next_state: NodeState) -> NodeState:
    """Return ``next_state`` if the node state machine allows moving there from ``state``.

    ``FAILED`` is reachable from every non-terminal state. ``PENDING`` may jump
    straight to ``UPGRADED`` for nodes that already run the target version.

    Raises:
        ValueError: If the transition is not allowed.
    """
    if next_state is NodeState.FAILED and _TRANSITIONS[state]:
        return next_state
    if next_state not in _TRANSITIONS[state]:
        msg = f"Invalid node state transition: {state.value} -> {next_state.value}"
        raise ValueError(msg)
    return next_state


_VM_INDEX_RE = re.compile(r"-(\d+)$")


class DiscoveredNode(BaseModel):
    """One existing VM and the metadata needed to replace it."""

    name: str
    resource_id: str
    pool_name: str
    role: PoolRole
    index: int | None = None
    orchestrator_version: str | None = None
    network_interface_ids: list[str] = Field(default_factory=list)
    os_disk_vhd_uri: str | None = None
    os_disk_name: str | None = None
    identity_principal_id: str | None = None
    classified_by: Literal["tag", "name", "default"] = "tag"
    state: NodeState = NodeState.PENDING
    failed_operation: str | None = None

    @property
    def upgraded(self) -> bool:
        return self.state is NodeState.UPGRADED

    def transition(self, next_state: NodeState) -> None:
        self.state = advance(self.state, next_state)

    @staticmethod
    def index_from_name(name: str) -> int | None:
        match = _VM_INDEX_RE.search(name)
        return int(match.group(1)) if match else None


class ClusterTopology(BaseModel):
    """Snapshot of the cluster's VMs grouped by pool, captured once per run."""

    resource_group: str
    name_suffix: str
    master_nodes: list[DiscoveredNode] = Field(default_factory=list)
    agent_pools: dict[str, list[DiscoveredNode]] = Field(default_factory=dict)
    current_version: str | None = None

    def pool(self, name: str) -> list[DiscoveredNode]:
        """Return the nodes of the named pool (``master`` selects the master pool)."""
        if name == PoolRole.MASTER.value:
            return self.master_nodes
        return self.agent_pools.get(name, [])

    def all_nodes(self) -> list[DiscoveredNode]:
        nodes = list(self.master_nodes)
        for pool_nodes in self.agent_pools.values():
            nodes.extend(pool_nodes)
        return nodes

    def pools_in_scope(self, agent_pool_names: tuple[str, ...] | list[str]) -> list[str]:
        """Return the ordered pool names an upgrade touches: master first, then the named agent pools."""
        return [PoolRole.MASTER.value, *[name for name in dict.fromkeys(agent_pool_names) if name in self.agent_pools]]


# --- Request / result ---


class UpgradeRequest(BaseModel):
    """Immutable input of one orchestration run."""

    model_config = ConfigDict(frozen=True)

    subscription_id: str
    resource_group: str
    cluster: ContainerService
    name_suffix: str
    agent_pools_to_upgrade: tuple[str, ...] = ()
    target_version: str
    kubeconfig: str | None = None
    force: bool = False

    @field_validator("agent_pools_to_upgrade")
    @classmethod
    def _dedupe_agent_pools(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(dict.fromkeys(value))


class NodeFailure(BaseModel):
    """The single terminal failure of a run."""

    node: str | None = None
    pool: str | None = None
    operation: str | None = None
    message: str


class UpgradeResult(BaseModel):
    """Terminal output of an orchestration run."""

    succeeded: bool
    topology: ClusterTopology | None = None
    upgraded_nodes: list[str] = Field(default_factory=list)
    skipped_nodes: list[str] = Field(default_factory=list)
    duration_seconds: float | None = None
    summary: str
    timestamp: str
    error: NodeFailure | None = None


class UpgradePathOutput(BaseModel):
    """Output of check_upgrade_path."""

    current_version: str
    target_version: str
    allowed: bool
    reason: str | None = None
    available_upgrades: list[str] = Field(default_factory=list)
    summary: str
    timestamp: str


# --- Output scrubbing ---

_SUBSCRIPTION_PATTERN = re.compile(r"/subscriptions/[a-f0-9-]+", re.IGNORECASE)
_RESOURCE_GROUP_PATTERN = re.compile(r"/resourceGroups/[^/]+", re.IGNORECASE)
_AZURE_HOST_PATTERN = re.compile(r"\b[\w.-]+\.(vault\.azure\.net|blob\.core\.windows\.net)\b", re.IGNORECASE)


def scrub_sensitive_values(text: str) -> str:
    """Remove subscription IDs, resource group names, and storage/vault hosts from text.

    VM and pool names are preserved.
    """
    if not text:
        return text
    # Resource group first so the subscription prefix of a combined path is still matched.
    result = _RESOURCE_GROUP_PATTERN.sub("/resourceGroups/[REDACTED]", text)
    result = _SUBSCRIPTION_PATTERN.sub("/subscriptions/[REDACTED]", result)
    result = _AZURE_HOST_PATTERN.sub("[REDACTED_HOST]", result)
    return result
