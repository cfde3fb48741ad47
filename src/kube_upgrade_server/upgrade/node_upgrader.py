"""Per-node replacement: tear down the old VM and its resources, deploy the new one, verify it."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, NoReturn, TypeVar

import structlog

from kube_upgrade_server.clients.cloud import (
    OP_DELETE_BLOB,
    OP_DELETE_MANAGED_DISK,
    OP_DELETE_NIC,
    OP_DELETE_ROLE_ASSIGNMENT,
    OP_DELETE_VM,
    OP_DEPLOY_TEMPLATE,
    OP_GET_STORAGE_CLIENT,
    OP_GET_VM,
    OP_LIST_ROLE_ASSIGNMENTS,
    CloudClient,
    CloudOperationError,
    RoleAssignmentNotFoundError,
)
from kube_upgrade_server.errors import NodeOperationError, VersionIncompatibleError
from kube_upgrade_server.models import ContainerService, DiscoveredNode, NodeState, RoleAssignment, VirtualMachine
from kube_upgrade_server.upgrade.drain import PreDeleteHook, noop_drain
from kube_upgrade_server.upgrade.templates import DefaultTemplateRenderer, TemplateRenderer, deployment_name
from kube_upgrade_server.upgrade.version_gate import parse_version
from kube_upgrade_server.utils import parse_vhd_uri, resource_name_from_id

log = structlog.get_logger()

OP_DRAIN_NODE = "DrainNode"
OP_RENDER_TEMPLATE = "RenderTemplate"

T = TypeVar("T")


class NodeUpgrader:
    """Drives one node through pending → deprovisioning → deprovisioned → provisioning → validating → upgraded.

    Deletion always precedes deployment, so at most one VM exists per node slot. Any
    failing cloud operation moves the node to ``failed`` and raises NodeOperationError
    naming that operation. The upgrader keeps no per-node state and can be shared by
    concurrent workers as long as each node is handled by one worker.
    """

    def __init__(
        self,
        client: CloudClient,
        cluster: ContainerService,
        resource_group: str,
        name_suffix: str,
        target_version: str,
        renderer: TemplateRenderer | None = None,
        pre_delete_hook: PreDeleteHook = noop_drain,
        skip_current: bool = True,
    ) -> None:
        self._client = client
        self._cluster = cluster
        self._resource_group = resource_group
        self._name_suffix = name_suffix
        self._target_version = target_version
        self._renderer = renderer or DefaultTemplateRenderer()
        self._pre_delete_hook = pre_delete_hook
        self._skip_current = skip_current

    def upgrade(self, node: DiscoveredNode) -> DiscoveredNode:
        """Replace ``node``'s VM with one at the target version.

        Returns the same node record, now in the ``upgraded`` state.

        Raises:
            NodeOperationError: If any cloud operation fails.
        """
        if node.upgraded:
            return node
        if self._skip_current and self.runs_target_version(node):
            node.transition(NodeState.UPGRADED)
            log.info("node_already_at_target", node=node.name, pool=node.pool_name, version=self._target_version)
            return node

        log.info("node_upgrade_started", node=node.name, pool=node.pool_name, role=node.role.value)

        node.transition(NodeState.DEPROVISIONING)
        vm = self._call(node, OP_GET_VM, self._client.get_virtual_machine, self._resource_group, node.name)
        _refresh_from_vm(node, vm)
        role_assignments = self._resolve_role_assignments(node)

        try:
            self._pre_delete_hook(node)
        except Exception as e:
            self._fail(node, OP_DRAIN_NODE, f"{OP_DRAIN_NODE} failed: {e}", e)

        self._call(node, OP_DELETE_VM, self._client.delete_virtual_machine, self._resource_group, node.name)
        self._delete_os_disk(node)
        for nic_id in node.network_interface_ids:
            nic_name = resource_name_from_id(nic_id)
            self._call(node, OP_DELETE_NIC, self._client.delete_network_interface, self._resource_group, nic_name)
        self._delete_role_assignments(node, role_assignments)
        node.transition(NodeState.DEPROVISIONED)

        node.transition(NodeState.PROVISIONING)
        try:
            rendered = self._renderer.render(self._cluster, node, self._target_version, self._name_suffix)
        except Exception as e:
            self._fail(node, OP_RENDER_TEMPLATE, f"{OP_RENDER_TEMPLATE} failed: {e}", e)
        self._call(
            node,
            OP_DEPLOY_TEMPLATE,
            self._client.deploy_template,
            self._resource_group,
            deployment_name(node),
            rendered.template,
            rendered.parameters,
        )

        node.transition(NodeState.VALIDATING)
        new_vm = self._call(node, OP_GET_VM, self._client.get_virtual_machine, self._resource_group, node.name)
        _refresh_from_vm(node, new_vm)
        node.orchestrator_version = self._target_version

        node.transition(NodeState.UPGRADED)
        log.info("node_upgraded", node=node.name, pool=node.pool_name, version=self._target_version)
        return node

    def runs_target_version(self, node: DiscoveredNode) -> bool:
        """True when the node's orchestrator tag already matches the target version."""
        if not node.orchestrator_version:
            return False
        try:
            return parse_version(node.orchestrator_version) == parse_version(self._target_version)
        except VersionIncompatibleError:
            return False

    def _resolve_role_assignments(self, node: DiscoveredNode) -> list[RoleAssignment]:
        if not self._cluster.use_managed_identity:
            return []
        if not node.identity_principal_id:
            log.info("no_identity_bound", node=node.name)
            return []
        try:
            return self._client.list_role_assignments_for_principal(node.identity_principal_id)
        except RoleAssignmentNotFoundError:
            log.info("no_role_assignments_found", node=node.name, principal=node.identity_principal_id)
            return []
        except CloudOperationError as e:
            self._fail(node, OP_LIST_ROLE_ASSIGNMENTS, str(e), e)

    def _delete_role_assignments(self, node: DiscoveredNode, role_assignments: list[RoleAssignment]) -> None:
        for assignment in role_assignments:
            try:
                self._client.delete_role_assignment_by_id(assignment.id)
            except RoleAssignmentNotFoundError:
                log.info("role_assignment_already_removed", node=node.name, role_assignment=assignment.id)
            except CloudOperationError as e:
                self._fail(node, OP_DELETE_ROLE_ASSIGNMENT, str(e), e)

    def _delete_os_disk(self, node: DiscoveredNode) -> None:
        if node.os_disk_vhd_uri:
            try:
                account, container, blob = parse_vhd_uri(node.os_disk_vhd_uri)
            except ValueError as e:
                self._fail(node, OP_DELETE_BLOB, f"{OP_DELETE_BLOB} failed: {e}", e)
            storage = self._call(
                node, OP_GET_STORAGE_CLIENT, self._client.get_storage_client, self._resource_group, account
            )
            self._call(node, OP_DELETE_BLOB, storage.delete_blob, container, blob)
        elif node.os_disk_name:
            self._call(
                node, OP_DELETE_MANAGED_DISK, self._client.delete_managed_disk, self._resource_group, node.os_disk_name
            )

    def _call(self, node: DiscoveredNode, operation: str, fn: Callable[..., T], *args: Any) -> T:
        try:
            return fn(*args)
        except CloudOperationError as e:
            self._fail(node, operation, str(e), e)

    def _fail(self, node: DiscoveredNode, operation: str, message: str, cause: Exception) -> NoReturn:
        failed_in = node.state
        node.failed_operation = operation
        node.transition(NodeState.FAILED)
        log.error(
            "node_operation_failed",
            node=node.name,
            pool=node.pool_name,
            operation=operation,
            state=failed_in.value,
            error=message,
        )
        raise NodeOperationError(operation, message, node=node.name, pool=node.pool_name) from cause


def _refresh_from_vm(node: DiscoveredNode, vm: VirtualMachine) -> None:
    node.resource_id = vm.id
    node.network_interface_ids = list(vm.network_interface_ids)
    node.os_disk_vhd_uri = vm.os_disk_vhd_uri
    node.os_disk_name = vm.os_disk_name
    node.identity_principal_id = vm.identity_principal_id
