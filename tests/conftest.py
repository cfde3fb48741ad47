"""Shared test fixtures: a fault-injecting cloud client and cluster definition builders."""

from __future__ import annotations

import threading
from typing import Any

import pytest

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
    OP_LIST_VMS,
    CloudOperationError,
    RoleAssignmentNotFoundError,
)
from kube_upgrade_server.config import UpgradeSettings
from kube_upgrade_server.models import (
    AgentPoolProfile,
    ContainerService,
    KubernetesConfig,
    MasterProfile,
    OrchestratorProfile,
    RoleAssignment,
    VirtualMachine,
)

RESOURCE_GROUP = "TestRg"
NAME_SUFFIX = "12345678"
SUBSCRIPTION_ID = "00000000-0000-0000-0000-000000000001"
VHD_ACCOUNT = "00k71r4u927seqiagnt0"

# Operations that change cloud state.
MUTATING_OPERATIONS = frozenset(
    {OP_DELETE_VM, OP_DELETE_NIC, OP_DELETE_MANAGED_DISK, OP_DELETE_BLOB, OP_DELETE_ROLE_ASSIGNMENT, OP_DEPLOY_TEMPLATE}
)


def vm_name(pool: str, index: int, suffix: str = NAME_SUFFIX) -> str:
    return f"k8s-{pool}-{suffix}-{index}"


def make_vm(
    pool: str,
    index: int,
    version: str = "1.7.9",
    suffix: str = NAME_SUFFIX,
    tagged: bool = True,
    managed_disk: bool = False,
) -> VirtualMachine:
    """Build a cluster VM the way the ARM listing returns it."""
    name = vm_name(pool, index, suffix)
    tags = None
    if tagged:
        tags = {"poolName": pool, "resourceNameSuffix": suffix, "orchestrator": f"Kubernetes:{version}"}
    return VirtualMachine(
        name=name,
        id=f"/subscriptions/{SUBSCRIPTION_ID}/resourceGroups/{RESOURCE_GROUP}/providers/Microsoft.Compute/virtualMachines/{name}",
        tags=tags,
        network_interface_ids=[
            f"/subscriptions/{SUBSCRIPTION_ID}/resourceGroups/{RESOURCE_GROUP}/providers/Microsoft.Network/networkInterfaces/{name}-nic-0"
        ],
        os_disk_vhd_uri=None if managed_disk else f"https://{VHD_ACCOUNT}.blob.core.windows.net/osdisk/{name}-osdisk.vhd",
        os_disk_name=f"{name}_OsDisk_1",
        provisioning_state="Succeeded",
    )


class FakeStorageClient:
    def __init__(self, cloud: FakeCloudClient, account_name: str) -> None:
        self._cloud = cloud
        self.account_name = account_name

    def delete_blob(self, container: str, blob: str) -> None:
        self._cloud.record(OP_DELETE_BLOB, f"{container}/{blob}")


class FakeCloudClient:
    """In-memory CloudClient with per-operation fault injection.

    Failures raise CloudOperationError with the operation's default message, e.g.
    ``DeleteVirtualMachine failed``. ``fail_on`` injects a failure for one VM only,
    mapping VM name to operation.
    """

    def __init__(
        self,
        master_count: int = 1,
        agent_pools: dict[str, int] | None = None,
        version: str = "1.7.9",
        fail_list_virtual_machines: bool = False,
        fail_list_virtual_machines_tags: bool = False,
        fail_get_virtual_machine: bool = False,
        fail_delete_virtual_machine: bool = False,
        fail_delete_network_interface: bool = False,
        fail_get_storage_client: bool = False,
        fail_deploy_template: bool = False,
        fail_list_role_assignments: bool = False,
        fail_delete_role_assignment: bool = False,
        role_assignments_not_found: bool = False,
        support_vm_identity: bool = False,
        fail_on: dict[str, str] | None = None,
        extra_vms: list[VirtualMachine] | None = None,
    ) -> None:
        self.fail_list_virtual_machines = fail_list_virtual_machines
        self.fail_list_virtual_machines_tags = fail_list_virtual_machines_tags
        self.fail_get_virtual_machine = fail_get_virtual_machine
        self.fail_delete_virtual_machine = fail_delete_virtual_machine
        self.fail_delete_network_interface = fail_delete_network_interface
        self.fail_get_storage_client = fail_get_storage_client
        self.fail_deploy_template = fail_deploy_template
        self.fail_list_role_assignments = fail_list_role_assignments
        self.fail_delete_role_assignment = fail_delete_role_assignment
        self.role_assignments_not_found = role_assignments_not_found
        self.support_vm_identity = support_vm_identity
        self.fail_on = fail_on or {}
        self.calls: list[tuple[str, str]] = []
        self._lock = threading.Lock()

        self.vms: dict[str, VirtualMachine] = {}
        for index in range(master_count):
            self._add(make_vm("master", index, version))
        for pool, count in (agent_pools if agent_pools is not None else {"agentpool1": 1}).items():
            for index in range(count):
                self._add(make_vm(pool, index, version))
        for vm in extra_vms or []:
            self._add(vm)

    def _add(self, vm: VirtualMachine) -> None:
        if self.support_vm_identity:
            vm = vm.model_copy(update={"identity_principal_id": f"principal-{vm.name}"})
        self.vms[vm.name] = vm

    def record(self, operation: str, target: str) -> None:
        with self._lock:
            self.calls.append((operation, target))

    def calls_for(self, operation: str) -> list[str]:
        return [target for op, target in self.calls if op == operation]

    def mutations(self) -> list[tuple[str, str]]:
        return [call for call in self.calls if call[0] in MUTATING_OPERATIONS]

    def touched(self, vm: str) -> bool:
        return any(vm in target for _, target in self.mutations())

    def _check(self, operation: str, flag: bool, name: str | None = None) -> None:
        if flag or (name is not None and self.fail_on.get(name) == operation):
            raise CloudOperationError(operation)

    def list_virtual_machines(self, resource_group: str) -> list[VirtualMachine]:
        self.record(OP_LIST_VMS, resource_group)
        self._check(OP_LIST_VMS, self.fail_list_virtual_machines)
        vms = list(self.vms.values())
        if self.fail_list_virtual_machines_tags:
            vms = [vm.model_copy(update={"tags": None}) for vm in vms]
        return vms

    def get_virtual_machine(self, resource_group: str, name: str) -> VirtualMachine:
        self.record(OP_GET_VM, name)
        self._check(OP_GET_VM, self.fail_get_virtual_machine, name)
        if name not in self.vms:
            raise CloudOperationError(OP_GET_VM, f"{OP_GET_VM} failed: {name} not found")
        return self.vms[name]

    def delete_virtual_machine(self, resource_group: str, name: str) -> None:
        self.record(OP_DELETE_VM, name)
        self._check(OP_DELETE_VM, self.fail_delete_virtual_machine, name)
        with self._lock:
            self.vms.pop(name, None)

    def delete_network_interface(self, resource_group: str, nic_name: str) -> None:
        self.record(OP_DELETE_NIC, nic_name)
        self._check(OP_DELETE_NIC, self.fail_delete_network_interface, nic_name.rsplit("-nic-", 1)[0])

    def delete_managed_disk(self, resource_group: str, disk_name: str) -> None:
        self.record(OP_DELETE_MANAGED_DISK, disk_name)

    def get_storage_client(self, resource_group: str, account_name: str) -> FakeStorageClient:
        self.record(OP_GET_STORAGE_CLIENT, account_name)
        self._check(OP_GET_STORAGE_CLIENT, self.fail_get_storage_client)
        return FakeStorageClient(self, account_name)

    def list_role_assignments_for_principal(self, principal_id: str) -> list[RoleAssignment]:
        self.record(OP_LIST_ROLE_ASSIGNMENTS, principal_id)
        if self.role_assignments_not_found:
            raise RoleAssignmentNotFoundError(OP_LIST_ROLE_ASSIGNMENTS)
        self._check(OP_LIST_ROLE_ASSIGNMENTS, self.fail_list_role_assignments)
        return [RoleAssignment(id=f"/roleAssignments/{principal_id}-ra", principal_id=principal_id)]

    def delete_role_assignment_by_id(self, role_assignment_id: str) -> None:
        self.record(OP_DELETE_ROLE_ASSIGNMENT, role_assignment_id)
        if self.role_assignments_not_found:
            raise RoleAssignmentNotFoundError(OP_DELETE_ROLE_ASSIGNMENT)
        self._check(OP_DELETE_ROLE_ASSIGNMENT, self.fail_delete_role_assignment)

    def deploy_template(
        self,
        resource_group: str,
        deployment_name: str,
        template: dict[str, Any],
        parameters: dict[str, Any],
    ) -> None:
        name = parameters["vmName"]["value"]
        self.record(OP_DEPLOY_TEMPLATE, name)
        self._check(OP_DEPLOY_TEMPLATE, self.fail_deploy_template, name)
        vm_resource = next(r for r in template["resources"] if r["type"] == "Microsoft.Compute/virtualMachines")
        pool = vm_resource["tags"]["poolName"]
        index = int(name.rsplit("-", 1)[1])
        vm = make_vm(pool, index, vm_resource["tags"]["orchestrator"].split(":", 1)[1])
        with self._lock:
            self._add(vm)


def make_container_service(
    version: str = "1.7.16",
    agent_pools: list[str] | None = None,
    master_count: int = 1,
    use_managed_identity: bool = False,
) -> ContainerService:
    """Build a cluster definition with one master pool and the named agent pools."""
    kubernetes_config = KubernetesConfig(use_managed_identity=True) if use_managed_identity else None
    return ContainerService(
        name="testcluster",
        location="westus2",
        orchestrator_profile=OrchestratorProfile(
            orchestrator_type="Kubernetes",
            orchestrator_version=version,
            kubernetes_config=kubernetes_config,
        ),
        master_profile=MasterProfile(count=master_count, dns_prefix="testcluster"),
        agent_pool_profiles=[
            AgentPoolProfile(name=name, count=1, storage_profile="StorageAccount")
            for name in (agent_pools if agent_pools is not None else ["agentpool1"])
        ],
    )


@pytest.fixture
def settings() -> UpgradeSettings:
    """Settings with defaults pinned, independent of the environment."""
    return UpgradeSettings(
        agent_pool_parallelism=3,
        drain_enabled=False,
        drain_grace_seconds=30,
        allowed_transitions=frozenset(),
    )


@pytest.fixture
def cloud() -> FakeCloudClient:
    return FakeCloudClient()


@pytest.fixture
def cluster() -> ContainerService:
    return make_container_service()
