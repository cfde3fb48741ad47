"""Capability interface the orchestrator needs from the cloud resource-management layer."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from kube_upgrade_server.models import RoleAssignment, VirtualMachine

# Operation names. Collaborator failures carry these so errors map to a concrete action.
OP_LIST_VMS = "ListVirtualMachines"
OP_GET_VM = "GetVirtualMachine"
OP_DELETE_VM = "DeleteVirtualMachine"
OP_DELETE_NIC = "DeleteNetworkInterface"
OP_DELETE_MANAGED_DISK = "DeleteManagedDisk"
OP_GET_STORAGE_CLIENT = "GetStorageClient"
OP_DELETE_BLOB = "DeleteBlob"
OP_LIST_ROLE_ASSIGNMENTS = "ListRoleAssignmentsForPrincipal"
OP_DELETE_ROLE_ASSIGNMENT = "DeleteRoleAssignmentByID"
OP_DEPLOY_TEMPLATE = "DeployTemplate"


class CloudOperationError(Exception):
    """A cloud collaborator call failed."""

    def __init__(self, operation: str, message: str | None = None) -> None:
        super().__init__(message or f"{operation} failed")
        self.operation = operation


class RoleAssignmentNotFoundError(CloudOperationError):
    """No identity or role assignment is bound to the VM.

    Not an upgrade failure: the identity may never have been provisioned or may
    already have been cleaned up.
    """


@runtime_checkable
class StorageClient(Protocol):
    """Blob operations on one storage account."""

    def delete_blob(self, container: str, blob: str) -> None: ...


@runtime_checkable
class CloudClient(Protocol):
    """Compute, network, storage, identity and deployment operations on one subscription.

    Every method either returns or raises ``CloudOperationError``. Implementations own
    their retry policy; the orchestrator never retries.
    """

    def list_virtual_machines(self, resource_group: str) -> list[VirtualMachine]: ...

    def get_virtual_machine(self, resource_group: str, name: str) -> VirtualMachine: ...

    def delete_virtual_machine(self, resource_group: str, name: str) -> None: ...

    def delete_network_interface(self, resource_group: str, nic_name: str) -> None: ...

    def delete_managed_disk(self, resource_group: str, disk_name: str) -> None: ...

    def get_storage_client(self, resource_group: str, account_name: str) -> StorageClient: ...

    def list_role_assignments_for_principal(self, principal_id: str) -> list[RoleAssignment]: ...

    def delete_role_assignment_by_id(self, role_assignment_id: str) -> None: ...

    def deploy_template(
        self,
        resource_group: str,
        deployment_name: str,
        template: dict[str, Any],
        parameters: dict[str, Any],
    ) -> None: ...
