"""Azure Resource Manager wrapper covering VMs, NICs, disks, blobs, role assignments and deployments."""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Any, TypeVar

import structlog
from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.identity import DefaultAzureCredential
from azure.mgmt.authorization import AuthorizationManagementClient
from azure.mgmt.compute import ComputeManagementClient
from azure.mgmt.network import NetworkManagementClient
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.storage import StorageManagementClient
from azure.storage.blob import BlobServiceClient

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
from kube_upgrade_server.models import RoleAssignment, VirtualMachine

log = structlog.get_logger()

T = TypeVar("T")


def _op_error(operation: str, error: AzureError) -> CloudOperationError:
    return CloudOperationError(operation, f"{operation} failed: {error}")


def vm_from_sdk(vm: Any) -> VirtualMachine:
    """Convert an azure-mgmt-compute VirtualMachine into the cloud-neutral model."""
    nic_ids: list[str] = []
    if vm.network_profile and vm.network_profile.network_interfaces:
        nic_ids = [nic.id for nic in vm.network_profile.network_interfaces if nic.id]

    vhd_uri = None
    disk_name = None
    os_disk = vm.storage_profile.os_disk if vm.storage_profile else None
    if os_disk is not None:
        vhd_uri = os_disk.vhd.uri if os_disk.vhd else None
        disk_name = os_disk.name

    return VirtualMachine(
        name=vm.name,
        id=vm.id,
        tags=dict(vm.tags) if vm.tags else None,
        network_interface_ids=nic_ids,
        os_disk_vhd_uri=vhd_uri,
        os_disk_name=disk_name,
        identity_principal_id=vm.identity.principal_id if vm.identity else None,
        provisioning_state=vm.provisioning_state,
    )


class AzureBlobStorage:
    """Blob deletion on one storage account, authenticated with an account key."""

    def __init__(self, account_name: str, account_key: str) -> None:
        self._account_name = account_name
        self._service = BlobServiceClient(
            account_url=f"https://{account_name}.blob.core.windows.net",
            credential=account_key,
        )

    def delete_blob(self, container: str, blob: str) -> None:
        try:
            self._service.get_blob_client(container=container, blob=blob).delete_blob()
        except ResourceNotFoundError:
            log.info("blob_already_deleted", container=container, blob=blob)
        except AzureError as e:
            log.error("failed_to_delete_blob", container=container, blob=blob)
            raise _op_error(OP_DELETE_BLOB, e) from e


class AzureArmClient:
    """CloudClient implementation backed by the Azure management SDKs.

    Long-running operations block on their poller, so callers get a completed
    resource change or a CloudOperationError. SDK clients are created on first use
    and shared between agent pool workers.
    """

    def __init__(self, subscription_id: str) -> None:
        self._subscription_id = subscription_id
        self._credential: DefaultAzureCredential | None = None
        self._compute: ComputeManagementClient | None = None
        self._network: NetworkManagementClient | None = None
        self._authorization: AuthorizationManagementClient | None = None
        self._resource: ResourceManagementClient | None = None
        self._storage: StorageManagementClient | None = None
        # RLock: the per-service getters call _get_credential while holding the lock.
        self._lock = threading.RLock()

    def _get_credential(self) -> DefaultAzureCredential:
        with self._lock:
            if self._credential is None:
                self._credential = DefaultAzureCredential()
            return self._credential

    def _get_compute(self) -> ComputeManagementClient:
        with self._lock:
            if self._compute is None:
                self._compute = ComputeManagementClient(
                    credential=self._get_credential(),
                    subscription_id=self._subscription_id,
                )
            return self._compute

    def _get_network(self) -> NetworkManagementClient:
        with self._lock:
            if self._network is None:
                self._network = NetworkManagementClient(
                    credential=self._get_credential(),
                    subscription_id=self._subscription_id,
                )
            return self._network

    def _get_authorization(self) -> AuthorizationManagementClient:
        with self._lock:
            if self._authorization is None:
                self._authorization = AuthorizationManagementClient(
                    credential=self._get_credential(),
                    subscription_id=self._subscription_id,
                )
            return self._authorization

    def _get_resource(self) -> ResourceManagementClient:
        with self._lock:
            if self._resource is None:
                self._resource = ResourceManagementClient(
                    credential=self._get_credential(),
                    subscription_id=self._subscription_id,
                )
            return self._resource

    def _get_storage(self) -> StorageManagementClient:
        with self._lock:
            if self._storage is None:
                self._storage = StorageManagementClient(
                    credential=self._get_credential(),
                    subscription_id=self._subscription_id,
                )
            return self._storage

    def _invoke(self, operation: str, event: str, fn: Callable[..., T], *args: Any, **context: Any) -> T:
        try:
            return fn(*args)
        except AzureError as e:
            log.error(event, **context)
            raise _op_error(operation, e) from e

    def list_virtual_machines(self, resource_group: str) -> list[VirtualMachine]:
        """List every VM in the resource group."""
        compute = self._get_compute()
        vms = self._invoke(
            OP_LIST_VMS,
            "failed_to_list_vms",
            lambda: list(compute.virtual_machines.list(resource_group)),
            resource_group=resource_group,
        )
        return [vm_from_sdk(vm) for vm in vms]

    def get_virtual_machine(self, resource_group: str, name: str) -> VirtualMachine:
        compute = self._get_compute()
        vm = self._invoke(
            OP_GET_VM, "failed_to_get_vm", compute.virtual_machines.get, resource_group, name, vm=name
        )
        return vm_from_sdk(vm)

    def delete_virtual_machine(self, resource_group: str, name: str) -> None:
        compute = self._get_compute()
        self._invoke(
            OP_DELETE_VM,
            "failed_to_delete_vm",
            lambda: compute.virtual_machines.begin_delete(resource_group, name).result(),
            vm=name,
        )
        log.info("vm_deleted", vm=name)

    def delete_network_interface(self, resource_group: str, nic_name: str) -> None:
        network = self._get_network()
        self._invoke(
            OP_DELETE_NIC,
            "failed_to_delete_nic",
            lambda: network.network_interfaces.begin_delete(resource_group, nic_name).result(),
            nic=nic_name,
        )
        log.info("nic_deleted", nic=nic_name)

    def delete_managed_disk(self, resource_group: str, disk_name: str) -> None:
        compute = self._get_compute()
        self._invoke(
            OP_DELETE_MANAGED_DISK,
            "failed_to_delete_managed_disk",
            lambda: compute.disks.begin_delete(resource_group, disk_name).result(),
            disk=disk_name,
        )
        log.info("managed_disk_deleted", disk=disk_name)

    def get_storage_client(self, resource_group: str, account_name: str) -> AzureBlobStorage:
        """Return a blob client for the storage account holding an unmanaged OS disk."""
        storage = self._get_storage()
        keys = self._invoke(
            OP_GET_STORAGE_CLIENT,
            "failed_to_get_storage_keys",
            storage.storage_accounts.list_keys,
            resource_group,
            account_name,
            account=account_name,
        )
        if not keys.keys:
            raise CloudOperationError(OP_GET_STORAGE_CLIENT, f"{OP_GET_STORAGE_CLIENT} failed: no account keys")
        return AzureBlobStorage(account_name, keys.keys[0].value)

    def list_role_assignments_for_principal(self, principal_id: str) -> list[RoleAssignment]:
        """List the role assignments bound to a managed identity principal.

        Raises:
            RoleAssignmentNotFoundError: If the principal no longer exists.
        """
        authorization = self._get_authorization()
        try:
            assignments = list(
                authorization.role_assignments.list_for_subscription(filter=f"principalId eq '{principal_id}'")
            )
        except ResourceNotFoundError as e:
            raise RoleAssignmentNotFoundError(OP_LIST_ROLE_ASSIGNMENTS, str(e)) from e
        except AzureError as e:
            log.error("failed_to_list_role_assignments", principal=principal_id)
            raise _op_error(OP_LIST_ROLE_ASSIGNMENTS, e) from e

        return [RoleAssignment(id=a.id, principal_id=a.principal_id or principal_id, scope=a.scope) for a in assignments]

    def delete_role_assignment_by_id(self, role_assignment_id: str) -> None:
        authorization = self._get_authorization()
        try:
            authorization.role_assignments.delete_by_id(role_assignment_id)
        except ResourceNotFoundError as e:
            raise RoleAssignmentNotFoundError(OP_DELETE_ROLE_ASSIGNMENT, str(e)) from e
        except AzureError as e:
            log.error("failed_to_delete_role_assignment", role_assignment=role_assignment_id)
            raise _op_error(OP_DELETE_ROLE_ASSIGNMENT, e) from e
        log.info("role_assignment_deleted", role_assignment=role_assignment_id)

    def deploy_template(
        self,
        resource_group: str,
        deployment_name: str,
        template: dict[str, Any],
        parameters: dict[str, Any],
    ) -> None:
        """Run an incremental ARM deployment and wait for it to finish."""
        resource = self._get_resource()
        body = {"properties": {"mode": "Incremental", "template": template, "parameters": parameters}}
        self._invoke(
            OP_DEPLOY_TEMPLATE,
            "failed_to_deploy_template",
            lambda: resource.deployments.begin_create_or_update(resource_group, deployment_name, body).result(),
            deployment=deployment_name,
        )
        log.info("template_deployed", deployment=deployment_name)
