"""Deployment template rendering for replacement VMs."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from kube_upgrade_server.models import ContainerService, DiscoveredNode, PoolRole
from kube_upgrade_server.upgrade.topology import NAME_SUFFIX_TAG, ORCHESTRATOR_TAG, POOL_NAME_TAG
from kube_upgrade_server.utils import resource_name_from_id

_DEPLOYMENT_SCHEMA = "https://schema.management.azure.com/schemas/2015-01-01/deploymentTemplate.json#"
_COMPUTE_API_VERSION = "2023-03-01"
_NETWORK_API_VERSION = "2023-04-01"

NIC_RESOURCE_TYPE = "Microsoft.Network/networkInterfaces"
VM_RESOURCE_TYPE = "Microsoft.Compute/virtualMachines"


@dataclass(frozen=True)
class RenderedTemplate:
    template: dict[str, Any]
    parameters: dict[str, Any]

    def resource(self, resource_type: str) -> dict[str, Any] | None:
        """Return the first resource of ``resource_type`` in the template, if any."""
        for resource in self.template.get("resources", []):
            if resource.get("type") == resource_type:
                return resource
        return None


class TemplateRenderer(Protocol):
    """Produces the ARM deployment that recreates one node at the target version."""

    def render(
        self,
        cluster: ContainerService,
        node: DiscoveredNode,
        target_version: str,
        name_suffix: str,
    ) -> RenderedTemplate: ...


def deployment_name(node: DiscoveredNode) -> str:
    """Deterministic ARM deployment name for a node's replacement."""
    return f"{node.name}-upgrade"


def default_subnet_id(name_suffix: str) -> str:
    """ARM expression for the cluster's own subnet when no custom VNET is configured."""
    return f"[resourceId('Microsoft.Network/virtualNetworks/subnets', 'k8s-vnet-{name_suffix}', 'k8s-subnet')]"


class DefaultTemplateRenderer:
    """Emits a NIC and a VM that recreate one node under its old names.

    The NIC is recreated on the pool's subnet and the VM depends on it. The OS disk
    goes back to the same VHD URI for storage-account nodes, or is created as a
    managed disk with the old disk name. Tags carry the pool, suffix and target
    version so the replacement is rediscovered in the same pool.
    """

    def render(
        self,
        cluster: ContainerService,
        node: DiscoveredNode,
        target_version: str,
        name_suffix: str,
    ) -> RenderedTemplate:
        if node.role is PoolRole.MASTER:
            vm_size = cluster.master_profile.vm_size
            subnet_id = cluster.master_profile.vnet_subnet_id
        else:
            profile = cluster.agent_pool(node.pool_name)
            vm_size = profile.vm_size if profile else cluster.master_profile.vm_size
            subnet_id = profile.vnet_subnet_id if profile else cluster.master_profile.vnet_subnet_id

        orchestrator = cluster.orchestrator_profile.orchestrator_type
        tags = {
            POOL_NAME_TAG: node.pool_name,
            NAME_SUFFIX_TAG: name_suffix,
            ORCHESTRATOR_TAG: f"{orchestrator}:{target_version}",
        }

        nic_resource: dict[str, Any] = {
            "type": NIC_RESOURCE_TYPE,
            "apiVersion": _NETWORK_API_VERSION,
            "name": "[parameters('nicName')]",
            "location": "[parameters('location')]",
            "properties": {
                "ipConfigurations": [
                    {
                        "name": "ipconfig1",
                        "properties": {
                            "privateIPAllocationMethod": "Dynamic",
                            "subnet": {"id": "[variables('subnetId')]"},
                        },
                    }
                ]
            },
        }

        vm_resource: dict[str, Any] = {
            "type": VM_RESOURCE_TYPE,
            "apiVersion": _COMPUTE_API_VERSION,
            "name": "[parameters('vmName')]",
            "location": "[parameters('location')]",
            "tags": tags,
            "dependsOn": [f"[resourceId('{NIC_RESOURCE_TYPE}', parameters('nicName'))]"],
            "properties": {
                "hardwareProfile": {"vmSize": "[parameters('vmSize')]"},
                "osProfile": _os_profile(cluster),
                "storageProfile": {
                    "imageReference": cluster.image_reference.model_dump(),
                    "osDisk": _os_disk(node),
                },
                "networkProfile": {
                    "networkInterfaces": [{"id": f"[resourceId('{NIC_RESOURCE_TYPE}', parameters('nicName'))]"}]
                },
            },
        }
        if cluster.use_managed_identity:
            vm_resource["identity"] = {"type": "SystemAssigned"}

        template = {
            "$schema": _DEPLOYMENT_SCHEMA,
            "contentVersion": "1.0.0.0",
            "parameters": {
                "vmName": {"type": "string"},
                "location": {"type": "string"},
                "vmSize": {"type": "string"},
                "nicName": {"type": "string"},
                "adminUsername": {"type": "string"},
            },
            "variables": {"subnetId": subnet_id or default_subnet_id(name_suffix)},
            "resources": [nic_resource, vm_resource],
        }
        parameters = {
            "vmName": {"value": node.name},
            "location": {"value": cluster.location},
            "vmSize": {"value": vm_size},
            "nicName": {"value": _nic_name(node)},
            "adminUsername": {"value": cluster.linux_profile.admin_username},
        }
        return RenderedTemplate(template=template, parameters=parameters)


def _os_profile(cluster: ContainerService) -> dict[str, Any]:
    public_keys = [
        {
            "path": "[concat('/home/', parameters('adminUsername'), '/.ssh/authorized_keys')]",
            "keyData": key,
        }
        for key in cluster.linux_profile.ssh_public_keys
    ]
    return {
        "computerName": "[parameters('vmName')]",
        "adminUsername": "[parameters('adminUsername')]",
        "linuxConfiguration": {"disablePasswordAuthentication": True, "ssh": {"publicKeys": public_keys}},
    }


def _os_disk(node: DiscoveredNode) -> dict[str, Any]:
    if node.os_disk_vhd_uri:
        return {
            "name": f"{node.name}-osdisk",
            "createOption": "FromImage",
            "caching": "ReadWrite",
            "vhd": {"uri": node.os_disk_vhd_uri},
        }
    os_disk: dict[str, Any] = {
        "createOption": "FromImage",
        "caching": "ReadWrite",
        "managedDisk": {"storageAccountType": "Standard_LRS"},
    }
    if node.os_disk_name:
        os_disk["name"] = node.os_disk_name
    return os_disk


def _nic_name(node: DiscoveredNode) -> str:
    if node.network_interface_ids:
        return resource_name_from_id(node.network_interface_ids[0])
    return f"{node.name}-nic"
