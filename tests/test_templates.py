"""Tests for the default replacement VM template."""

from __future__ import annotations

from conftest import make_container_service

from kube_upgrade_server.models import DiscoveredNode, LinuxProfile, PoolRole
from kube_upgrade_server.upgrade.templates import (
    NIC_RESOURCE_TYPE,
    VM_RESOURCE_TYPE,
    DefaultTemplateRenderer,
    RenderedTemplate,
    default_subnet_id,
    deployment_name,
)

NIC_ID = "/subscriptions/x/resourceGroups/TestRg/providers/Microsoft.Network/networkInterfaces/k8s-master-12345678-nic-0"


def _node(
    name: str,
    pool: str,
    role: PoolRole,
    nic_ids: list[str] | None = None,
    vhd_uri: str | None = None,
    os_disk_name: str | None = None,
) -> DiscoveredNode:
    return DiscoveredNode(
        name=name,
        resource_id=f"/vm/{name}",
        pool_name=pool,
        role=role,
        network_interface_ids=nic_ids or [],
        os_disk_vhd_uri=vhd_uri,
        os_disk_name=os_disk_name,
    )


def _master(**kwargs) -> DiscoveredNode:
    return _node("k8s-master-12345678-0", "master", PoolRole.MASTER, **kwargs)


def _vm(rendered: RenderedTemplate) -> dict:
    vm = rendered.resource(VM_RESOURCE_TYPE)
    assert vm is not None
    return vm


class TestDefaultTemplateRenderer:
    def test_tags_identify_replacement(self) -> None:
        node = _node("k8s-agentpool1-12345678-0", "agentpool1", PoolRole.AGENT)
        rendered = DefaultTemplateRenderer().render(make_container_service(), node, "1.7.16", "12345678")

        assert _vm(rendered)["tags"] == {
            "poolName": "agentpool1",
            "resourceNameSuffix": "12345678",
            "orchestrator": "Kubernetes:1.7.16",
        }
        assert rendered.parameters["vmName"] == {"value": "k8s-agentpool1-12345678-0"}

    def test_parameters_match_declarations(self) -> None:
        rendered = DefaultTemplateRenderer().render(make_container_service(), _master(), "1.7.16", "12345678")
        assert set(rendered.parameters) == set(rendered.template["parameters"])

    def test_nic_is_recreated_before_vm(self) -> None:
        rendered = DefaultTemplateRenderer().render(make_container_service(), _master(nic_ids=[NIC_ID]), "1.7.16", "12345678")

        nic = rendered.resource(NIC_RESOURCE_TYPE)
        assert nic is not None
        assert nic["name"] == "[parameters('nicName')]"
        ip_config = nic["properties"]["ipConfigurations"][0]["properties"]
        assert ip_config["subnet"] == {"id": "[variables('subnetId')]"}
        assert _vm(rendered)["dependsOn"] == [f"[resourceId('{NIC_RESOURCE_TYPE}', parameters('nicName'))]"]
        assert rendered.parameters["nicName"] == {"value": "k8s-master-12345678-nic-0"}

    def test_default_nic_name(self) -> None:
        rendered = DefaultTemplateRenderer().render(make_container_service(), _master(), "1.7.16", "12345678")
        assert rendered.parameters["nicName"] == {"value": "k8s-master-12345678-0-nic"}

    def test_default_subnet(self) -> None:
        rendered = DefaultTemplateRenderer().render(make_container_service(), _master(), "1.7.16", "12345678")
        assert rendered.template["variables"]["subnetId"] == default_subnet_id("12345678")
        assert "k8s-vnet-12345678" in default_subnet_id("12345678")

    def test_custom_agent_subnet(self) -> None:
        cluster = make_container_service()
        subnet = "/subscriptions/x/resourceGroups/net/providers/Microsoft.Network/virtualNetworks/v/subnets/agents"
        cluster.agent_pool_profiles[0].vnet_subnet_id = subnet
        node = _node("k8s-agentpool1-12345678-0", "agentpool1", PoolRole.AGENT)

        rendered = DefaultTemplateRenderer().render(cluster, node, "1.7.16", "12345678")

        assert rendered.template["variables"]["subnetId"] == subnet

    def test_unmanaged_os_disk_reuses_vhd_uri(self) -> None:
        uri = "https://acct.blob.core.windows.net/osdisk/k8s-master-12345678-0-osdisk.vhd"
        rendered = DefaultTemplateRenderer().render(make_container_service(), _master(vhd_uri=uri), "1.7.16", "12345678")

        storage = _vm(rendered)["properties"]["storageProfile"]
        assert storage["osDisk"]["vhd"] == {"uri": uri}
        assert storage["osDisk"]["createOption"] == "FromImage"
        assert storage["imageReference"]["offer"] == "UbuntuServer"

    def test_managed_os_disk_keeps_name(self) -> None:
        node = _master(os_disk_name="k8s-master-12345678-0_OsDisk_1")
        rendered = DefaultTemplateRenderer().render(make_container_service(), node, "1.7.16", "12345678")

        os_disk = _vm(rendered)["properties"]["storageProfile"]["osDisk"]
        assert os_disk["name"] == "k8s-master-12345678-0_OsDisk_1"
        assert "managedDisk" in os_disk
        assert "vhd" not in os_disk

    def test_os_profile_carries_ssh_keys(self) -> None:
        cluster = make_container_service()
        cluster.linux_profile = LinuxProfile(admin_username="ops", ssh_public_keys=["ssh-rsa AAAA ops@example"])

        rendered = DefaultTemplateRenderer().render(cluster, _master(), "1.7.16", "12345678")

        os_profile = _vm(rendered)["properties"]["osProfile"]
        assert os_profile["linuxConfiguration"]["disablePasswordAuthentication"] is True
        assert os_profile["linuxConfiguration"]["ssh"]["publicKeys"][0]["keyData"] == "ssh-rsa AAAA ops@example"
        assert rendered.parameters["adminUsername"] == {"value": "ops"}

    def test_managed_identity_adds_system_identity(self) -> None:
        cluster = make_container_service(use_managed_identity=True)
        rendered = DefaultTemplateRenderer().render(cluster, _master(), "1.7.16", "12345678")

        assert _vm(rendered)["identity"] == {"type": "SystemAssigned"}

    def test_no_identity_by_default(self) -> None:
        rendered = DefaultTemplateRenderer().render(make_container_service(), _master(), "1.7.16", "12345678")
        assert "identity" not in _vm(rendered)

    def test_deployment_name(self) -> None:
        assert deployment_name(_master()) == "k8s-master-12345678-0-upgrade"
