"""
Shared test fixtures and configuration for azdeploy tests.

This module provides common fixtures used across all test types:
- An in-memory provider that simulates Azure without network calls
- Sample resource declarations (group -> network -> NIC -> VM)
- Temporary state store
"""

import threading
from typing import Any

import pytest

from azdeploy.models import RemoteError, Resource, ResourceId, ResourceKind
from azdeploy.state_store import StateStore

# ============================================================================
# FAKE PROVIDER
# ============================================================================


class FakeProvider:
    """In-memory ProviderClient.

    Records every call in ``calls`` as (operation, target) tuples and raises
    injected failures registered with ``fail``.
    """

    def __init__(self):
        self.resources: dict[ResourceId, dict[str, Any]] = {}
        self.vms: dict[tuple[str, str], dict[str, Any]] = {}
        self.calls: list[tuple[str, str]] = []
        self._failures: dict[tuple[str, str], Exception] = {}
        self._lock = threading.Lock()

    def fail(self, operation: str, target: Any, error: Exception | None = None) -> None:
        """Make calls of ``operation`` on ``target`` raise until healed."""
        key = (operation, str(target))
        self._failures[key] = error or RemoteError(f"simulated {operation} failure")

    def heal(self, operation: str, target: Any) -> None:
        self._failures.pop((operation, str(target)), None)

    def _record(self, operation: str, target: Any) -> None:
        with self._lock:
            self.calls.append((operation, str(target)))
        error = self._failures.get((operation, str(target)))
        if error is not None:
            raise error

    def calls_for(self, operation: str) -> list[str]:
        return [target for op, target in self.calls if op == operation]

    # ProviderClient
    def create_or_update(self, resource: Resource) -> dict[str, Any]:
        self._record("create_or_update", resource.id)
        with self._lock:
            self.resources[resource.id] = dict(resource.properties)
            if resource.kind == ResourceKind.VIRTUAL_MACHINE:
                group = resource.get("resource_group", "rg")
                existing = self.vms.get((group, resource.name))
                self.vms[(group, resource.name)] = existing or make_vm(
                    resource.name, resource.get("size", "Standard_DS2_v2")
                )
        return {"id": str(resource.id), "name": resource.name}

    def get(self, resource: Resource) -> dict[str, Any] | None:
        self._record("get", resource.id)
        return self.resources.get(resource.id)

    def delete(self, resource: Resource) -> bool:
        self._record("delete", resource.id)
        with self._lock:
            existed = self.resources.pop(resource.id, None) is not None
            if resource.kind == ResourceKind.VIRTUAL_MACHINE:
                self.vms.pop((resource.get("resource_group", "rg"), resource.name), None)
        return existed

    def get_vm(self, resource_group: str, vm_name: str) -> dict[str, Any] | None:
        self._record("get_vm", vm_name)
        vm = self.vms.get((resource_group, vm_name))
        return dict(vm) if vm else None

    def power_off_vm(self, resource_group: str, vm_name: str) -> None:
        self._record("power_off_vm", vm_name)
        set_power_state(self.vms[(resource_group, vm_name)], "stopped")

    def start_vm(self, resource_group: str, vm_name: str) -> None:
        self._record("start_vm", vm_name)
        set_power_state(self.vms[(resource_group, vm_name)], "running")

    def deallocate_vm(self, resource_group: str, vm_name: str) -> None:
        self._record("deallocate_vm", vm_name)
        set_power_state(self.vms[(resource_group, vm_name)], "deallocated")

    def resize_vm(self, resource_group: str, vm_name: str, vm_size: str) -> None:
        self._record("resize_vm", vm_name)
        self.vms[(resource_group, vm_name)]["vm_size"] = vm_size

    def attach_data_disk(
        self, resource_group: str, vm_name: str, size_gb: int, lun: int, caching: str
    ) -> None:
        self._record("attach_data_disk", vm_name)
        vm = self.vms[(resource_group, vm_name)]
        vm["data_disks"] = [
            *vm["data_disks"],
            {"name": f"{vm_name}_disk{lun}", "lun": lun, "size_gb": size_gb, "caching": caching},
        ]


def make_vm(name: str, size: str = "Standard_DS2_v2", power: str = "running") -> dict[str, Any]:
    """VM dict in the shape returned by ProviderClient.get_vm."""
    return {
        "id": f"/subscriptions/sub-id/resourceGroups/rg/providers/Microsoft.Compute/virtualMachines/{name}",
        "name": name,
        "type": "Microsoft.Compute/virtualMachines",
        "location": "westus2",
        "vm_size": size,
        "provisioning_state": "Succeeded",
        "image": {
            "publisher": "MicrosoftWindowsServer",
            "offer": "WindowsServer",
            "sku": "2012-R2-Datacenter",
            "version": "latest",
        },
        "os_disk": {"name": f"{name}_OsDisk", "os_type": "Windows", "create_option": "FromImage", "caching": "ReadWrite"},
        "computer_name": name,
        "admin_username": "azureuser",
        "provision_vm_agent": True,
        "enable_automatic_updates": True,
        "network_interface_ids": ["/subscriptions/sub-id/.../networkInterfaces/myNIC"],
        "data_disks": [],
        "statuses": [
            {"code": "ProvisioningState/succeeded", "level": "Info", "display_status": "Provisioning succeeded"},
            {"code": f"PowerState/{power}", "level": "Info", "display_status": f"VM {power}"},
        ],
        "vm_agent": {
            "version": "2.7.41491.1010",
            "statuses": [{"code": "ProvisioningState/succeeded", "level": "Info", "display_status": "Ready"}],
        },
        "disk_statuses": [
            {
                "name": f"{name}_OsDisk",
                "statuses": [
                    {"code": "ProvisioningState/succeeded", "level": "Info", "display_status": "Provisioning succeeded"}
                ],
            }
        ],
    }


def set_power_state(vm: dict[str, Any], power: str) -> None:
    vm["statuses"] = [
        s for s in vm["statuses"] if not s["code"].startswith("PowerState/")
    ] + [{"code": f"PowerState/{power}", "level": "Info", "display_status": f"VM {power}"}]


# ============================================================================
# FIXTURES
# ============================================================================


@pytest.fixture
def provider():
    """Fresh in-memory provider."""
    return FakeProvider()


@pytest.fixture
def state_store(tmp_path):
    """State store rooted in a temporary directory."""
    return StateStore(tmp_path / "state")


@pytest.fixture
def chain_resources():
    """Group -> network -> NIC -> VM, declared in dependency order."""
    g = Resource(ResourceKind.RESOURCE_GROUP, "g", {"location": "westus2"})
    n = Resource(
        ResourceKind.VIRTUAL_NETWORK,
        "n",
        {"location": "westus2", "resource_group": "g"},
        depends_on=(g.id,),
    )
    i = Resource(
        ResourceKind.NETWORK_INTERFACE,
        "i",
        {"location": "westus2", "resource_group": "g", "network": "n", "subnet": "s"},
        depends_on=(n.id,),
    )
    v = Resource(
        ResourceKind.VIRTUAL_MACHINE,
        "v",
        {"location": "westus2", "resource_group": "g", "network_interface": "i"},
        depends_on=(i.id,),
    )
    return [g, n, i, v]


@pytest.fixture
def vm_resources():
    """The full tutorial deployment: group, availability set, IP, network, NIC, VM."""
    rg = ResourceId(ResourceKind.RESOURCE_GROUP, "myResourceGroup")
    props = {"location": "westus2", "resource_group": "myResourceGroup"}
    avset = Resource(ResourceKind.AVAILABILITY_SET, "myAVSet", props, depends_on=(rg,))
    pip = Resource(ResourceKind.PUBLIC_IP, "myPublicIP", props, depends_on=(rg,))
    vnet = Resource(
        ResourceKind.VIRTUAL_NETWORK,
        "myVNet",
        {**props, "address_space": "10.0.0.0/16", "subnets": {"mySubnet": "10.0.0.0/24"}},
        depends_on=(rg,),
    )
    nic = Resource(
        ResourceKind.NETWORK_INTERFACE,
        "myNIC",
        {**props, "network": "myVNet", "subnet": "mySubnet", "public_ip": "myPublicIP"},
        depends_on=(vnet.id, pip.id),
    )
    vm = Resource(
        ResourceKind.VIRTUAL_MACHINE,
        "myVM",
        {**props, "network_interface": "myNIC", "availability_set": "myAVSet"},
        depends_on=(nic.id, avset.id),
    )
    return [
        Resource(ResourceKind.RESOURCE_GROUP, "myResourceGroup", {"location": "westus2"}),
        avset,
        pip,
        vnet,
        nic,
        vm,
    ]


@pytest.fixture
def vm_factory():
    """Build VM dicts in the shape returned by ProviderClient.get_vm."""
    return make_vm
