"""Azure implementation of the provider client.

Maps each resource kind to the Azure management SDK:
- resource_group    -> ResourceManagementClient.resource_groups
- availability_set  -> ComputeManagementClient.availability_sets
- managed_disk      -> ComputeManagementClient.disks
- virtual_machine   -> ComputeManagementClient.virtual_machines
- public_ip         -> NetworkManagementClient.public_ip_addresses
- virtual_network   -> NetworkManagementClient.virtual_networks
- network_interface -> NetworkManagementClient.network_interfaces

Philosophy:
- Uses Azure SDK (azure-mgmt-*) rather than shelling out
- No credentials in code (uses DefaultAzureCredential)
- Secrets such as VM admin passwords are read from environment variables
  named in the declaration, never from the declaration itself
- Every SDK failure surfaces as RemoteError

Public API:
    AzureProviderClient: ProviderClient backed by the Azure management SDK
"""

import logging
import os
from collections.abc import Callable
from typing import Any, TypeVar

from azure.core.exceptions import (
    AzureError,
    ClientAuthenticationError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
)
from azure.identity import DefaultAzureCredential
from azure.mgmt.compute import ComputeManagementClient
from azure.mgmt.compute.models import DataDisk
from azure.mgmt.network import NetworkManagementClient
from azure.mgmt.resource import ResourceManagementClient

from azdeploy.models import RemoteError, Resource, ResourceId, ResourceKind

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_STATUS_CODES = {408, 429, 500, 502, 503, 504}

# Windows Server 2012 R2 Datacenter marketplace image
DEFAULT_IMAGE = {
    "publisher": "MicrosoftWindowsServer",
    "offer": "WindowsServer",
    "sku": "2012-R2-Datacenter",
    "version": "latest",
}
DEFAULT_VM_SIZE = "Standard_DS2_v2"


def _value(obj: Any) -> Any:
    """Unwrap SDK enum values."""
    return getattr(obj, "value", obj)


def _as_list(value: Any) -> list:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


class AzureProviderClient:
    """ProviderClient backed by the Azure management SDK.

    Example:
        >>> provider = AzureProviderClient(subscription_id="...")
        >>> provider.create_or_update(resource)
    """

    def __init__(
        self,
        subscription_id: str,
        credential: Any | None = None,
        resource_client: Any | None = None,
        compute_client: Any | None = None,
        network_client: Any | None = None,
    ):
        """Initialize the provider.

        Args:
            subscription_id: Target subscription
            credential: Azure credential (DefaultAzureCredential if omitted)
            resource_client: Preconfigured ResourceManagementClient (optional)
            compute_client: Preconfigured ComputeManagementClient (optional)
            network_client: Preconfigured NetworkManagementClient (optional)
        """
        if not subscription_id:
            raise ValueError("subscription_id is required")

        self.subscription_id = subscription_id
        if credential is None and not (resource_client and compute_client and network_client):
            credential = DefaultAzureCredential()

        self.resource_client = resource_client or ResourceManagementClient(credential, subscription_id)
        self.compute_client = compute_client or ComputeManagementClient(credential, subscription_id)
        self.network_client = network_client or NetworkManagementClient(credential, subscription_id)

    # ------------------------------------------------------------------
    # Error handling
    # ------------------------------------------------------------------

    @staticmethod
    def _call(fn: Callable[[], T], resource_id: ResourceId | None, action: str) -> T:
        """Run an SDK call, translating failures into RemoteError."""
        try:
            return fn()
        except ClientAuthenticationError as e:
            raise RemoteError(f"Authentication failed during {action}: {e.message}", resource_id) from e
        except HttpResponseError as e:
            transient = e.status_code in TRANSIENT_STATUS_CODES
            raise RemoteError(f"{action} failed: {e.message}", resource_id, transient=transient) from e
        except ServiceRequestError as e:
            raise RemoteError(f"{action} failed: {e}", resource_id, transient=True) from e
        except AzureError as e:
            # Dropped connections and other transport failures
            raise RemoteError(f"{action} failed: {e}", resource_id, transient=True) from e

    # ------------------------------------------------------------------
    # Resource ids
    # ------------------------------------------------------------------

    def _group_id(self, resource_group: str) -> str:
        return f"/subscriptions/{self.subscription_id}/resourceGroups/{resource_group}"

    def _arm_id(self, resource_group: str, provider: str, type_name: str, name: str) -> str:
        return f"{self._group_id(resource_group)}/providers/{provider}/{type_name}/{name}"

    def subnet_id(self, resource_group: str, network: str, subnet: str) -> str:
        vnet_id = self._arm_id(resource_group, "Microsoft.Network", "virtualNetworks", network)
        return f"{vnet_id}/subnets/{subnet}"

    def public_ip_id(self, resource_group: str, name: str) -> str:
        return self._arm_id(resource_group, "Microsoft.Network", "publicIPAddresses", name)

    def nic_id(self, resource_group: str, name: str) -> str:
        return self._arm_id(resource_group, "Microsoft.Network", "networkInterfaces", name)

    def availability_set_id(self, resource_group: str, name: str) -> str:
        return self._arm_id(resource_group, "Microsoft.Compute", "availabilitySets", name)

    def disk_id(self, resource_group: str, name: str) -> str:
        return self._arm_id(resource_group, "Microsoft.Compute", "disks", name)

    @staticmethod
    def _resource_group(resource: Resource) -> str:
        if resource.kind == ResourceKind.RESOURCE_GROUP:
            return resource.name
        group = resource.get("resource_group")
        if not group:
            raise RemoteError("no resource_group property set", resource.id)
        return group

    @staticmethod
    def _location(resource: Resource) -> str:
        location = resource.get("location")
        if not location:
            raise RemoteError("no location property set", resource.id)
        return location

    # ------------------------------------------------------------------
    # Request bodies
    # ------------------------------------------------------------------

    def build_parameters(self, resource: Resource) -> dict[str, Any]:
        """Translate declared properties into an SDK request body."""
        builders: dict[ResourceKind, Callable[[Resource], dict[str, Any]]] = {
            ResourceKind.RESOURCE_GROUP: self._resource_group_body,
            ResourceKind.AVAILABILITY_SET: self._availability_set_body,
            ResourceKind.PUBLIC_IP: self._public_ip_body,
            ResourceKind.VIRTUAL_NETWORK: self._virtual_network_body,
            ResourceKind.NETWORK_INTERFACE: self._network_interface_body,
            ResourceKind.VIRTUAL_MACHINE: self._virtual_machine_body,
            ResourceKind.MANAGED_DISK: self._managed_disk_body,
        }
        body = builders[resource.kind](resource)
        tags = resource.get("tags")
        if tags:
            body["tags"] = dict(tags)
        return body

    def _resource_group_body(self, resource: Resource) -> dict[str, Any]:
        return {"location": self._location(resource)}

    def _availability_set_body(self, resource: Resource) -> dict[str, Any]:
        # "Aligned" is the managed-disk SKU
        sku = resource.get("sku", "Aligned")
        if sku.lower() == "managed":
            sku = "Aligned"
        return {
            "location": self._location(resource),
            "sku": {"name": sku},
            "platform_fault_domain_count": resource.get("fault_domains", 2),
            "platform_update_domain_count": resource.get("update_domains", 5),
        }

    def _public_ip_body(self, resource: Resource) -> dict[str, Any]:
        return {
            "location": self._location(resource),
            "sku": {"name": resource.get("sku", "Basic")},
            "public_ip_allocation_method": resource.get("allocation", "Dynamic"),
        }

    def _virtual_network_body(self, resource: Resource) -> dict[str, Any]:
        address_space = _as_list(resource.get("address_space", "10.0.0.0/16"))
        subnets = resource.get("subnets") or {}
        if isinstance(subnets, dict):
            subnet_list = [{"name": k, "address_prefix": v} for k, v in subnets.items()]
        else:
            subnet_list = [
                {"name": s["name"], "address_prefix": s["address_prefix"]} for s in subnets
            ]
        return {
            "location": self._location(resource),
            "address_space": {"address_prefixes": address_space},
            "subnets": subnet_list,
        }

    def _network_interface_body(self, resource: Resource) -> dict[str, Any]:
        group = self._resource_group(resource)
        network = resource.get("network")
        subnet = resource.get("subnet")
        if not network or not subnet:
            raise RemoteError("network_interface requires 'network' and 'subnet'", resource.id)

        ip_config: dict[str, Any] = {
            "name": resource.get("ip_config_name", f"{resource.name}-ipconfig"),
            "subnet": {"id": self.subnet_id(group, network, subnet)},
            "private_ip_allocation_method": resource.get("private_ip_allocation", "Dynamic"),
        }
        public_ip = resource.get("public_ip")
        if public_ip:
            ip_config["public_ip_address"] = {"id": self.public_ip_id(group, public_ip)}

        return {"location": self._location(resource), "ip_configurations": [ip_config]}

    def _virtual_machine_body(self, resource: Resource) -> dict[str, Any]:
        group = self._resource_group(resource)
        nics = _as_list(resource.get("network_interfaces") or resource.get("network_interface"))
        if not nics:
            raise RemoteError("virtual_machine requires 'network_interface'", resource.id)

        storage_profile: dict[str, Any] = {}
        os_disk = resource.get("os_disk")
        if os_disk:
            # Specialized OS disk instead of a marketplace image
            storage_profile["os_disk"] = {
                "os_type": os_disk.get("os_type", "Windows"),
                "create_option": "Attach",
                "managed_disk": {"id": self.disk_id(group, os_disk["managed_disk"])},
            }
        else:
            image = {**DEFAULT_IMAGE, **dict(resource.get("image") or {})}
            storage_profile["image_reference"] = image

        data_disks = []
        for lun, disk in enumerate(_as_list(resource.get("data_disks"))):
            if isinstance(disk, str):
                disk = {"managed_disk": disk}
            entry: dict[str, Any] = {
                "lun": disk.get("lun", lun),
                "caching": disk.get("caching", "ReadWrite"),
            }
            if "managed_disk" in disk:
                entry["create_option"] = "Attach"
                entry["managed_disk"] = {"id": self.disk_id(group, disk["managed_disk"])}
            else:
                entry["create_option"] = "Empty"
                entry["disk_size_gb"] = disk.get("size_gb", 32)
            data_disks.append(entry)
        if data_disks:
            storage_profile["data_disks"] = data_disks

        body: dict[str, Any] = {
            "location": self._location(resource),
            "hardware_profile": {"vm_size": resource.get("size", DEFAULT_VM_SIZE)},
            "storage_profile": storage_profile,
            "network_profile": {
                "network_interfaces": [
                    {"id": self.nic_id(group, nic), "primary": i == 0} for i, nic in enumerate(nics)
                ]
            },
        }

        if not os_disk:
            body["os_profile"] = self._os_profile(resource)

        availability_set = resource.get("availability_set")
        if availability_set:
            body["availability_set"] = {"id": self.availability_set_id(group, availability_set)}
        return body

    def _os_profile(self, resource: Resource) -> dict[str, Any]:
        profile: dict[str, Any] = {
            "computer_name": resource.get("computer_name", resource.name),
            "admin_username": resource.get("admin_username", "azureuser"),
        }

        ssh_key = resource.get("ssh_public_key")
        if ssh_key:
            username = profile["admin_username"]
            profile["linux_configuration"] = {
                "disable_password_authentication": True,
                "ssh": {
                    "public_keys": [
                        {"path": f"/home/{username}/.ssh/authorized_keys", "key_data": ssh_key}
                    ]
                },
            }
            return profile

        env_var = resource.get("admin_password_env", "AZDEPLOY_ADMIN_PASSWORD")
        password = os.environ.get(env_var)
        if not password:
            raise RemoteError(
                f"admin password not provided; set the {env_var} environment variable",
                resource.id,
            )
        profile["admin_password"] = password
        profile["windows_configuration"] = {
            "provision_vm_agent": True,
            "enable_automatic_updates": resource.get("automatic_updates", True),
        }
        return profile

    def _managed_disk_body(self, resource: Resource) -> dict[str, Any]:
        source_uri = resource.get("source_uri")
        if source_uri:
            creation_data: dict[str, Any] = {"create_option": "Import", "source_uri": source_uri}
        else:
            creation_data = {"create_option": "Empty"}

        body: dict[str, Any] = {
            "location": self._location(resource),
            "sku": {"name": resource.get("sku", "Premium_LRS")},
            "disk_size_gb": resource.get("size_gb", 128),
            "creation_data": creation_data,
        }
        if resource.get("os_type"):
            body["os_type"] = resource.get("os_type")
        return body

    # ------------------------------------------------------------------
    # ProviderClient
    # ------------------------------------------------------------------

    def _operations(self, kind: ResourceKind) -> Any:
        return {
            ResourceKind.AVAILABILITY_SET: self.compute_client.availability_sets,
            ResourceKind.MANAGED_DISK: self.compute_client.disks,
            ResourceKind.VIRTUAL_MACHINE: self.compute_client.virtual_machines,
            ResourceKind.PUBLIC_IP: self.network_client.public_ip_addresses,
            ResourceKind.VIRTUAL_NETWORK: self.network_client.virtual_networks,
            ResourceKind.NETWORK_INTERFACE: self.network_client.network_interfaces,
        }[kind]

    def create_or_update(self, resource: Resource) -> dict[str, Any]:
        params = self.build_parameters(resource)
        logger.info(f"Creating or updating {resource.id}...")

        if resource.kind == ResourceKind.RESOURCE_GROUP:
            result = self._call(
                lambda: self.resource_client.resource_groups.create_or_update(resource.name, params),
                resource.id,
                "create resource group",
            )
        elif resource.kind == ResourceKind.AVAILABILITY_SET:
            group = self._resource_group(resource)
            result = self._call(
                lambda: self.compute_client.availability_sets.create_or_update(
                    group, resource.name, params
                ),
                resource.id,
                "create availability set",
            )
        else:
            group = self._resource_group(resource)
            ops = self._operations(resource.kind)
            result = self._call(
                lambda: ops.begin_create_or_update(group, resource.name, params).result(),
                resource.id,
                f"create {resource.kind.value}",
            )

        return {"id": getattr(result, "id", None), "name": getattr(result, "name", resource.name)}

    def get(self, resource: Resource) -> dict[str, Any] | None:
        def fetch() -> Any:
            if resource.kind == ResourceKind.RESOURCE_GROUP:
                return self.resource_client.resource_groups.get(resource.name)
            return self._operations(resource.kind).get(self._resource_group(resource), resource.name)

        try:
            result = self._call(fetch, resource.id, f"get {resource.kind.value}")
        except RemoteError as e:
            if isinstance(e.__cause__, ResourceNotFoundError):
                return None
            raise
        return result.as_dict() if hasattr(result, "as_dict") else dict(result)

    def delete(self, resource: Resource) -> bool:
        def remove() -> None:
            if resource.kind == ResourceKind.RESOURCE_GROUP:
                self.resource_client.resource_groups.begin_delete(resource.name).result()
            elif resource.kind == ResourceKind.AVAILABILITY_SET:
                self.compute_client.availability_sets.delete(
                    self._resource_group(resource), resource.name
                )
            else:
                self._operations(resource.kind).begin_delete(
                    self._resource_group(resource), resource.name
                ).result()

        logger.info(f"Deleting {resource.id}...")
        try:
            self._call(remove, resource.id, f"delete {resource.kind.value}")
        except RemoteError as e:
            if isinstance(e.__cause__, ResourceNotFoundError):
                logger.debug(f"{resource.id} not found, treating as deleted")
                return False
            raise
        return True

    # ------------------------------------------------------------------
    # VM operations
    # ------------------------------------------------------------------

    def get_vm(self, resource_group: str, vm_name: str) -> dict[str, Any] | None:
        try:
            vm = self._call(
                lambda: self.compute_client.virtual_machines.get(
                    resource_group, vm_name, expand="instanceView"
                ),
                None,
                f"get VM {vm_name}",
            )
        except RemoteError as e:
            if isinstance(e.__cause__, ResourceNotFoundError):
                return None
            raise
        return self._normalize_vm(vm)

    @staticmethod
    def _statuses(items: Any) -> list[dict[str, Any]]:
        return [
            {"code": s.code, "level": _value(s.level), "display_status": s.display_status}
            for s in (items or [])
        ]

    @classmethod
    def _normalize_vm(cls, vm: Any) -> dict[str, Any]:
        storage = vm.storage_profile
        image = storage.image_reference if storage else None
        os_disk = storage.os_disk if storage else None
        os_profile = vm.os_profile
        windows = os_profile.windows_configuration if os_profile else None
        instance_view = vm.instance_view
        vm_agent = instance_view.vm_agent if instance_view else None

        return {
            "id": vm.id,
            "name": vm.name,
            "type": vm.type,
            "location": vm.location,
            "vm_size": _value(vm.hardware_profile.vm_size) if vm.hardware_profile else None,
            "provisioning_state": vm.provisioning_state,
            "image": {
                "publisher": image.publisher,
                "offer": image.offer,
                "sku": image.sku,
                "version": image.version,
            }
            if image
            else None,
            "os_disk": {
                "name": os_disk.name,
                "os_type": _value(os_disk.os_type),
                "create_option": _value(os_disk.create_option),
                "caching": _value(os_disk.caching),
            }
            if os_disk
            else None,
            "computer_name": os_profile.computer_name if os_profile else None,
            "admin_username": os_profile.admin_username if os_profile else None,
            "provision_vm_agent": windows.provision_vm_agent if windows else None,
            "enable_automatic_updates": windows.enable_automatic_updates if windows else None,
            "network_interface_ids": [
                nic.id for nic in (vm.network_profile.network_interfaces or [])
            ]
            if vm.network_profile
            else [],
            "data_disks": [
                {
                    "name": disk.name,
                    "lun": disk.lun,
                    "size_gb": disk.disk_size_gb,
                    "caching": _value(disk.caching),
                }
                for disk in ((storage.data_disks if storage else None) or [])
            ],
            "vm_agent": {
                "version": vm_agent.vm_agent_version,
                "statuses": cls._statuses(vm_agent.statuses),
            }
            if vm_agent
            else None,
            "disk_statuses": [
                {"name": disk.name, "statuses": cls._statuses(disk.statuses)}
                for disk in ((instance_view.disks if instance_view else None) or [])
            ],
            "statuses": cls._statuses(instance_view.statuses if instance_view else None),
        }

    def _vm_poll(self, method: str, resource_group: str, vm_name: str) -> None:
        ops = self.compute_client.virtual_machines
        self._call(
            lambda: getattr(ops, method)(resource_group, vm_name).result(),
            None,
            f"{method.removeprefix('begin_').replace('_', ' ')} VM {vm_name}",
        )

    def power_off_vm(self, resource_group: str, vm_name: str) -> None:
        self._vm_poll("begin_power_off", resource_group, vm_name)

    def start_vm(self, resource_group: str, vm_name: str) -> None:
        self._vm_poll("begin_start", resource_group, vm_name)

    def deallocate_vm(self, resource_group: str, vm_name: str) -> None:
        self._vm_poll("begin_deallocate", resource_group, vm_name)

    def resize_vm(self, resource_group: str, vm_name: str, vm_size: str) -> None:
        ops = self.compute_client.virtual_machines
        self._call(
            lambda: ops.begin_update(
                resource_group, vm_name, {"hardware_profile": {"vm_size": vm_size}}
            ).result(),
            None,
            f"resize VM {vm_name}",
        )

    def attach_data_disk(
        self, resource_group: str, vm_name: str, size_gb: int, lun: int, caching: str
    ) -> None:
        ops = self.compute_client.virtual_machines

        def attach() -> None:
            vm = ops.get(resource_group, vm_name)
            vm.storage_profile.data_disks.append(
                DataDisk(lun=lun, create_option="Empty", disk_size_gb=size_gb, caching=caching)
            )
            ops.begin_create_or_update(resource_group, vm_name, vm).result()

        self._call(attach, None, f"attach data disk to VM {vm_name}")
