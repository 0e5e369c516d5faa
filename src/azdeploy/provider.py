"""Provider client contract.

The orchestrator treats the cloud provider as an opaque, potentially slow,
potentially failing remote service. Anything implementing ProviderClient can
be driven by the executors and the VM lifecycle controller.

Contract:
- create_or_update converges a resource to its declared properties and is
  safe to repeat
- delete returns False when the resource is already absent (not an error)
- every failure is raised as RemoteError
"""

from typing import Any, Protocol, runtime_checkable

from azdeploy.models import Resource


@runtime_checkable
class ProviderClient(Protocol):
    """Operations the orchestrator needs from a cloud provider."""

    def create_or_update(self, resource: Resource) -> dict[str, Any]:
        """Converge the remote resource to the declared properties."""
        ...

    def get(self, resource: Resource) -> dict[str, Any] | None:
        """Fetch the remote resource, or None when it does not exist."""
        ...

    def delete(self, resource: Resource) -> bool:
        """Delete the remote resource. Returns False if it was already absent."""
        ...

    def get_vm(self, resource_group: str, vm_name: str) -> dict[str, Any] | None:
        """Fetch a VM with its instance view, or None when it does not exist."""
        ...

    def power_off_vm(self, resource_group: str, vm_name: str) -> None: ...

    def start_vm(self, resource_group: str, vm_name: str) -> None: ...

    def resize_vm(self, resource_group: str, vm_name: str, vm_size: str) -> None: ...

    def attach_data_disk(
        self, resource_group: str, vm_name: str, size_gb: int, lun: int, caching: str
    ) -> None: ...

    def deallocate_vm(self, resource_group: str, vm_name: str) -> None: ...
