"""VM lifecycle control module.

This module provides lifecycle operations on a single, already-created VM:
- Inspect hardware, storage, network and instance view
- Stop (power off) and start
- Resize
- Attach a new empty data disk
- Deallocate (release compute, keep disks)

Every operation is idempotent where the target state already holds, and a
failed operation leaves the VM as it was.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from azdeploy.models import PowerState, RemoteError
from azdeploy.provider import ProviderClient

logger = logging.getLogger(__name__)

MAX_DATA_DISK_LUN = 63
CACHING_TYPES = ("None", "ReadOnly", "ReadWrite")


class VMLifecycleControlError(Exception):
    """Raised when VM lifecycle control arguments are invalid."""

    pass


@dataclass
class LifecycleResult:
    """Result from a lifecycle operation."""

    vm_name: str
    success: bool
    message: str
    operation: str  # 'stop', 'start', 'resize', 'attach-disk', 'deallocate'
    changed: bool = False

    def __repr__(self) -> str:
        status = "SUCCESS" if self.success else "FAILED"
        return f"[{status}] {self.vm_name}: {self.message}"


@dataclass
class VMInfo:
    """Snapshot of a VM as reported by the provider."""

    name: str
    resource_group: str
    vm_size: str | None
    power_state: PowerState
    provisioning_state: str | None = None
    location: str | None = None
    id: str | None = None
    image: dict[str, Any] | None = None
    os_disk: dict[str, Any] | None = None
    computer_name: str | None = None
    admin_username: str | None = None
    vm_type: str | None = None
    provision_vm_agent: bool | None = None
    enable_automatic_updates: bool | None = None
    network_interface_ids: list[str] = field(default_factory=list)
    data_disks: list[dict[str, Any]] = field(default_factory=list)
    statuses: list[dict[str, Any]] = field(default_factory=list)
    vm_agent: dict[str, Any] | None = None
    disk_statuses: list[dict[str, Any]] = field(default_factory=list)

    @property
    def used_luns(self) -> set[int]:
        return {d["lun"] for d in self.data_disks if d.get("lun") is not None}

    @classmethod
    def from_provider(cls, resource_group: str, data: dict[str, Any]) -> "VMInfo":
        statuses = data.get("statuses") or []
        power_code = next(
            (s.get("code") for s in statuses if str(s.get("code", "")).startswith("PowerState/")),
            None,
        )
        return cls(
            name=data["name"],
            resource_group=resource_group,
            vm_size=data.get("vm_size"),
            power_state=PowerState.from_status_code(power_code),
            provisioning_state=data.get("provisioning_state"),
            location=data.get("location"),
            id=data.get("id"),
            image=data.get("image"),
            os_disk=data.get("os_disk"),
            computer_name=data.get("computer_name"),
            admin_username=data.get("admin_username"),
            vm_type=data.get("type"),
            provision_vm_agent=data.get("provision_vm_agent"),
            enable_automatic_updates=data.get("enable_automatic_updates"),
            network_interface_ids=list(data.get("network_interface_ids") or []),
            data_disks=list(data.get("data_disks") or []),
            statuses=list(statuses),
            vm_agent=data.get("vm_agent"),
            disk_statuses=list(data.get("disk_statuses") or []),
        )


class VMLifecycleController:
    """Control lifecycle operations of one VM through a provider client."""

    def __init__(self, provider: ProviderClient):
        self.provider = provider

    def get_vm_info(self, vm_name: str, resource_group: str) -> VMInfo | None:
        """Get VM details, or None if the VM does not exist.

        Raises:
            RemoteError: If the provider call fails
        """
        data = self.provider.get_vm(resource_group, vm_name)
        if data is None:
            return None
        return VMInfo.from_provider(resource_group, data)

    def _run(
        self,
        operation: str,
        vm_name: str,
        resource_group: str,
        action: Callable[[], None],
        message: str,
    ) -> LifecycleResult:
        try:
            action()
        except RemoteError as e:
            error_msg = f"Failed to {operation}: {e}"
            logger.error(f"VM {vm_name}: {error_msg}")
            return LifecycleResult(vm_name=vm_name, success=False, message=error_msg, operation=operation)

        logger.info(f"{message}: {vm_name}")
        return LifecycleResult(
            vm_name=vm_name, success=True, message=message, operation=operation, changed=True
        )

    def _lookup(self, vm_name: str, resource_group: str, operation: str) -> VMInfo | LifecycleResult:
        try:
            vm_info = self.get_vm_info(vm_name, resource_group)
        except RemoteError as e:
            logger.error(f"VM {vm_name}: {e}")
            return LifecycleResult(
                vm_name=vm_name, success=False, message=f"Failed to get VM: {e}", operation=operation
            )
        if vm_info is None:
            return LifecycleResult(vm_name=vm_name, success=False, message="VM not found", operation=operation)
        return vm_info

    def stop_vm(self, vm_name: str, resource_group: str) -> LifecycleResult:
        """Power off a VM. Compute stays reserved (and billed)."""
        logger.info(f"Stopping VM '{vm_name}'")
        vm_info = self._lookup(vm_name, resource_group, "stop")
        if isinstance(vm_info, LifecycleResult):
            return vm_info

        if vm_info.power_state in (PowerState.STOPPED, PowerState.DEALLOCATED):
            return LifecycleResult(
                vm_name=vm_name,
                success=True,
                message=f"VM already {vm_info.power_state.value}",
                operation="stop",
            )

        return self._run(
            "stop",
            vm_name,
            resource_group,
            lambda: self.provider.power_off_vm(resource_group, vm_name),
            "VM stopped successfully",
        )

    def start_vm(self, vm_name: str, resource_group: str) -> LifecycleResult:
        """Start a stopped or deallocated VM."""
        logger.info(f"Starting VM '{vm_name}'")
        vm_info = self._lookup(vm_name, resource_group, "start")
        if isinstance(vm_info, LifecycleResult):
            return vm_info

        if vm_info.power_state == PowerState.RUNNING:
            return LifecycleResult(
                vm_name=vm_name, success=True, message="VM already running", operation="start"
            )

        return self._run(
            "start",
            vm_name,
            resource_group,
            lambda: self.provider.start_vm(resource_group, vm_name),
            "VM started successfully",
        )

    def resize_vm(self, vm_name: str, resource_group: str, new_size: str) -> LifecycleResult:
        """Change the VM size.

        Rejected while the VM is starting, stopping or deallocating.
        """
        if not new_size:
            raise VMLifecycleControlError("new_size is required")

        logger.info(f"Resizing VM '{vm_name}' to {new_size}")
        vm_info = self._lookup(vm_name, resource_group, "resize")
        if isinstance(vm_info, LifecycleResult):
            return vm_info

        if vm_info.power_state.in_transition:
            return LifecycleResult(
                vm_name=vm_name,
                success=False,
                message=f"Cannot resize while VM is {vm_info.power_state.value}",
                operation="resize",
            )

        if vm_info.vm_size == new_size:
            return LifecycleResult(
                vm_name=vm_name, success=True, message=f"VM already {new_size}", operation="resize"
            )

        return self._run(
            "resize",
            vm_name,
            resource_group,
            lambda: self.provider.resize_vm(resource_group, vm_name, new_size),
            f"VM resized from {vm_info.vm_size} to {new_size}",
        )

    def attach_data_disk(
        self,
        vm_name: str,
        resource_group: str,
        size_gb: int,
        lun: int | None = None,
        caching: str = "ReadWrite",
    ) -> LifecycleResult:
        """Attach a new empty managed data disk.

        Args:
            vm_name: VM name
            resource_group: Resource group name
            size_gb: Disk size in GB
            lun: Logical unit number (next free LUN if omitted)
            caching: None, ReadOnly or ReadWrite

        Raises:
            VMLifecycleControlError: If arguments are invalid
        """
        if size_gb <= 0:
            raise VMLifecycleControlError(f"size_gb must be positive, got {size_gb}")
        if caching not in CACHING_TYPES:
            raise VMLifecycleControlError(
                f"Invalid caching '{caching}'. Must be one of: {', '.join(CACHING_TYPES)}"
            )
        if lun is not None and not 0 <= lun <= MAX_DATA_DISK_LUN:
            raise VMLifecycleControlError(f"lun must be between 0 and {MAX_DATA_DISK_LUN}")

        vm_info = self._lookup(vm_name, resource_group, "attach-disk")
        if isinstance(vm_info, LifecycleResult):
            return vm_info

        used = vm_info.used_luns
        if lun is None:
            free = [n for n in range(MAX_DATA_DISK_LUN + 1) if n not in used]
            if not free:
                return LifecycleResult(
                    vm_name=vm_name, success=False, message="No free LUN available", operation="attach-disk"
                )
            lun = free[0]
        elif lun in used:
            return LifecycleResult(
                vm_name=vm_name, success=False, message=f"LUN {lun} already in use", operation="attach-disk"
            )

        logger.info(f"Attaching {size_gb}GB data disk to VM '{vm_name}' at LUN {lun}")
        chosen_lun = lun
        return self._run(
            "attach-disk",
            vm_name,
            resource_group,
            lambda: self.provider.attach_data_disk(resource_group, vm_name, size_gb, chosen_lun, caching),
            f"Attached {size_gb}GB data disk at LUN {chosen_lun}",
        )

    def deallocate_vm(self, vm_name: str, resource_group: str) -> LifecycleResult:
        """Deallocate a VM from any state. Disks are preserved."""
        logger.info(f"Deallocating VM '{vm_name}'")
        vm_info = self._lookup(vm_name, resource_group, "deallocate")
        if isinstance(vm_info, LifecycleResult):
            return vm_info

        if vm_info.power_state == PowerState.DEALLOCATED:
            return LifecycleResult(
                vm_name=vm_name, success=True, message="VM already deallocated", operation="deallocate"
            )

        return self._run(
            "deallocate",
            vm_name,
            resource_group,
            lambda: self.provider.deallocate_vm(resource_group, vm_name),
            "VM deallocated successfully",
        )
