"""azdeploy - declarative Azure VM deployments

Philosophy:
- Declare resources and dependencies; let the planner decide the order
- Idempotent apply, reverse-order destroy
- Report exactly what succeeded, failed and was never attempted
- No credentials in code (authentication is delegated to azure-identity)

A declaration file describes a resource group, network, NIC, VM and disks;
azdeploy applies it, manages the VM lifecycle and tears it down on request.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
