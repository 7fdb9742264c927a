"""Cloud provider capability used by the exporter, importer and rollback.

The migration core never talks to a management API directly. It depends on
the CloudProvider protocol below, one instance per subscription (source and
destination). Remote failures are reported with the exceptions in
dc_migration.client.exceptions: NotFoundError for missing resources and other
CloudError subclasses for everything else.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from dc_migration.client.exceptions import ConfigurationError
from dc_migration.config import SubscriptionConfig

if TYPE_CHECKING:
    from dc_migration.migration.models import (
        AffinityGroupDetails,
        CloudServiceDetails,
        Deployment,
        NetworkConfiguration,
        StorageAccountDetails,
        VirtualMachineDetails,
    )


class CopyStatus(str, Enum):
    """State of a server-side blob copy."""

    PENDING = "Pending"
    SUCCESS = "Success"
    ABORTED = "Aborted"
    FAILED = "Failed"
    INVALID = "Invalid"

    @property
    def is_terminal_failure(self) -> bool:
        return self in (CopyStatus.ABORTED, CopyStatus.FAILED, CopyStatus.INVALID)


class PostShutdownAction(str, Enum):
    STOPPED = "Stopped"
    STOPPED_DEALLOCATED = "StoppedDeallocated"


@dataclass
class SubscriptionCapacity:
    """Quota limits and current usage of a subscription."""

    max_hosted_services: int = 0
    current_hosted_services: int = 0
    max_storage_accounts: int = 0
    current_storage_accounts: int = 0
    max_core_count: int = 0
    current_core_count: int = 0
    max_virtual_network_sites: int = 0
    current_virtual_network_sites: int = 0
    max_dns_servers: int = 0
    current_dns_servers: int = 0
    max_local_network_sites: int = 0
    current_local_network_sites: int = 0


@dataclass
class ReservedIP:
    name: str
    address: str | None = None
    service_name: str | None = None
    location: str | None = None


@dataclass
class BlobProperties:
    """Copy state of a blob."""

    copy_status: CopyStatus | None = None
    copy_id: str | None = None
    bytes_copied: int | None = None
    total_bytes: int | None = None


@runtime_checkable
class CloudProvider(Protocol):
    """Management operations for one subscription."""

    # Affinity groups
    async def list_affinity_groups(self) -> list["AffinityGroupDetails"]: ...

    async def create_affinity_group(self, details: "AffinityGroupDetails") -> None: ...

    async def delete_affinity_group(self, name: str) -> None: ...

    # Storage accounts
    async def list_storage_accounts(self) -> list["StorageAccountDetails"]: ...

    async def check_storage_name_availability(self, name: str) -> bool: ...

    async def create_storage_account(self, details: "StorageAccountDetails") -> None: ...

    async def delete_storage_account(self, name: str) -> None: ...

    # Cloud services, deployments and virtual machines
    async def list_cloud_services(self) -> list["CloudServiceDetails"]: ...

    async def check_service_name_availability(self, name: str) -> bool: ...

    async def create_cloud_service(self, details: "CloudServiceDetails") -> None: ...

    async def delete_cloud_service(self, name: str) -> None:
        """Delete a cloud service together with its deployment and virtual machines."""
        ...

    async def get_deployment(self, service_name: str, slot: str) -> "Deployment": ...

    async def create_deployment(
        self, service_name: str, deployment: "Deployment", first_vm: "VirtualMachineDetails"
    ) -> None: ...

    async def get_virtual_machine(
        self, service_name: str, deployment_name: str, role_name: str
    ) -> "VirtualMachineDetails": ...

    async def create_virtual_machine(
        self, service_name: str, deployment_name: str, vm: "VirtualMachineDetails"
    ) -> None: ...

    async def delete_virtual_machine(
        self, service_name: str, deployment_name: str, role_name: str
    ) -> None: ...

    async def get_role_status(
        self, service_name: str, deployment_name: str, role_name: str
    ) -> str: ...

    async def shutdown_virtual_machine(
        self,
        service_name: str,
        deployment_name: str,
        role_name: str,
        post_shutdown_action: PostShutdownAction,
    ) -> None: ...

    # Network and subscription
    async def get_network_configuration(self) -> "NetworkConfiguration": ...

    async def set_network_configuration(self, configuration: "NetworkConfiguration") -> None: ...

    async def list_reserved_ips(self) -> list[ReservedIP]: ...

    async def list_role_sizes(self) -> dict[str, int]:
        """Map role size names to their core counts."""
        ...

    async def get_subscription_capacity(self) -> SubscriptionCapacity: ...

    # Blobs
    async def blob_exists(self, account: str, container: str, blob: str) -> bool: ...

    async def get_blob_properties(self, account: str, container: str, blob: str) -> BlobProperties: ...

    async def abort_blob_copy(self, account: str, container: str, blob: str, copy_id: str) -> None: ...

    async def delete_blob(self, account: str, container: str, blob: str) -> None: ...

    async def create_container_if_not_exists(self, account: str, container: str) -> bool: ...

    async def generate_read_sas(
        self, account: str, container: str, blob: str, start: datetime, expiry: datetime
    ) -> str:
        """Build a read-only, time-boxed URL for a blob."""
        ...

    async def start_blob_copy(
        self, account: str, container: str, blob: str, source_url: str
    ) -> str:
        """Start a server-side copy into the blob and return the copy id."""
        ...


def create_provider(settings: SubscriptionConfig) -> CloudProvider:
    """Create the provider configured for a subscription.

    Args:
        settings: Subscription configuration

    Returns:
        CloudProvider for the subscription

    Raises:
        ConfigurationError: If the provider kind is unknown or its state is unusable
    """
    kind = settings.provider.lower()

    if kind == "memory":
        # Imported here: the memory provider imports this module for its value types
        from dc_migration.client.memory import InMemoryCloudProvider

        if settings.state_file:
            return InMemoryCloudProvider.from_state_file(
                settings.state_file, subscription_id=settings.subscription_id
            )
        return InMemoryCloudProvider(subscription_id=settings.subscription_id)

    raise ConfigurationError(
        f"Unknown cloud provider '{settings.provider}' for subscription {settings.subscription_id}"
    )
