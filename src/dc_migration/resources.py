"""Resource types handled by the migration and their per-type settings.

The registry records the mapping-document section name and default
destination name ceiling of each type. The name mapping registry and the
configuration defaults are built from it.
"""

from dataclasses import dataclass
from enum import Enum


class ResourceType(str, Enum):
    """Closed set of resource types handled by the migration."""

    DATA_CENTER = "DataCenter"
    AFFINITY_GROUP = "AffinityGroup"
    STORAGE_ACCOUNT = "StorageAccount"
    CLOUD_SERVICE = "CloudService"
    NETWORK_CONFIGURATION = "NetworkConfiguration"
    DEPLOYMENT = "Deployment"
    VIRTUAL_MACHINE = "VirtualMachine"
    DNS_SERVER = "DnsServer"
    LOCAL_NETWORK_SITE = "LocalNetworkSite"
    VIRTUAL_NETWORK_SITE = "VirtualNetworkSite"
    BLOB = "Blob"
    OS_DISK = "OSDisk"
    HARD_DISK = "HardDisk"
    NONE = "None"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class ResourceTypeInfo:
    """Metadata for a resource type."""

    resource_type: ResourceType
    section: str  # Plural element name in the mapping document
    max_name_length: int | None = None
    top_level: bool = False  # Registered at the mapping registry root


MAX_AFFINITY_GROUPS = 256
PERSISTENT_VM_ROLE = "PersistentVMRole"
PRODUCTION_SLOT = "Production"

VIRTUAL_MACHINE_NAME_LENGTH = (3, 15)
STORAGE_ACCOUNT_NAME_LENGTH = (3, 24)

EXPORT_TOTAL_STAGES = 4
IMPORT_TOTAL_STAGES = 6
ROLLBACK_TOTAL_STAGES = 4

# Role status values reported by providers
VM_STATUS_STOPPED = "StoppedVM"
VM_STATUS_STOPPED_DEALLOCATED = "StoppedDeallocated"


RESOURCE_REGISTRY: dict[ResourceType, ResourceTypeInfo] = {
    ResourceType.AFFINITY_GROUP: ResourceTypeInfo(
        resource_type=ResourceType.AFFINITY_GROUP,
        section="AffinityGroups",
        max_name_length=63,
        top_level=True,
    ),
    ResourceType.STORAGE_ACCOUNT: ResourceTypeInfo(
        resource_type=ResourceType.STORAGE_ACCOUNT,
        section="StorageAccounts",
        max_name_length=23,
        top_level=True,
    ),
    ResourceType.BLOB: ResourceTypeInfo(
        resource_type=ResourceType.BLOB,
        section="Blobs",
    ),
    ResourceType.NETWORK_CONFIGURATION: ResourceTypeInfo(
        resource_type=ResourceType.NETWORK_CONFIGURATION,
        section="NetworkConfigurations",
        max_name_length=63,
    ),
    ResourceType.VIRTUAL_NETWORK_SITE: ResourceTypeInfo(
        resource_type=ResourceType.VIRTUAL_NETWORK_SITE,
        section="VirtualNetworkSites",
        max_name_length=63,
        top_level=True,
    ),
    ResourceType.DNS_SERVER: ResourceTypeInfo(
        resource_type=ResourceType.DNS_SERVER,
        section="DnsServers",
    ),
    ResourceType.LOCAL_NETWORK_SITE: ResourceTypeInfo(
        resource_type=ResourceType.LOCAL_NETWORK_SITE,
        section="LocalNetworkSites",
        max_name_length=63,
    ),
    ResourceType.CLOUD_SERVICE: ResourceTypeInfo(
        resource_type=ResourceType.CLOUD_SERVICE,
        section="CloudServices",
        max_name_length=63,
        top_level=True,
    ),
    ResourceType.DEPLOYMENT: ResourceTypeInfo(
        resource_type=ResourceType.DEPLOYMENT,
        section="Deployments",
        max_name_length=63,
    ),
    ResourceType.VIRTUAL_MACHINE: ResourceTypeInfo(
        resource_type=ResourceType.VIRTUAL_MACHINE,
        section="VirtualMachines",
        max_name_length=63,
    ),
    ResourceType.OS_DISK: ResourceTypeInfo(
        resource_type=ResourceType.OS_DISK,
        section="OSDisks",
    ),
    ResourceType.HARD_DISK: ResourceTypeInfo(
        resource_type=ResourceType.HARD_DISK,
        section="HardDisks",
    ),
}


def get_resource_info(resource_type: ResourceType) -> ResourceTypeInfo:
    """Get metadata for a resource type.

    Args:
        resource_type: Resource type

    Returns:
        ResourceTypeInfo for the type

    Raises:
        KeyError: If the type carries no registry entry (DataCenter, None)
    """
    return RESOURCE_REGISTRY[resource_type]


def get_top_level_types() -> list[ResourceType]:
    """Get the types registered at the root of the name mapping registry."""
    return [info.resource_type for info in RESOURCE_REGISTRY.values() if info.top_level]


def default_max_name_lengths() -> dict[ResourceType, int]:
    """Build the default per-type destination name ceilings."""
    return {
        info.resource_type: info.max_name_length
        for info in RESOURCE_REGISTRY.values()
        if info.max_name_length is not None
    }


def get_max_name_length(
    resource_type: ResourceType, overrides: dict[ResourceType, int] | None = None
) -> int | None:
    """Get the destination name ceiling for a type.

    Args:
        resource_type: Resource type
        overrides: Configured limits that take precedence over the defaults

    Returns:
        Maximum length, or None when the type is unbounded
    """
    if overrides and resource_type in overrides:
        return overrides[resource_type]
    info = RESOURCE_REGISTRY.get(resource_type)
    return info.max_name_length if info else None


def section_to_type(section: str) -> ResourceType:
    """Map a mapping-document section name back to its resource type.

    Raises:
        ValueError: If no resource type uses the section name
    """
    for info in RESOURCE_REGISTRY.values():
        if info.section == section:
            return info.resource_type
    raise ValueError(f"Unknown resource section: {section}")


def check_length(name: str, min_length: int, max_length: int) -> bool:
    """Check a name's length is within the inclusive bounds."""
    return min_length <= len(name) <= max_length
