"""Pydantic models for the subscription document.

The exporter produces a Subscription tree, the importer consumes it and flips
the is_imported flags as resources are created in the destination, and the
rollback coordinator reads the same flags to decide what to undo. The tree is
persisted as indented JSON.
"""

from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlparse

from pydantic import BaseModel, Field

from dc_migration.client.exceptions import ValidationError
from dc_migration.resources import PRODUCTION_SLOT, ResourceType

BLOB_HOST_SUFFIX = "blob.core.windows.net"


class AffinityGroupDetails(BaseModel):
    name: str
    label: str | None = None
    description: str | None = None
    location: str | None = None


class AffinityGroup(BaseModel):
    details: AffinityGroupDetails
    is_imported: bool = False


class StorageAccountDetails(BaseModel):
    name: str
    label: str | None = None
    description: str | None = None
    location: str | None = None
    affinity_group: str | None = None
    geo_replication_enabled: bool = False
    account_type: str | None = None
    extended_properties: dict[str, str] = Field(default_factory=dict)


class StorageAccount(BaseModel):
    details: StorageAccountDetails
    is_imported: bool = False


class OSDisk(BaseModel):
    name: str | None = None
    media_link: str
    operating_system: str | None = None
    host_caching: str | None = None
    label: str | None = None


class DataDisk(BaseModel):
    name: str | None = None
    media_link: str
    lun: int = 0
    logical_disk_size_gb: int | None = None
    host_caching: str | None = None
    label: str | None = None


class VirtualMachineDetails(BaseModel):
    role_name: str
    role_size: str | None = None
    role_type: str | None = None
    os_disk: OSDisk | None = None
    data_disks: list[DataDisk] = Field(default_factory=list)
    availability_set_name: str | None = None
    configuration_sets: list[dict[str, Any]] = Field(default_factory=list)

    def disks(self) -> Iterator[tuple[ResourceType, OSDisk | DataDisk]]:
        """Iterate the OS disk followed by the data disks, tagged by disk type."""
        if self.os_disk is not None:
            yield ResourceType.OS_DISK, self.os_disk
        for disk in self.data_disks:
            yield ResourceType.HARD_DISK, disk


class VirtualMachine(BaseModel):
    details: VirtualMachineDetails
    is_imported: bool = False


class DeploymentDnsServer(BaseModel):
    """DNS server entry of a deployment's DNS settings."""

    name: str
    address: str | None = None


class Deployment(BaseModel):
    name: str
    label: str | None = None
    slot: str = PRODUCTION_SLOT
    dns_servers: list[DeploymentDnsServer] = Field(default_factory=list)
    reserved_ip_name: str | None = None
    load_balancers: list[dict[str, Any]] = Field(default_factory=list)
    virtual_network_name: str | None = None
    virtual_machines: list[VirtualMachine] = Field(default_factory=list)
    is_imported: bool = False


class CloudServiceDetails(BaseModel):
    service_name: str
    label: str | None = None
    description: str | None = None
    location: str | None = None
    affinity_group: str | None = None
    extended_properties: dict[str, str] = Field(default_factory=dict)


class CloudService(BaseModel):
    details: CloudServiceDetails
    deployment: Deployment | None = None
    is_imported: bool = False


class DnsServer(BaseModel):
    name: str
    ip_address: str | None = None


class LocalNetworkSite(BaseModel):
    name: str
    address_prefixes: list[str] = Field(default_factory=list)
    vpn_gateway_address: str | None = None


class Subnet(BaseModel):
    name: str
    address_prefix: str | None = None


class VirtualNetworkSite(BaseModel):
    name: str
    location: str | None = None
    affinity_group: str | None = None
    label: str | None = None
    address_prefixes: list[str] = Field(default_factory=list)
    subnets: list[Subnet] = Field(default_factory=list)
    dns_server_refs: list[str] = Field(default_factory=list)
    local_network_site_ref: str | None = None


class NetworkConfiguration(BaseModel):
    """Virtual network configuration, deployed as one document."""

    dns_servers: list[DnsServer] = Field(default_factory=list)
    local_network_sites: list[LocalNetworkSite] = Field(default_factory=list)
    virtual_network_sites: list[VirtualNetworkSite] = Field(default_factory=list)
    is_imported: bool = False

    def is_empty(self) -> bool:
        return not (self.dns_servers or self.local_network_sites or self.virtual_network_sites)


class DataCenter(BaseModel):
    location_name: str
    affinity_groups: list[AffinityGroup] = Field(default_factory=list)
    storage_accounts: list[StorageAccount] = Field(default_factory=list)
    cloud_services: list[CloudService] = Field(default_factory=list)
    network_configuration: NetworkConfiguration | None = None
    is_imported: bool = False

    def virtual_machines(self) -> Iterator[tuple[CloudService, Deployment, VirtualMachine]]:
        """Iterate every virtual machine together with its service and deployment."""
        for service in self.cloud_services:
            if service.deployment is None:
                continue
            for vm in service.deployment.virtual_machines:
                yield service, service.deployment, vm


class Subscription(BaseModel):
    name: str | None = None
    data_centers: list[DataCenter] = Field(default_factory=list)


@dataclass(frozen=True)
class BlobLocation:
    """Storage account, container and blob addressed by a disk media link."""

    account: str
    container: str
    blob: str

    @classmethod
    def from_media_link(cls, media_link: str) -> "BlobLocation":
        """Parse `https://{account}.blob.core.windows.net/{container}/.../{blob}`.

        The account is the host up to its first dot, the container is the first
        path segment and the blob is the last one.

        Raises:
            ValidationError: If the link has no host or fewer than two path segments
        """
        parsed = urlparse(media_link or "")
        segments = [segment for segment in parsed.path.split("/") if segment]
        if not parsed.scheme or not parsed.netloc or len(segments) < 2:
            raise ValidationError(f"Invalid disk media link: {media_link!r}")
        return cls(
            account=parsed.netloc.split(".")[0],
            container=segments[0],
            blob=segments[-1],
        )

    def to_media_link(self) -> str:
        return f"https://{self.account}.{BLOB_HOST_SUFFIX}/{self.container}/{self.blob}"
