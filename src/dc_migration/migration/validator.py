"""Pre-flight validation of an import (tier 0).

The validator renames the working copy of the subscription document to
destination names, then checks it against the destination subscription:
quota capacity, name collisions with resources that already exist there,
duplicate names after renaming, and the presence of the source disk blobs.
Any violation raises ValidationError before a single resource is created.
"""

from collections import Counter
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from dc_migration.client.exceptions import ValidationError
from dc_migration.client.provider import CloudProvider, ReservedIP, SubscriptionCapacity
from dc_migration.config import SubscriptionConfig
from dc_migration.migration.models import (
    BlobLocation,
    CloudService,
    DataCenter,
    NetworkConfiguration,
    Subscription,
)
from dc_migration.migration.naming import NameMappingRegistry
from dc_migration.resources import (
    MAX_AFFINITY_GROUPS,
    STORAGE_ACCOUNT_NAME_LENGTH,
    VIRTUAL_MACHINE_NAME_LENGTH,
    ResourceType,
    check_length,
)
from dc_migration.utils.logging import get_logger
from dc_migration.utils.retry import RetryPolicy

logger = get_logger(__name__)


def _duplicates(names: Iterable[str | None]) -> list[str]:
    """Names occurring more than once, compared case-insensitively."""
    counts = Counter(name.lower() for name in names if name)
    return sorted(name for name, count in counts.items() if count > 1)


def _collisions(names: Iterable[str], existing: Iterable[str]) -> list[str]:
    existing_keys = {name.lower() for name in existing}
    return sorted({name for name in names if name.lower() in existing_keys})


class ImportValidator:
    """Renames a working document to destination names and validates it."""

    def __init__(
        self,
        provider: CloudProvider,
        source_provider: CloudProvider,
        retry_policy: RetryPolicy,
        registry: NameMappingRegistry,
        settings: SubscriptionConfig,
    ):
        """Initialize import validator.

        Args:
            provider: Destination subscription provider
            source_provider: Source subscription provider (disk blob checks)
            retry_policy: Retry policy for every remote call
            registry: Name mapping used to rename the document
            settings: Destination subscription settings (target location)
        """
        self.provider = provider
        self.source_provider = source_provider
        self.retry_policy = retry_policy
        self.registry = registry
        self.location = settings.location

    async def _call(
        self,
        func: Callable[..., Awaitable[Any]],
        *args: Any,
        resource_type: ResourceType,
        resource_name: str | None = None,
        ignore_not_found: bool = False,
    ) -> Any:
        return await self.retry_policy.run(
            lambda: func(*args),
            resource_type,
            resource_name,
            ignore_not_found=ignore_not_found,
        )

    async def validate_and_rename(self, subscription: Subscription) -> None:
        """Rename every data center of the working copy and validate it.

        Args:
            subscription: Working copy of the document, renamed in place

        Raises:
            ValidationError: On the first violated pre-flight check
        """
        for data_center in subscription.data_centers:
            logger.info("validation_started", location=data_center.location_name)
            await self._validate_capacity(data_center)
            await self._rename_affinity_groups(data_center)
            await self._rename_network(data_center)
            await self._rename_storage_accounts(data_center)
            await self._rename_cloud_services(data_center)
            logger.info("validation_completed", location=data_center.location_name)

    # -- Capacity ------------------------------------------------------------

    async def _validate_capacity(self, data_center: DataCenter) -> None:
        capacity: SubscriptionCapacity = await self._call(
            self.provider.get_subscription_capacity, resource_type=ResourceType.DATA_CENTER
        )

        services = sum(1 for service in data_center.cloud_services if not service.is_imported)
        if capacity.max_hosted_services - capacity.current_hosted_services < services:
            raise ValidationError(
                f"Insufficient cloud service capacity in the destination subscription: "
                f"{services} required"
            )

        accounts = sum(1 for account in data_center.storage_accounts if not account.is_imported)
        if capacity.max_storage_accounts - capacity.current_storage_accounts < accounts:
            raise ValidationError(
                f"Insufficient storage account capacity in the destination subscription: "
                f"{accounts} required"
            )

        network = data_center.network_configuration
        if network is not None and not network.is_imported:
            checks = [
                (
                    "virtual network",
                    capacity.max_virtual_network_sites - capacity.current_virtual_network_sites,
                    len(network.virtual_network_sites),
                ),
                (
                    "DNS server",
                    capacity.max_dns_servers - capacity.current_dns_servers,
                    len(network.dns_servers),
                ),
                (
                    "local network",
                    capacity.max_local_network_sites - capacity.current_local_network_sites,
                    len(network.local_network_sites),
                ),
            ]
            for label, available, required in checks:
                if available < required:
                    raise ValidationError(
                        f"Insufficient {label} capacity in the destination subscription: "
                        f"{required} required, {available} available"
                    )

        role_sizes: dict[str, int] = await self._call(
            self.provider.list_role_sizes, resource_type=ResourceType.VIRTUAL_MACHINE
        )
        cores = sum(
            role_sizes.get(vm.details.role_size or "", 0)
            for _, deployment, vm in data_center.virtual_machines()
            if not deployment.is_imported and not vm.is_imported
        )
        if capacity.max_core_count - capacity.current_core_count < cores:
            raise ValidationError(
                f"Insufficient cores in the destination subscription: {cores} required, "
                f"{capacity.max_core_count - capacity.current_core_count} available"
            )

    # -- Affinity groups -----------------------------------------------------

    async def _rename_affinity_groups(self, data_center: DataCenter) -> None:
        existing = await self._call(
            self.provider.list_affinity_groups, resource_type=ResourceType.AFFINITY_GROUP
        )
        pending = [ag for ag in data_center.affinity_groups if not ag.is_imported]
        if MAX_AFFINITY_GROUPS - len(existing) < len(pending):
            raise ValidationError(
                f"Insufficient affinity group capacity: {len(pending)} required, "
                f"{MAX_AFFINITY_GROUPS - len(existing)} available"
            )

        for affinity_group in data_center.affinity_groups:
            affinity_group.details.name = self.registry.resolve_destination(
                ResourceType.AFFINITY_GROUP, affinity_group.details.name
            )

        collisions = _collisions(
            [ag.details.name for ag in pending], [group.name for group in existing]
        )
        if collisions:
            raise ValidationError(
                f"Affinity groups already exist in the destination: {', '.join(collisions)}"
            )

        duplicates = _duplicates(ag.details.name for ag in data_center.affinity_groups)
        if duplicates:
            raise ValidationError(f"Duplicate affinity group names: {', '.join(duplicates)}")

    # -- Network -------------------------------------------------------------

    async def _rename_network(self, data_center: DataCenter) -> None:
        network = data_center.network_configuration
        if network is None or network.is_imported:
            return

        destination: NetworkConfiguration | None = await self._call(
            self.provider.get_network_configuration,
            resource_type=ResourceType.NETWORK_CONFIGURATION,
            ignore_not_found=True,
        )
        self._rename_network_configuration(network)

        if destination is not None:
            for label, names, existing in (
                (
                    "Virtual networks",
                    [site.name for site in network.virtual_network_sites],
                    [site.name for site in destination.virtual_network_sites],
                ),
                (
                    "DNS servers",
                    [dns.name for dns in network.dns_servers],
                    [dns.name for dns in destination.dns_servers],
                ),
                (
                    "Local networks",
                    [local.name for local in network.local_network_sites],
                    [local.name for local in destination.local_network_sites],
                ),
            ):
                collisions = _collisions(names, existing)
                if collisions:
                    raise ValidationError(
                        f"{label} already exist in the destination: {', '.join(collisions)}"
                    )

        for label, names in (
            ("virtual network", [site.name for site in network.virtual_network_sites]),
            ("DNS server", [dns.name for dns in network.dns_servers]),
            ("local network", [local.name for local in network.local_network_sites]),
        ):
            duplicates = _duplicates(names)
            if duplicates:
                raise ValidationError(f"Duplicate {label} names: {', '.join(duplicates)}")

    def _rename_network_configuration(self, network: NetworkConfiguration) -> None:
        """Rename sites, then DNS servers and local networks through the sites using them."""
        resolve = self.registry.resolve_destination
        dns_names: dict[str, str] = {}
        local_names: dict[str, str] = {}

        for site in network.virtual_network_sites:
            site.name = resolve(ResourceType.VIRTUAL_NETWORK_SITE, site.name)
            if site.location is not None:
                site.location = self.location
            site.affinity_group = resolve(ResourceType.AFFINITY_GROUP, site.affinity_group)

            renamed_refs = []
            for ref in site.dns_server_refs:
                renamed = resolve(
                    ResourceType.DNS_SERVER, ref, ResourceType.VIRTUAL_NETWORK_SITE, site.name
                )
                dns_names.setdefault(ref, renamed)
                renamed_refs.append(renamed)
            site.dns_server_refs = renamed_refs

            if site.local_network_site_ref:
                renamed = resolve(
                    ResourceType.LOCAL_NETWORK_SITE,
                    site.local_network_site_ref,
                    ResourceType.VIRTUAL_NETWORK_SITE,
                    site.name,
                )
                local_names.setdefault(site.local_network_site_ref, renamed)
                site.local_network_site_ref = renamed

        for dns in network.dns_servers:
            dns.name = dns_names.get(dns.name, dns.name)
        for local in network.local_network_sites:
            local.name = local_names.get(local.name, local.name)

    # -- Storage accounts ----------------------------------------------------

    async def _rename_storage_accounts(self, data_center: DataCenter) -> None:
        min_length, max_length = STORAGE_ACCOUNT_NAME_LENGTH

        for account in data_center.storage_accounts:
            details = account.details
            details.name = self.registry.resolve_destination(ResourceType.STORAGE_ACCOUNT, details.name)
            details.affinity_group = self.registry.resolve_destination(
                ResourceType.AFFINITY_GROUP, details.affinity_group
            )
            if account.is_imported:
                continue

            if not check_length(details.name, min_length, max_length):
                raise ValidationError(
                    f"Storage account name {details.name} must be between "
                    f"{min_length} and {max_length} characters"
                )
            available = await self._call(
                self.provider.check_storage_name_availability,
                details.name,
                resource_type=ResourceType.STORAGE_ACCOUNT,
                resource_name=details.name,
            )
            if not available:
                raise ValidationError(f"Storage account name {details.name} is not available")

        duplicates = _duplicates(account.details.name for account in data_center.storage_accounts)
        if duplicates:
            raise ValidationError(f"Duplicate storage account names: {', '.join(duplicates)}")

    # -- Cloud services ------------------------------------------------------

    async def _rename_cloud_services(self, data_center: DataCenter) -> None:
        reserved_ip_names = [
            service.deployment.reserved_ip_name
            for service in data_center.cloud_services
            if service.deployment is not None
        ]
        duplicates = _duplicates(reserved_ip_names)
        if duplicates:
            raise ValidationError(
                f"Reserved IPs used by more than one deployment: {', '.join(duplicates)}"
            )

        reserved_ips: list[ReservedIP] = []
        if any(reserved_ip_names):
            reserved_ips = await self._call(
                self.provider.list_reserved_ips, resource_type=ResourceType.DEPLOYMENT
            )

        for service in data_center.cloud_services:
            await self._rename_cloud_service(service, reserved_ips)

        duplicates = _duplicates(service.details.service_name for service in data_center.cloud_services)
        if duplicates:
            raise ValidationError(f"Duplicate cloud service names: {', '.join(duplicates)}")

    async def _rename_cloud_service(self, service: CloudService, reserved_ips: list[ReservedIP]) -> None:
        resolve = self.registry.resolve_destination
        details = service.details
        details.service_name = resolve(ResourceType.CLOUD_SERVICE, details.service_name)
        details.affinity_group = resolve(ResourceType.AFFINITY_GROUP, details.affinity_group)
        service_name = details.service_name

        if not service.is_imported:
            available = await self._call(
                self.provider.check_service_name_availability,
                service_name,
                resource_type=ResourceType.CLOUD_SERVICE,
                resource_name=service_name,
            )
            if not available:
                raise ValidationError(f"Cloud service name {service_name} is not available")

        deployment = service.deployment
        if deployment is None:
            return

        if deployment.reserved_ip_name:
            self._check_reserved_ip(deployment.reserved_ip_name, service_name, reserved_ips)

        deployment.virtual_network_name = resolve(
            ResourceType.VIRTUAL_NETWORK_SITE, deployment.virtual_network_name
        )
        deployment.name = resolve(
            ResourceType.DEPLOYMENT, deployment.name, ResourceType.CLOUD_SERVICE, service_name
        )

        min_length, max_length = VIRTUAL_MACHINE_NAME_LENGTH
        for vm in deployment.virtual_machines:
            vm.details.role_name = resolve(
                ResourceType.VIRTUAL_MACHINE,
                vm.details.role_name,
                ResourceType.CLOUD_SERVICE,
                service_name,
            )
            if vm.is_imported:
                continue

            role_name = vm.details.role_name
            if not check_length(role_name, min_length, max_length):
                raise ValidationError(
                    f"Virtual machine name {role_name} must be between "
                    f"{min_length} and {max_length} characters"
                )
            for disk_type, disk in vm.details.disks():
                await self._check_source_blob(role_name, disk_type, disk.media_link)

        duplicates = _duplicates(vm.details.role_name for vm in deployment.virtual_machines)
        if duplicates:
            raise ValidationError(
                f"Duplicate virtual machine names in {service_name}: {', '.join(duplicates)}"
            )

    @staticmethod
    def _check_reserved_ip(name: str, service_name: str, reserved_ips: list[ReservedIP]) -> None:
        reserved_ip = next((ip for ip in reserved_ips if ip.name.lower() == name.lower()), None)
        if reserved_ip is None:
            raise ValidationError(f"Reserved IP {name} does not exist in the destination")
        if reserved_ip.service_name and reserved_ip.service_name.lower() != service_name.lower():
            raise ValidationError(
                f"Reserved IP {name} is already in use by cloud service {reserved_ip.service_name}"
            )

    async def _check_source_blob(self, role_name: str, disk_type: ResourceType, media_link: str) -> None:
        location = BlobLocation.from_media_link(media_link)
        exists = await self._call(
            self.source_provider.blob_exists,
            location.account,
            location.container,
            location.blob,
            resource_type=ResourceType.BLOB,
            resource_name=location.blob,
        )
        if not exists:
            label = "OS disk" if disk_type == ResourceType.OS_DISK else "data disk"
            raise ValidationError(
                f"Source {label} blob {media_link} of virtual machine {role_name} does not exist"
            )
