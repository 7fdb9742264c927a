"""Export of a data center's resources from the source subscription.

The exporter reads affinity groups, cloud services (with their production
deployment and persistent VM roles), storage accounts and the virtual network
configuration, keeps what belongs to the requested location, and assembles a
one data center Subscription document.
"""

import time

from dc_migration.client.exceptions import NotFoundError
from dc_migration.client.provider import CloudProvider
from dc_migration.migration.models import (
    AffinityGroup,
    AffinityGroupDetails,
    CloudService,
    CloudServiceDetails,
    DataCenter,
    Deployment,
    NetworkConfiguration,
    StorageAccount,
    StorageAccountDetails,
    Subscription,
)
from dc_migration.reporting.progress import ProgressReporter
from dc_migration.resources import (
    EXPORT_TOTAL_STAGES,
    PERSISTENT_VM_ROLE,
    PRODUCTION_SLOT,
    ResourceType,
)
from dc_migration.utils.logging import get_logger, log_resource_completed
from dc_migration.utils.retry import RetryPolicy

logger = get_logger(__name__)


def _same_location(location: str | None, expected: str) -> bool:
    return location is not None and location.lower() == expected.lower()


class SubscriptionExporter:
    """Exports the resources of one location of a source subscription."""

    def __init__(
        self,
        provider: CloudProvider,
        retry_policy: RetryPolicy,
        location: str,
        subscription_name: str | None = None,
        reporter: ProgressReporter | None = None,
    ):
        """Initialize subscription exporter.

        Args:
            provider: Source subscription provider
            retry_policy: Retry policy for every remote call
            location: Data center location to export
            subscription_name: Name recorded in the document
            reporter: Progress reporter
        """
        self.provider = provider
        self.retry_policy = retry_policy
        self.location = location
        self.subscription_name = subscription_name
        self.reporter = reporter or ProgressReporter(quiet=True)

    async def export_subscription_metadata(self) -> Subscription:
        """Export the data center into a new subscription document.

        Returns:
            Subscription holding exactly one data center

        Raises:
            RetryExhaustedError: If a remote listing keeps failing
            CloudError: On a non-retryable remote failure
        """
        started = time.monotonic()
        logger.info("export_started", location=self.location)
        self.reporter.report(f"Export of data center {self.location} started")

        affinity_group_details = await self.retry_policy.run(
            self.provider.list_affinity_groups, ResourceType.AFFINITY_GROUP
        )
        service_details = await self.retry_policy.run(
            self.provider.list_cloud_services, ResourceType.CLOUD_SERVICE
        )
        network = await self.retry_policy.run(
            self.provider.get_network_configuration,
            ResourceType.NETWORK_CONFIGURATION,
            ignore_not_found=True,
        )
        storage_details = await self.retry_policy.run(
            self.provider.list_storage_accounts, ResourceType.STORAGE_ACCOUNT
        )

        data_center = DataCenter(location_name=self.location)
        stage = 0

        self.reporter.report("Exporting affinity groups")
        data_center.affinity_groups = self._export_affinity_groups(affinity_group_details or [])
        affinity_group_names = {ag.details.name for ag in data_center.affinity_groups}
        stage += 1
        self.reporter.stage_completed(stage, EXPORT_TOTAL_STAGES)

        self.reporter.report("Exporting cloud services")
        data_center.cloud_services = await self._export_cloud_services(
            service_details or [], affinity_group_names
        )
        stage += 1
        self.reporter.stage_completed(stage, EXPORT_TOTAL_STAGES)

        self.reporter.report("Exporting storage accounts")
        data_center.storage_accounts = self._export_storage_accounts(
            storage_details or [], affinity_group_names
        )
        stage += 1
        self.reporter.stage_completed(stage, EXPORT_TOTAL_STAGES)

        self.reporter.report("Exporting virtual network configuration")
        data_center.network_configuration = self._export_network(network, affinity_group_names)
        stage += 1
        self.reporter.stage_completed(stage, EXPORT_TOTAL_STAGES)

        log_resource_completed(
            logger,
            "export_completed",
            str(ResourceType.DATA_CENTER),
            self.location,
            started,
            affinity_groups=len(data_center.affinity_groups),
            cloud_services=len(data_center.cloud_services),
            storage_accounts=len(data_center.storage_accounts),
        )
        self.reporter.report(f"Export of data center {self.location} completed")
        return Subscription(name=self.subscription_name, data_centers=[data_center])

    def _export_affinity_groups(self, groups: list[AffinityGroupDetails]) -> list[AffinityGroup]:
        return [
            AffinityGroup(details=group)
            for group in groups
            if _same_location(group.location, self.location)
        ]

    def _belongs(self, location: str | None, affinity_group: str | None, group_names: set[str]) -> bool:
        if _same_location(location, self.location):
            return True
        return location is None and affinity_group is not None and affinity_group in group_names

    async def _export_cloud_services(
        self, services: list[CloudServiceDetails], affinity_group_names: set[str]
    ) -> list[CloudService]:
        exported = []
        for details in services:
            if not self._belongs(details.location, details.affinity_group, affinity_group_names):
                continue

            deployment = await self._export_deployment(details.service_name)
            exported.append(CloudService(details=details, deployment=deployment))
            logger.debug(
                "cloud_service_exported",
                resource_name=details.service_name,
                has_deployment=deployment is not None,
            )
        return exported

    async def _export_deployment(self, service_name: str) -> Deployment | None:
        async def get_production_deployment() -> Deployment:
            return await self.provider.get_deployment(service_name, PRODUCTION_SLOT)

        try:
            deployment = await self.retry_policy.run(
                get_production_deployment, ResourceType.DEPLOYMENT, service_name
            )
        except NotFoundError:
            return None

        deployment.virtual_machines = [
            vm for vm in deployment.virtual_machines if vm.details.role_type == PERSISTENT_VM_ROLE
        ]
        deployment.is_imported = False
        for vm in deployment.virtual_machines:
            vm.is_imported = False
        return deployment

    def _export_storage_accounts(
        self, accounts: list[StorageAccountDetails], affinity_group_names: set[str]
    ) -> list[StorageAccount]:
        return [
            StorageAccount(details=details)
            for details in accounts
            if self._belongs(details.location, details.affinity_group, affinity_group_names)
        ]

    def _export_network(
        self, network: NetworkConfiguration | None, affinity_group_names: set[str]
    ) -> NetworkConfiguration | None:
        """Keep the sites of this data center and only the DNS and local networks they use."""
        if network is None:
            return None

        sites = [
            site
            for site in network.virtual_network_sites
            if (site.affinity_group is not None and site.affinity_group in affinity_group_names)
            or _same_location(site.location, self.location)
        ]
        dns_names = {name for site in sites for name in site.dns_server_refs}
        local_names = {site.local_network_site_ref for site in sites if site.local_network_site_ref}

        return NetworkConfiguration(
            dns_servers=[dns for dns in network.dns_servers if dns.name in dns_names],
            local_network_sites=[
                local for local in network.local_network_sites if local.name in local_names
            ],
            virtual_network_sites=sites,
        )
