"""Rollback of an import.

Walks the progress document in reverse creation order and deletes whatever
an import marked as imported: cloud services (the deletion cascades to their
deployment and virtual machines), storage accounts, the network elements the
import added, and finally affinity groups. Each deletion is recorded in the
progress document as it happens. A failed deletion is logged and collected;
the sweep always continues with the remaining resources.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from dc_migration.client.provider import CloudProvider
from dc_migration.migration.models import (
    AffinityGroup,
    CloudService,
    DataCenter,
    NetworkConfiguration,
    StorageAccount,
)
from dc_migration.migration.naming import NameMappingRegistry
from dc_migration.migration.persistence import ProgressDocument
from dc_migration.reporting.progress import ProgressReporter
from dc_migration.resources import ROLLBACK_TOTAL_STAGES, ResourceType
from dc_migration.utils.concurrency import gather_bounded
from dc_migration.utils.logging import get_logger, log_resource_completed
from dc_migration.utils.retry import RetryPolicy

logger = get_logger(__name__)


@dataclass
class RollbackFailure:
    """A resource that could not be rolled back."""

    resource_type: ResourceType
    resource_name: str | None
    error: str


@dataclass
class RollbackResult:
    """Outcome of a rollback sweep."""

    deleted: dict[ResourceType, int] = field(default_factory=dict)
    failures: list[RollbackFailure] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.failures

    @property
    def total_deleted(self) -> int:
        return sum(self.deleted.values())

    def count_deleted(self, resource_type: ResourceType) -> None:
        self.deleted[resource_type] = self.deleted.get(resource_type, 0) + 1


class RollbackCoordinator:
    """Deletes the destination resources recorded as imported in a progress document."""

    def __init__(
        self,
        destination: CloudProvider,
        retry_policy: RetryPolicy,
        registry: NameMappingRegistry,
        document: ProgressDocument,
        reporter: ProgressReporter | None = None,
        cooldown: float = 60.0,
        max_concurrent: int = 10,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ):
        """Initialize rollback coordinator.

        Args:
            destination: Destination subscription provider
            retry_policy: Retry policy for every remote call
            registry: Name mapping of the import being rolled back
            document: Progress document (source names, is_imported flags)
            reporter: Progress reporter
            cooldown: Seconds to wait after a stage that deleted something
            max_concurrent: Maximum concurrent deletions within a stage
            sleep: Awaitable sleep for the cooldown (defaults to asyncio.sleep)
        """
        self.destination = destination
        self.retry_policy = retry_policy
        self.registry = registry
        self.document = document
        self.reporter = reporter or ProgressReporter(quiet=True)
        self.cooldown = cooldown
        self.max_concurrent = max_concurrent
        self._sleep = sleep or asyncio.sleep

    async def roll_back_resources(self) -> RollbackResult:
        """Roll back every data center of the progress document.

        Returns:
            RollbackResult with per-type deletion counts and collected failures
        """
        started = time.monotonic()
        result = RollbackResult()
        logger.info("rollback_started", path=str(self.document.path))
        self.reporter.report("Rollback started")

        for data_center in self.document.subscription.data_centers:
            await self._roll_back_data_center(data_center, result)

        log_resource_completed(
            logger,
            "rollback_completed",
            str(ResourceType.DATA_CENTER),
            None,
            started,
            deleted=result.total_deleted,
            failures=len(result.failures),
        )
        self.reporter.report("Rollback completed")
        return result

    async def _roll_back_data_center(self, data_center: DataCenter, result: RollbackResult) -> None:
        stages: list[tuple[str, Callable[[DataCenter, RollbackResult], Awaitable[None]]]] = [
            ("Rolling back cloud services", self._roll_back_cloud_services),
            ("Rolling back storage accounts", self._roll_back_storage_accounts),
            ("Rolling back virtual networks", self._roll_back_network),
            ("Rolling back affinity groups", self._roll_back_affinity_groups),
        ]
        for stage, (message, roll_back) in enumerate(stages, start=1):
            self.reporter.report(message)
            deleted_before = result.total_deleted
            await roll_back(data_center, result)
            if result.total_deleted > deleted_before:
                self.reporter.report(f"Waiting {self.cooldown:g}s for deletions to settle")
                await self._sleep(self.cooldown)
            self.reporter.stage_completed(stage, ROLLBACK_TOTAL_STAGES)

        if data_center.is_imported:
            await self.document.mark(ResourceType.DATA_CENTER, data_center.location_name, imported=False)

    async def _delete(
        self,
        func: Callable[[str], Awaitable[Any]],
        resource_type: ResourceType,
        name: str,
        result: RollbackResult,
    ) -> bool:
        """Delete one resource, recording a failure instead of raising."""
        try:
            await self.retry_policy.run(
                lambda: func(name), resource_type, name, ignore_not_found=True
            )
        except Exception as e:
            logger.error(
                "rollback_failed",
                resource_type=str(resource_type),
                resource_name=name,
                error=str(e),
            )
            result.failures.append(RollbackFailure(resource_type, name, str(e)))
            return False

        result.count_deleted(resource_type)
        logger.info("resource_rolled_back", resource_type=str(resource_type), resource_name=name)
        return True

    # -- Stages --------------------------------------------------------------

    async def _roll_back_cloud_services(self, data_center: DataCenter, result: RollbackResult) -> None:
        services = [service for service in data_center.cloud_services if service.is_imported]
        if not services:
            return

        async def roll_back(service: CloudService) -> None:
            service_name = self.registry.resolve_destination(
                ResourceType.CLOUD_SERVICE, service.details.service_name
            )
            if not await self._delete(
                self.destination.delete_cloud_service, ResourceType.CLOUD_SERVICE, service_name, result
            ):
                return

            deployment = service.deployment
            if deployment is not None:
                await self.document.mark(
                    ResourceType.DEPLOYMENT,
                    self.registry.resolve_destination(
                        ResourceType.DEPLOYMENT,
                        deployment.name,
                        ResourceType.CLOUD_SERVICE,
                        service_name,
                    ),
                    imported=False,
                    parent_destination=service_name,
                )
                for vm in deployment.virtual_machines:
                    await self.document.mark(
                        ResourceType.VIRTUAL_MACHINE,
                        self.registry.resolve_destination(
                            ResourceType.VIRTUAL_MACHINE,
                            vm.details.role_name,
                            ResourceType.CLOUD_SERVICE,
                            service_name,
                        ),
                        imported=False,
                        parent_destination=service_name,
                    )
            await self.document.mark(ResourceType.CLOUD_SERVICE, service_name, imported=False)

        await gather_bounded(services, roll_back, self.max_concurrent, raise_first=False)

    async def _roll_back_storage_accounts(self, data_center: DataCenter, result: RollbackResult) -> None:
        accounts = [account for account in data_center.storage_accounts if account.is_imported]
        if not accounts:
            return

        async def roll_back(account: StorageAccount) -> None:
            name = self.registry.resolve_destination(ResourceType.STORAGE_ACCOUNT, account.details.name)
            if await self._delete(
                self.destination.delete_storage_account, ResourceType.STORAGE_ACCOUNT, name, result
            ):
                await self.document.mark(ResourceType.STORAGE_ACCOUNT, name, imported=False)

        await gather_bounded(accounts, roll_back, self.max_concurrent, raise_first=False)

    async def _roll_back_network(self, data_center: DataCenter, result: RollbackResult) -> None:
        network = data_center.network_configuration
        if network is None or not network.is_imported:
            return

        try:
            current: NetworkConfiguration | None = await self.retry_policy.run(
                self.destination.get_network_configuration,
                ResourceType.NETWORK_CONFIGURATION,
                ignore_not_found=True,
            )
            if current is not None:
                reduced = self._remove_imported_elements(current, network)
                await self.retry_policy.run(
                    lambda: self.destination.set_network_configuration(reduced),
                    ResourceType.NETWORK_CONFIGURATION,
                )
        except Exception as e:
            logger.error(
                "rollback_failed",
                resource_type=str(ResourceType.NETWORK_CONFIGURATION),
                error=str(e),
            )
            result.failures.append(
                RollbackFailure(ResourceType.NETWORK_CONFIGURATION, None, str(e))
            )
            return

        await self.document.mark(ResourceType.NETWORK_CONFIGURATION, imported=False)
        result.count_deleted(ResourceType.NETWORK_CONFIGURATION)

    def _remove_imported_elements(
        self, current: NetworkConfiguration, imported: NetworkConfiguration
    ) -> NetworkConfiguration:
        """Drop the sites, DNS servers and local networks this import added."""
        resolve = self.registry.resolve_destination
        site_names: set[str] = set()
        dns_names: set[str] = set()
        local_names: set[str] = set()

        for site in imported.virtual_network_sites:
            site_name = resolve(ResourceType.VIRTUAL_NETWORK_SITE, site.name)
            site_names.add(site_name)
            for ref in site.dns_server_refs:
                dns_names.add(
                    resolve(ResourceType.DNS_SERVER, ref, ResourceType.VIRTUAL_NETWORK_SITE, site_name)
                )
            if site.local_network_site_ref:
                local_names.add(
                    resolve(
                        ResourceType.LOCAL_NETWORK_SITE,
                        site.local_network_site_ref,
                        ResourceType.VIRTUAL_NETWORK_SITE,
                        site_name,
                    )
                )

        return NetworkConfiguration(
            dns_servers=[dns for dns in current.dns_servers if dns.name not in dns_names],
            local_network_sites=[
                local for local in current.local_network_sites if local.name not in local_names
            ],
            virtual_network_sites=[
                site for site in current.virtual_network_sites if site.name not in site_names
            ],
        )

    async def _roll_back_affinity_groups(self, data_center: DataCenter, result: RollbackResult) -> None:
        groups = [group for group in data_center.affinity_groups if group.is_imported]
        if not groups:
            return

        async def roll_back(group: AffinityGroup) -> None:
            name = self.registry.resolve_destination(ResourceType.AFFINITY_GROUP, group.details.name)
            if await self._delete(
                self.destination.delete_affinity_group, ResourceType.AFFINITY_GROUP, name, result
            ):
                await self.document.mark(ResourceType.AFFINITY_GROUP, name, imported=False)

        await gather_bounded(groups, roll_back, self.max_concurrent, raise_first=False)
