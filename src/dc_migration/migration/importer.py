"""Resumable import of a subscription document into the destination.

The import runs as a fixed sequence of tiers per data center:

    0. validate and rename (ImportValidator)
    1. affinity groups
    2. storage accounts
    3. disk replication (BlobReplicator)
    4. network configuration
    5. cloud services, deployments and virtual machines

Resources within a tier are created concurrently; tiers run strictly in
order. Every committed resource is recorded in the progress document before
work continues, and resources already recorded as imported are skipped, so
an interrupted import resumes from its progress document.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from dc_migration.client.exceptions import FatalImportError, NotFoundError, ValidationError
from dc_migration.client.provider import CloudProvider, PostShutdownAction
from dc_migration.config import MigrationConfig
from dc_migration.migration.blobs import BlobReplicator
from dc_migration.migration.models import (
    AffinityGroup,
    BlobLocation,
    CloudService,
    DataCenter,
    Deployment,
    NetworkConfiguration,
    StorageAccount,
    VirtualMachineDetails,
)
from dc_migration.migration.naming import NameMappingRegistry
from dc_migration.migration.persistence import (
    ProgressDocument,
    default_mapping_path,
    import_status_path,
    load_subscription,
    save_subscription,
)
from dc_migration.migration.rollback import RollbackCoordinator, RollbackResult
from dc_migration.migration.validator import ImportValidator
from dc_migration.reporting.progress import ProgressReporter
from dc_migration.resources import IMPORT_TOTAL_STAGES, ResourceType
from dc_migration.utils.concurrency import gather_bounded
from dc_migration.utils.logging import (
    get_logger,
    log_error,
    log_migration_progress,
    log_resource_completed,
)
from dc_migration.utils.retry import RetryPolicy

logger = get_logger(__name__)

RollbackFactory = Callable[[NameMappingRegistry, ProgressDocument], RollbackCoordinator]


@dataclass
class ImportResult:
    """Outcome of a completed import."""

    progress_file: Path
    mapping_file: Path
    data_centers_imported: int = 0
    created: dict[ResourceType, int] = field(default_factory=dict)

    @property
    def total_created(self) -> int:
        return sum(self.created.values())


def merge_network_configurations(
    current: NetworkConfiguration | None, imported: NetworkConfiguration
) -> NetworkConfiguration:
    """Union two network configurations by element name.

    Elements already present in the destination win over imported ones with
    the same (case-insensitive) name.
    """
    current = current or NetworkConfiguration()

    def union(existing: list, added: list) -> list:
        names = {item.name.lower() for item in existing}
        return [item.model_copy(deep=True) for item in existing] + [
            item.model_copy(deep=True) for item in added if item.name.lower() not in names
        ]

    return NetworkConfiguration(
        dns_servers=union(current.dns_servers, imported.dns_servers),
        local_network_sites=union(current.local_network_sites, imported.local_network_sites),
        virtual_network_sites=union(current.virtual_network_sites, imported.virtual_network_sites),
    )


class ResourceImporter:
    """Creates the resources of a subscription document in the destination subscription."""

    def __init__(
        self,
        source: CloudProvider,
        destination: CloudProvider,
        retry_policy: RetryPolicy,
        settings: MigrationConfig,
        reporter: ProgressReporter | None = None,
        rollback_factory: RollbackFactory | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ):
        """Initialize resource importer.

        Args:
            source: Source subscription provider (source VMs and disk blobs)
            destination: Destination subscription provider
            retry_policy: Retry policy for every remote call
            settings: Migration configuration
            reporter: Progress reporter
            rollback_factory: Builds the rollback coordinator used on failure
            sleep: Awaitable sleep for copy polling and rollback cooldowns
        """
        self.source = source
        self.destination = destination
        self.retry_policy = retry_policy
        self.settings = settings
        self.reporter = reporter or ProgressReporter(quiet=True)
        self._sleep = sleep or asyncio.sleep
        self._rollback_factory = rollback_factory or self._default_rollback

        self.location = settings.require_destination().location
        self.created: dict[ResourceType, int] = {}

    def _default_rollback(
        self, registry: NameMappingRegistry, document: ProgressDocument
    ) -> RollbackCoordinator:
        return RollbackCoordinator(
            self.destination,
            self.retry_policy,
            registry,
            document,
            reporter=self.reporter,
            cooldown=self.settings.performance.rollback_cooldown,
            max_concurrent=self.settings.performance.max_concurrent,
            sleep=self._sleep,
        )

    def load_registry(
        self, metadata_path: Path, mapping_path: str | Path | None, prefix: str | None
    ) -> tuple[NameMappingRegistry, Path]:
        """Load the name mapping.

        Without an explicit path the mapping paired with the metadata file is
        used, and generated there first when it does not exist yet.
        """
        max_lengths = self.settings.naming.max_name_lengths
        if mapping_path is None and default_mapping_path(metadata_path).exists():
            mapping_path = default_mapping_path(metadata_path)
        elif mapping_path is None:
            prefix = self.settings.naming.destination_prefix if prefix is None else prefix
            generated = NameMappingRegistry.build_from_subscription(
                load_subscription(metadata_path), prefix, max_lengths
            )
            mapping_path = generated.save(default_mapping_path(metadata_path))

        mapping_path = Path(mapping_path)
        return NameMappingRegistry.load(mapping_path, max_lengths), mapping_path

    async def import_subscription_metadata(
        self,
        metadata_path: str | Path,
        mapping_path: str | Path | None = None,
        prefix: str | None = None,
        resume: bool = False,
        rollback_on_failure: bool = False,
    ) -> ImportResult:
        """Import a subscription document.

        Args:
            metadata_path: Exported document, or the progress document when resuming
            mapping_path: Name mapping document; generated when omitted
            prefix: Destination prefix used when the mapping is generated
            resume: Track progress in metadata_path itself instead of a new copy
            rollback_on_failure: Roll back created resources when the import fails

        Returns:
            ImportResult with the progress and mapping paths and creation counts

        Raises:
            ValidationError: If a pre-flight check fails (nothing was created)
            FatalImportError: If the import failed after validation
            StateError: If the metadata or mapping document cannot be read
        """
        started = time.monotonic()
        metadata_path = Path(metadata_path)
        self.created = {}

        working = load_subscription(metadata_path)
        source_copy = load_subscription(metadata_path)
        registry, mapping_path = self.load_registry(metadata_path, mapping_path, prefix)

        progress_path = metadata_path
        if not resume:
            progress_path = save_subscription(source_copy, import_status_path(metadata_path))
        document = ProgressDocument(source_copy, progress_path, registry)

        logger.info(
            "import_started",
            metadata_file=str(metadata_path),
            progress_file=str(progress_path),
            mapping_file=str(mapping_path),
            prefix=registry.prefix,
            resume=resume,
        )
        self.reporter.report(f"Import of data center {self.location} started")

        imported = 0
        try:
            self.reporter.report("Validating resources of the metadata file")
            validator = ImportValidator(
                self.destination,
                self.source,
                self.retry_policy,
                registry,
                self.settings.require_destination(),
            )
            await validator.validate_and_rename(working)
            stage = 1
            self._stage_completed(stage, ResourceType.DATA_CENTER)

            for data_center in working.data_centers:
                if data_center.is_imported:
                    logger.info("data_center_already_imported", location=data_center.location_name)
                    continue
                await self._import_data_center(data_center, registry, document, stage)
                imported += 1

        except ValidationError:
            raise

        except Exception as e:
            log_error(logger, e, "import", progress_file=str(progress_path))
            await document.flush()

            rolled_back = False
            if rollback_on_failure:
                rollback: RollbackResult = await self._rollback_factory(
                    registry, document
                ).roll_back_resources()
                rolled_back = True
                logger.info("rollback_after_failure", failures=len(rollback.failures))
            elif not resume:
                self.reporter.report(f"Resume import with {progress_path}")

            raise FatalImportError(
                f"Import failed: {e}", progress_file=str(progress_path), rolled_back=rolled_back
            ) from e

        log_resource_completed(
            logger,
            "import_completed",
            str(ResourceType.DATA_CENTER),
            self.location,
            started,
            data_centers=imported,
            created=sum(self.created.values()),
        )
        self.reporter.report(f"Import of data center {self.location} completed")
        return ImportResult(
            progress_file=progress_path,
            mapping_file=mapping_path,
            data_centers_imported=imported,
            created=dict(self.created),
        )

    async def _import_data_center(
        self,
        data_center: DataCenter,
        registry: NameMappingRegistry,
        document: ProgressDocument,
        stage: int,
    ) -> None:
        max_concurrent = self.settings.performance.max_concurrent

        self.reporter.report("Creating affinity groups")
        await gather_bounded(
            data_center.affinity_groups,
            lambda group: self._import_affinity_group(group, document),
            max_concurrent,
        )
        stage += 1
        self._stage_completed(stage, ResourceType.AFFINITY_GROUP)

        self.reporter.report("Creating storage accounts")
        await gather_bounded(
            data_center.storage_accounts,
            lambda account: self._import_storage_account(account, document),
            max_concurrent,
        )
        stage += 1
        self._stage_completed(stage, ResourceType.STORAGE_ACCOUNT)

        self.reporter.report("Copying disk blobs to the destination")
        replicator = BlobReplicator(
            self.source,
            self.destination,
            self.retry_policy,
            registry,
            reporter=self.reporter,
            poll_interval=self.settings.performance.blob_poll_interval,
            max_concurrent=max_concurrent,
            sleep=self._sleep,
        )
        copied = await replicator.replicate(data_center)
        if copied:
            self._count(ResourceType.BLOB, copied)
        stage += 1
        self._stage_completed(stage, ResourceType.BLOB)

        self.reporter.report("Creating virtual networks")
        await self._import_network(data_center.network_configuration, document)
        stage += 1
        self._stage_completed(stage, ResourceType.NETWORK_CONFIGURATION)

        self.reporter.report("Creating cloud services")
        await gather_bounded(
            data_center.cloud_services,
            lambda service: self._import_cloud_service(service, registry, document),
            max_concurrent,
        )
        stage += 1
        self._stage_completed(stage, ResourceType.CLOUD_SERVICE)

        await document.mark(ResourceType.DATA_CENTER, data_center.location_name)
        logger.info("data_center_imported", location=data_center.location_name)

    def _stage_completed(self, stage: int, resource_type: ResourceType) -> None:
        self.reporter.stage_completed(stage, IMPORT_TOTAL_STAGES)
        log_migration_progress(logger, "import", str(resource_type), stage, IMPORT_TOTAL_STAGES)

    def _count(self, resource_type: ResourceType, count: int = 1) -> None:
        self.created[resource_type] = self.created.get(resource_type, 0) + count
        self.reporter.record(created=count)

    async def _create(
        self,
        create: Callable[[], Awaitable[Any]],
        remove: Callable[[], Awaitable[Any]] | None,
        resource_type: ResourceType,
        resource_name: str,
    ) -> None:
        """Create a resource under the retry policy.

        remove is the compensating action run before each retry; a resource
        that is already gone counts as removed.
        """

        async def remove_partial() -> None:
            try:
                await remove()
            except NotFoundError:
                pass

        started = time.monotonic()
        await self.retry_policy.run(
            create,
            resource_type,
            resource_name,
            prelude=remove_partial if remove is not None else None,
        )
        self._count(resource_type)
        log_resource_completed(logger, "resource_created", str(resource_type), resource_name, started)

    # -- Tier 1 and 2 --------------------------------------------------------

    async def _import_affinity_group(self, group: AffinityGroup, document: ProgressDocument) -> None:
        if group.is_imported:
            self.reporter.record(skipped=1)
            return

        details = group.details.model_copy(update={"location": self.location})
        await self._create(
            lambda: self.destination.create_affinity_group(details),
            lambda: self.destination.delete_affinity_group(details.name),
            ResourceType.AFFINITY_GROUP,
            details.name,
        )
        await document.mark(ResourceType.AFFINITY_GROUP, details.name)

    async def _import_storage_account(self, account: StorageAccount, document: ProgressDocument) -> None:
        if account.is_imported:
            self.reporter.record(skipped=1)
            return

        location = None if account.details.affinity_group else self.location
        details = account.details.model_copy(update={"location": location})
        await self._create(
            lambda: self.destination.create_storage_account(details),
            lambda: self.destination.delete_storage_account(details.name),
            ResourceType.STORAGE_ACCOUNT,
            details.name,
        )
        await document.mark(ResourceType.STORAGE_ACCOUNT, details.name)

    # -- Tier 4 --------------------------------------------------------------

    async def _import_network(
        self, network: NetworkConfiguration | None, document: ProgressDocument
    ) -> None:
        if network is None:
            return
        if network.is_imported:
            self.reporter.record(skipped=1)
            return

        current = await self.retry_policy.run(
            self.destination.get_network_configuration,
            ResourceType.NETWORK_CONFIGURATION,
            ignore_not_found=True,
        )
        merged = merge_network_configurations(current, network)
        await self._create(
            lambda: self.destination.set_network_configuration(merged),
            None,
            ResourceType.NETWORK_CONFIGURATION,
            "network",
        )
        await document.mark(ResourceType.NETWORK_CONFIGURATION)

    # -- Tier 5 --------------------------------------------------------------

    async def _import_cloud_service(
        self, service: CloudService, registry: NameMappingRegistry, document: ProgressDocument
    ) -> None:
        service_name = service.details.service_name

        if service.is_imported:
            self.reporter.record(skipped=1)
        else:
            location = None if service.details.affinity_group else self.location
            details = service.details.model_copy(update={"location": location})
            await self._create(
                lambda: self.destination.create_cloud_service(details),
                lambda: self.destination.delete_cloud_service(service_name),
                ResourceType.CLOUD_SERVICE,
                service_name,
            )
            await document.mark(ResourceType.CLOUD_SERVICE, service_name)

        deployment = service.deployment
        if deployment is None or not deployment.virtual_machines:
            return
        if deployment.is_imported:
            self.reporter.record(skipped=1)
            return

        await self._import_deployment(service_name, deployment, registry, document)

    async def _import_deployment(
        self,
        service_name: str,
        deployment: Deployment,
        registry: NameMappingRegistry,
        document: ProgressDocument,
    ) -> None:
        """Create the deployment with its first VM, then add the others one at a time."""
        existing = await self.retry_policy.run(
            lambda: self.destination.get_deployment(service_name, deployment.slot),
            ResourceType.DEPLOYMENT,
            deployment.name,
            ignore_not_found=True,
        )
        deployment_exists = existing is not None

        for vm in deployment.virtual_machines:
            if vm.is_imported:
                self.reporter.record(skipped=1)
                continue

            details = self._destination_vm(service_name, vm.details, registry)
            role_name = details.role_name

            if not deployment_exists:
                shell = deployment.model_copy(update={"virtual_machines": []})
                await self._create(
                    lambda: self.destination.create_deployment(service_name, shell, details),
                    None,
                    ResourceType.DEPLOYMENT,
                    deployment.name,
                )
                deployment_exists = True
            else:
                await self._create(
                    lambda: self.destination.create_virtual_machine(
                        service_name, deployment.name, details
                    ),
                    lambda: self.destination.delete_virtual_machine(
                        service_name, deployment.name, role_name
                    ),
                    ResourceType.VIRTUAL_MACHINE,
                    role_name,
                )

            await document.mark(
                ResourceType.VIRTUAL_MACHINE, role_name, parent_destination=service_name
            )
            await self.retry_policy.run(
                lambda: self.destination.shutdown_virtual_machine(
                    service_name,
                    deployment.name,
                    role_name,
                    PostShutdownAction.STOPPED_DEALLOCATED,
                ),
                ResourceType.VIRTUAL_MACHINE,
                role_name,
            )

        await document.mark(ResourceType.DEPLOYMENT, deployment.name, parent_destination=service_name)
        self.reporter.report(f"Cloud service {service_name} imported")

    @staticmethod
    def _destination_vm(
        service_name: str, vm: VirtualMachineDetails, registry: NameMappingRegistry
    ) -> VirtualMachineDetails:
        """Point the disks of a VM definition at the destination storage accounts."""
        details = vm.model_copy(deep=True)
        for disk_type, disk in details.disks():
            location = BlobLocation.from_media_link(disk.media_link)
            disk.media_link = BlobLocation(
                account=registry.resolve_destination(ResourceType.STORAGE_ACCOUNT, location.account),
                container=location.container,
                blob=location.blob,
            ).to_media_link()
            if disk.name is not None:
                disk.name = registry.resolve_destination(
                    disk_type, disk.name, ResourceType.CLOUD_SERVICE, service_name
                )
        return details
