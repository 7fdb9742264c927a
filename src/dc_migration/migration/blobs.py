"""Disk replication (import tier 3).

Before any disk is copied, every source virtual machine that is still running
is shut down so its disks are consistent. Each OS and data disk blob is then
copied server side into the destination storage account that the source
account maps to, keeping container and blob names. Copies run concurrently
and are polled until they settle.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from dc_migration.client.exceptions import BlobCopyError
from dc_migration.client.provider import BlobProperties, CloudProvider, CopyStatus, PostShutdownAction
from dc_migration.migration.models import BlobLocation, CloudService, DataCenter, Deployment, VirtualMachine
from dc_migration.migration.naming import NameMappingRegistry
from dc_migration.reporting.progress import ProgressReporter
from dc_migration.resources import VM_STATUS_STOPPED, VM_STATUS_STOPPED_DEALLOCATED, ResourceType
from dc_migration.utils.concurrency import gather_bounded
from dc_migration.utils.logging import get_logger, log_resource_completed
from dc_migration.utils.retry import RetryPolicy

logger = get_logger(__name__)

SAS_START_SKEW = timedelta(minutes=15)
SAS_LIFETIME = timedelta(days=7)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class BlobReplicator:
    """Copies the disk blobs of a data center into the destination subscription."""

    def __init__(
        self,
        source: CloudProvider,
        destination: CloudProvider,
        retry_policy: RetryPolicy,
        registry: NameMappingRegistry,
        reporter: ProgressReporter | None = None,
        poll_interval: float = 30.0,
        max_concurrent: int = 10,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ):
        """Initialize blob replicator.

        Args:
            source: Source subscription provider
            destination: Destination subscription provider
            retry_policy: Retry policy for every remote call
            registry: Name mapping (storage accounts and source VM names)
            reporter: Progress reporter
            poll_interval: Seconds between copy status polls
            max_concurrent: Maximum concurrent shutdowns and copies
            clock: UTC time source for the access token window
            sleep: Awaitable sleep between polls (defaults to asyncio.sleep)
        """
        self.source = source
        self.destination = destination
        self.retry_policy = retry_policy
        self.registry = registry
        self.reporter = reporter or ProgressReporter(quiet=True)
        self.poll_interval = poll_interval
        self.max_concurrent = max_concurrent
        self._clock = clock or _utcnow
        self._sleep = sleep or asyncio.sleep
        self._container_lock = asyncio.Lock()

    async def replicate(self, data_center: DataCenter) -> int:
        """Shut down the source VMs and copy their disk blobs.

        Args:
            data_center: Working copy of the data center (destination names)

        Returns:
            Number of blobs copied (blobs already in place are not counted)

        Raises:
            BlobCopyError: If a copy ends Aborted, Failed or Invalid
            RetryExhaustedError: If a remote call keeps failing
        """
        pending = [
            (service, deployment, vm)
            for service, deployment, vm in data_center.virtual_machines()
            if not deployment.is_imported and not vm.is_imported
        ]
        if not pending:
            return 0

        self.reporter.report("Shutting down source virtual machines")
        await gather_bounded(pending, self._shut_down_source_vm, self.max_concurrent)

        blobs = [
            BlobLocation.from_media_link(disk.media_link)
            for _, _, vm in pending
            for _, disk in vm.details.disks()
        ]
        results = await gather_bounded(blobs, self.copy_blob, self.max_concurrent)
        return sum(1 for copied in results if copied)

    async def _shut_down_source_vm(self, item: tuple[CloudService, Deployment, VirtualMachine]) -> None:
        service, deployment, vm = item
        service_name = self.registry.resolve_source(
            ResourceType.CLOUD_SERVICE, service.details.service_name
        )
        deployment_name = self.registry.resolve_source(
            ResourceType.DEPLOYMENT,
            deployment.name,
            ResourceType.CLOUD_SERVICE,
            service.details.service_name,
        )
        role_name = self.registry.resolve_source(
            ResourceType.VIRTUAL_MACHINE,
            vm.details.role_name,
            ResourceType.CLOUD_SERVICE,
            service.details.service_name,
        )

        status = await self.retry_policy.run(
            lambda: self.source.get_role_status(service_name, deployment_name, role_name),
            ResourceType.VIRTUAL_MACHINE,
            role_name,
        )
        if status in (VM_STATUS_STOPPED, VM_STATUS_STOPPED_DEALLOCATED):
            return

        logger.info("source_vm_shutdown", resource_name=role_name, service=service_name, status=status)
        await self.retry_policy.run(
            lambda: self.source.shutdown_virtual_machine(
                service_name, deployment_name, role_name, PostShutdownAction.STOPPED
            ),
            ResourceType.VIRTUAL_MACHINE,
            role_name,
        )

    async def copy_blob(self, source: BlobLocation) -> bool:
        """Copy one blob to its mapped destination account.

        Returns:
            True when a copy was performed, False when the blob was already there
        """
        started = time.monotonic()
        destination = BlobLocation(
            account=self.registry.resolve_destination(ResourceType.STORAGE_ACCOUNT, source.account),
            container=source.container,
            blob=source.blob,
        )
        run = self.retry_policy.run
        target = (destination.account, destination.container, destination.blob)

        async with self._container_lock:
            await run(
                lambda: self.destination.create_container_if_not_exists(
                    destination.account, destination.container
                ),
                ResourceType.BLOB,
                destination.container,
            )

        if await run(lambda: self.destination.blob_exists(*target), ResourceType.BLOB, source.blob):
            properties: BlobProperties = await run(
                lambda: self.destination.get_blob_properties(*target), ResourceType.BLOB, source.blob
            )
            if properties.copy_status != CopyStatus.PENDING:
                logger.info(
                    "blob_exists_in_destination",
                    resource_name=source.blob,
                    account=destination.account,
                    container=destination.container,
                )
                return False

            logger.info("pending_blob_copy_discarded", resource_name=source.blob)
            await run(
                lambda: self.destination.abort_blob_copy(*target, properties.copy_id or ""),
                ResourceType.BLOB,
                source.blob,
            )
            await run(lambda: self.destination.delete_blob(*target), ResourceType.BLOB, source.blob)

        now = self._clock()
        source_url = await run(
            lambda: self.source.generate_read_sas(
                source.account,
                source.container,
                source.blob,
                now - SAS_START_SKEW,
                now + SAS_LIFETIME,
            ),
            ResourceType.BLOB,
            source.blob,
        )
        await run(
            lambda: self.destination.start_blob_copy(*target, source_url),
            ResourceType.BLOB,
            source.blob,
        )
        self.reporter.report(
            f"Copy of {source.to_media_link()} to {destination.to_media_link()} started"
        )

        await self._wait_for_copy(destination)

        self.reporter.report(
            f"Copy of {source.to_media_link()} to {destination.to_media_link()} completed"
        )
        log_resource_completed(
            logger,
            "blob_copied",
            str(ResourceType.BLOB),
            source.blob,
            started,
            account=destination.account,
            container=destination.container,
        )
        return True

    async def _wait_for_copy(self, destination: BlobLocation) -> None:
        run = self.retry_policy.run
        target = (destination.account, destination.container, destination.blob)

        properties: BlobProperties = await run(
            lambda: self.destination.get_blob_properties(*target), ResourceType.BLOB, destination.blob
        )
        while properties.copy_status == CopyStatus.PENDING:
            await self._sleep(self.poll_interval)
            properties = await run(
                lambda: self.destination.get_blob_properties(*target),
                ResourceType.BLOB,
                destination.blob,
            )
            if properties.total_bytes:
                percent = (properties.bytes_copied or 0) / properties.total_bytes * 100
                self.reporter.report(f"{destination.blob}: {percent:.0f}% copied")

        if properties.copy_status is not None and properties.copy_status.is_terminal_failure:
            status = properties.copy_status.value
            await run(
                lambda: self.destination.delete_blob(*target), ResourceType.BLOB, destination.blob
            )
            logger.warning("failed_blob_deleted", resource_name=destination.blob, status=status)
            raise BlobCopyError(
                f"Copy of blob {destination.blob} ended with status {status}",
                error_code=status,
                resource_type=str(ResourceType.BLOB),
                resource_name=destination.blob,
            )
