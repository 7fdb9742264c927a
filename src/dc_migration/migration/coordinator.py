"""Migration coordinator for the export, import, migrate and rollback operations.

The coordinator wires the configuration, the two subscription providers, the
retry policy and the progress reporter into the exporter, importer and
rollback coordinator, and owns the file layout of the exported documents.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from dc_migration.client.exceptions import ConfigurationError
from dc_migration.client.provider import CloudProvider, create_provider
from dc_migration.config import MigrationConfig
from dc_migration.migration.exporter import SubscriptionExporter
from dc_migration.migration.importer import ImportResult, ResourceImporter
from dc_migration.migration.models import Subscription
from dc_migration.migration.naming import NameMappingRegistry
from dc_migration.migration.persistence import (
    ProgressDocument,
    default_mapping_path,
    load_subscription,
    mapping_path_for,
    metadata_file_name,
    save_subscription,
)
from dc_migration.migration.rollback import RollbackCoordinator, RollbackResult
from dc_migration.reporting.progress import ProgressReporter
from dc_migration.utils.logging import get_logger
from dc_migration.utils.retry import RetryPolicy

logger = get_logger(__name__)


@dataclass
class ExportResult:
    """Outcome of an export."""

    metadata_file: Path
    subscription: Subscription
    mapping_file: Path | None = None


class MigrationCoordinator:
    """Sequences export and import for one data center.

    Providers are created from the configuration on first use unless passed in.
    """

    def __init__(
        self,
        config: MigrationConfig,
        source_provider: CloudProvider | None = None,
        destination_provider: CloudProvider | None = None,
        reporter: ProgressReporter | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ):
        """Initialize migration coordinator.

        Args:
            config: Migration configuration
            source_provider: Source subscription provider
            destination_provider: Destination subscription provider
            reporter: Progress reporter (quiet_mode applies when omitted)
            sleep: Awaitable sleep for backoff, polling and cooldowns
        """
        self.config = config
        self._source_provider = source_provider
        self._destination_provider = destination_provider
        self.reporter = reporter or ProgressReporter(quiet=config.quiet_mode)
        self._sleep = sleep or asyncio.sleep
        self.retry_policy = RetryPolicy.from_config(config.retry, sleep=self._sleep)
        self.metrics: dict[str, Any] = {"start_time": None, "end_time": None}

    @property
    def source_provider(self) -> CloudProvider:
        if self._source_provider is None:
            self._source_provider = create_provider(self.config.require_source())
        return self._source_provider

    @property
    def destination_provider(self) -> CloudProvider:
        if self._destination_provider is None:
            self._destination_provider = create_provider(self.config.require_destination())
        return self._destination_provider

    def active_providers(self) -> list[CloudProvider]:
        """Providers created so far (source first)."""
        return [p for p in (self._source_provider, self._destination_provider) if p is not None]

    async def export(
        self,
        output_path: str | Path | None = None,
        generate_mapping: bool | None = None,
        prefix: str | None = None,
    ) -> ExportResult:
        """Export the source data center to a metadata file.

        Never changes the destination subscription.

        Args:
            output_path: Metadata file to write (defaults to
                `{export_dir}/{location}-{MM-dd-yyyy-HH-mm}.json`)
            generate_mapping: Also write the name mapping document (defaults
                to the generate_mapping setting)
            prefix: Destination prefix for the mapping (defaults to the
                naming setting)

        Returns:
            ExportResult with the written paths and the exported document
        """
        source = self.config.require_source()
        self.metrics["start_time"] = datetime.now(UTC)

        exporter = SubscriptionExporter(
            self.source_provider,
            self.retry_policy,
            source.location,
            subscription_name=source.name,
            reporter=self.reporter,
        )
        subscription = await exporter.export_subscription_metadata()

        if output_path is None:
            output_path = Path(self.config.paths.export_dir) / metadata_file_name(source.location)
        metadata_file = save_subscription(subscription, output_path)
        logger.info("metadata_file_written", path=str(metadata_file))
        self.reporter.report(f"Metadata written to {metadata_file}")

        if generate_mapping is None:
            generate_mapping = self.config.generate_mapping
        mapping_file = None
        if generate_mapping:
            registry = NameMappingRegistry.build_from_subscription(
                subscription,
                self.config.naming.destination_prefix if prefix is None else prefix,
                self.config.naming.max_name_lengths,
            )
            mapping_file = registry.save(mapping_path_for(metadata_file))
            self.reporter.report(f"Name mapping written to {mapping_file}")

        self.metrics["end_time"] = datetime.now(UTC)
        return ExportResult(metadata_file=metadata_file, subscription=subscription, mapping_file=mapping_file)

    def generate_mapping(
        self,
        metadata_path: str | Path,
        prefix: str | None = None,
        output_path: str | Path | None = None,
    ) -> Path:
        """Write the name mapping document for an exported metadata file.

        Args:
            metadata_path: Exported metadata file
            prefix: Destination prefix (defaults to the naming setting)
            output_path: Mapping file to write (defaults to the metadata
                path with a .yaml extension)

        Returns:
            Path of the written mapping document
        """
        registry = NameMappingRegistry.build_from_subscription(
            load_subscription(metadata_path),
            self.config.naming.destination_prefix if prefix is None else prefix,
            self.config.naming.max_name_lengths,
        )
        return registry.save(output_path or default_mapping_path(metadata_path))

    async def import_(
        self,
        metadata_path: str | Path | None = None,
        mapping_path: str | Path | None = None,
        prefix: str | None = None,
        resume: bool | None = None,
        rollback_on_failure: bool | None = None,
    ) -> ImportResult:
        """Import a metadata file into the destination subscription.

        Arguments left as None fall back to the configuration.

        Raises:
            ConfigurationError: If no metadata file is given or configured
            ValidationError: If a pre-flight check fails
            FatalImportError: If the import failed after validation
        """
        metadata_path = metadata_path or self.config.paths.metadata_file
        if metadata_path is None:
            raise ConfigurationError("No metadata file to import (paths.metadata_file)")
        mapping_path = mapping_path or self.config.paths.mapping_file

        self.metrics["start_time"] = datetime.now(UTC)
        importer = ResourceImporter(
            self.source_provider,
            self.destination_provider,
            self.retry_policy,
            self.config,
            reporter=self.reporter,
            sleep=self._sleep,
        )
        try:
            return await importer.import_subscription_metadata(
                metadata_path,
                mapping_path=mapping_path,
                prefix=self.config.naming.destination_prefix if prefix is None else prefix,
                resume=self.config.resume_import if resume is None else resume,
                rollback_on_failure=(
                    self.config.rollback_on_failure
                    if rollback_on_failure is None
                    else rollback_on_failure
                ),
            )
        finally:
            self.metrics["end_time"] = datetime.now(UTC)

    async def migrate(
        self, prefix: str | None = None, rollback_on_failure: bool | None = None
    ) -> ImportResult:
        """Export the source data center, persist it, then import the fresh document."""
        exported = await self.export(generate_mapping=False)
        logger.info("migrate_import_phase", metadata_file=str(exported.metadata_file))
        return await self.import_(
            exported.metadata_file,
            prefix=prefix,
            resume=False,
            rollback_on_failure=rollback_on_failure,
        )

    async def rollback(self, metadata_path: str | Path, mapping_path: str | Path) -> RollbackResult:
        """Roll back the resources recorded as imported in a progress document."""
        registry = NameMappingRegistry.load(mapping_path, self.config.naming.max_name_lengths)
        document = ProgressDocument(load_subscription(metadata_path), metadata_path, registry)
        coordinator = RollbackCoordinator(
            self.destination_provider,
            self.retry_policy,
            registry,
            document,
            reporter=self.reporter,
            cooldown=self.config.performance.rollback_cooldown,
            max_concurrent=self.config.performance.max_concurrent,
            sleep=self._sleep,
        )
        return await coordinator.roll_back_resources()
