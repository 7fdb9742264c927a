"""Migration engine: export, resumable import and rollback of data center resources."""

from dc_migration.migration.coordinator import ExportResult, MigrationCoordinator
from dc_migration.migration.exporter import SubscriptionExporter
from dc_migration.migration.importer import ImportResult, ResourceImporter
from dc_migration.migration.naming import NameMappingRegistry
from dc_migration.migration.rollback import RollbackCoordinator, RollbackResult

__all__ = [
    "ExportResult",
    "ImportResult",
    "MigrationCoordinator",
    "NameMappingRegistry",
    "ResourceImporter",
    "RollbackCoordinator",
    "RollbackResult",
    "SubscriptionExporter",
]
