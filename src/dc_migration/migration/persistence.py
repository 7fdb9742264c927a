"""Persistence of subscription documents and import progress.

The importer keeps two copies of the subscription document. The working copy
is renamed to destination names and drives the remote calls. The source copy
keeps the original names and records the is_imported flags; it is rewritten
after every committed resource so an interrupted import can be resumed from
it.
"""

import asyncio
import json
import os
import tempfile
from datetime import datetime
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from dc_migration.client.exceptions import StateError
from dc_migration.migration.models import DataCenter, Subscription
from dc_migration.migration.naming import NameMappingRegistry
from dc_migration.resources import ResourceType
from dc_migration.utils.logging import get_logger

logger = get_logger(__name__)

IMPORT_STATUS_SUFFIX = "_ImportStatus"
MAPPING_EXTENSION = ".yaml"


def metadata_file_name(location: str, now: datetime | None = None) -> str:
    """Build the export file name `{location}-{MM-dd-yyyy-HH-mm}.json`."""
    now = now or datetime.now()
    return f"{location}-{now:%m-%d-%Y-%H-%M}.json"


def import_status_path(metadata_path: str | Path) -> Path:
    """Path of the progress copy written next to the metadata file."""
    metadata_path = Path(metadata_path)
    return metadata_path.with_name(f"{metadata_path.stem}{IMPORT_STATUS_SUFFIX}.json")


def mapping_path_for(metadata_path: str | Path) -> Path:
    """Path of the name mapping document generated for a metadata file."""
    return Path(metadata_path).with_suffix(MAPPING_EXTENSION)


def default_mapping_path(metadata_path: str | Path) -> Path:
    """Mapping document paired with a metadata or progress file.

    A progress file shares the mapping of the metadata file it was copied from.
    """
    metadata_path = Path(metadata_path)
    stem = metadata_path.stem
    if stem.endswith(IMPORT_STATUS_SUFFIX):
        stem = stem[: -len(IMPORT_STATUS_SUFFIX)]
    return metadata_path.with_name(f"{stem}{MAPPING_EXTENSION}")


def load_subscription(path: str | Path) -> Subscription:
    """Load a subscription document.

    Raises:
        StateError: If the file is missing, unreadable or not a valid document
    """
    path = Path(path)
    if not path.exists():
        raise StateError(f"Metadata file not found: {path}")
    try:
        subscription = Subscription.model_validate_json(path.read_text())
    except (OSError, PydanticValidationError, ValueError) as e:
        raise StateError(f"Invalid metadata file {path}: {e}") from e

    logger.debug("subscription_loaded", path=str(path), data_centers=len(subscription.data_centers))
    return subscription


def save_subscription(subscription: Subscription, path: str | Path) -> Path:
    """Write a subscription document as indented JSON.

    The document is written to a temporary file in the same directory and
    moved into place, so readers never observe a partial write.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = subscription.model_dump_json(indent=2)

    fd, temp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(payload)
        os.replace(temp_name, path)
    except OSError as e:
        Path(temp_name).unlink(missing_ok=True)
        raise StateError(f"Failed to write metadata file {path}: {e}") from e

    return path


def _same_name(left: str | None, right: str | None) -> bool:
    return left is not None and right is not None and left.lower() == right.lower()


class ProgressDocument:
    """Source copy of the subscription document with serialized writes.

    Workers running in parallel within a tier call mark() as each resource
    commits. Every mark rewrites the whole document under a single lock.
    """

    def __init__(self, subscription: Subscription, path: str | Path, registry: NameMappingRegistry):
        """Initialize progress document.

        Args:
            subscription: Source copy of the document (original names)
            path: File the document is persisted to
            registry: Name mapping used to translate destination names back
        """
        self.subscription = subscription
        self.path = Path(path)
        self.registry = registry
        self._lock = asyncio.Lock()

    async def mark(
        self,
        resource_type: ResourceType,
        destination_name: str | None = None,
        imported: bool = True,
        parent_destination: str | None = None,
    ) -> None:
        """Set the is_imported flag of a resource and persist the document.

        Args:
            resource_type: Type of the committed (or rolled back) resource
            destination_name: Destination name of the resource. For a data
                center this is its location; None marks every data center.
            imported: New value of the flag
            parent_destination: Destination name of the owning cloud service,
                required for deployments and virtual machines
        """
        async with self._lock:
            for data_center in self.subscription.data_centers:
                self._apply(data_center, resource_type, destination_name, imported, parent_destination)
            self._persist()

        logger.debug(
            "progress_recorded",
            resource_type=str(resource_type),
            resource_name=destination_name,
            imported=imported,
        )

    def _apply(
        self,
        data_center: DataCenter,
        resource_type: ResourceType,
        destination_name: str | None,
        imported: bool,
        parent_destination: str | None,
    ) -> None:
        resolve = self.registry.resolve_source

        if resource_type == ResourceType.AFFINITY_GROUP:
            source_name = resolve(ResourceType.AFFINITY_GROUP, destination_name)
            for affinity_group in data_center.affinity_groups:
                if _same_name(affinity_group.details.name, source_name):
                    affinity_group.is_imported = imported

        elif resource_type == ResourceType.STORAGE_ACCOUNT:
            source_name = resolve(ResourceType.STORAGE_ACCOUNT, destination_name)
            for storage_account in data_center.storage_accounts:
                if _same_name(storage_account.details.name, source_name):
                    storage_account.is_imported = imported

        elif resource_type == ResourceType.NETWORK_CONFIGURATION:
            if data_center.network_configuration is not None:
                data_center.network_configuration.is_imported = imported

        elif resource_type == ResourceType.CLOUD_SERVICE:
            source_name = resolve(ResourceType.CLOUD_SERVICE, destination_name)
            for service in data_center.cloud_services:
                if _same_name(service.details.service_name, source_name):
                    service.is_imported = imported

        elif resource_type in (ResourceType.DEPLOYMENT, ResourceType.VIRTUAL_MACHINE):
            service_name = resolve(ResourceType.CLOUD_SERVICE, parent_destination)
            source_name = resolve(
                resource_type,
                destination_name,
                ResourceType.CLOUD_SERVICE,
                parent_destination,
            )
            for service in data_center.cloud_services:
                deployment = service.deployment
                if deployment is None or not _same_name(service.details.service_name, service_name):
                    continue
                if resource_type == ResourceType.DEPLOYMENT:
                    if _same_name(deployment.name, source_name):
                        deployment.is_imported = imported
                else:
                    for vm in deployment.virtual_machines:
                        if _same_name(vm.details.role_name, source_name):
                            vm.is_imported = imported

        elif resource_type == ResourceType.DATA_CENTER:
            if destination_name is None or _same_name(data_center.location_name, destination_name):
                data_center.is_imported = imported

    async def flush(self) -> None:
        """Persist the document as it currently is."""
        async with self._lock:
            self._persist()
        logger.info("progress_document_flushed", path=str(self.path))

    def _persist(self) -> None:
        save_subscription(self.subscription, self.path)
