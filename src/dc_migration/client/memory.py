"""In-memory cloud provider.

Simulates a subscription's management and blob endpoints over plain
dictionaries. It backs dry runs from the CLI (its state can be loaded from and
saved to a JSON file) and the test suite, which uses call recording and fault
injection to exercise retries, resumption and rollback.
"""

import asyncio
import json
import uuid
from collections import defaultdict, deque
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Any
from urllib.parse import urlencode

from pydantic import ValidationError as PydanticValidationError

from dc_migration.client.exceptions import (
    CloudError,
    ConfigurationError,
    NotFoundError,
)
from dc_migration.client.provider import (
    BlobProperties,
    CopyStatus,
    PostShutdownAction,
    ReservedIP,
    SubscriptionCapacity,
)
from dc_migration.migration.models import (
    AffinityGroupDetails,
    BlobLocation,
    CloudServiceDetails,
    Deployment,
    NetworkConfiguration,
    StorageAccountDetails,
    VirtualMachine,
    VirtualMachineDetails,
)
from dc_migration.resources import PRODUCTION_SLOT
from dc_migration.utils.logging import get_logger

logger = get_logger(__name__)

CONFLICT_ERROR = "ConflictError"
ROLE_STATUS_READY = "ReadyRole"
DEFAULT_BLOB_SIZE = 1024 * 1024

# Methods that change remote state are recorded in `calls`
MUTATING_METHODS = frozenset(
    {
        "create_affinity_group",
        "delete_affinity_group",
        "create_storage_account",
        "delete_storage_account",
        "create_cloud_service",
        "delete_cloud_service",
        "create_deployment",
        "create_virtual_machine",
        "delete_virtual_machine",
        "shutdown_virtual_machine",
        "set_network_configuration",
        "abort_blob_copy",
        "delete_blob",
        "create_container_if_not_exists",
        "start_blob_copy",
    }
)

CREATE_METHODS = frozenset(
    {
        "create_affinity_group",
        "create_storage_account",
        "create_cloud_service",
        "create_deployment",
        "create_virtual_machine",
        "set_network_configuration",
        "start_blob_copy",
    }
)


@dataclass
class _Blob:
    size: int
    copy_status: CopyStatus | None = None
    copy_id: str | None = None
    bytes_copied: int | None = None
    polls_remaining: int = 0
    source_url: str | None = None


@dataclass
class _Limits:
    max_hosted_services: int = 20
    max_storage_accounts: int = 100
    max_core_count: int = 20
    max_virtual_network_sites: int = 100
    max_dns_servers: int = 9
    max_local_network_sites: int = 20


def _key(name: str) -> str:
    return name.lower()


class InMemoryCloudProvider:
    """CloudProvider implementation backed by in-process state."""

    def __init__(
        self,
        subscription_id: str = "memory",
        copy_polls: int = 1,
        role_sizes: dict[str, int] | None = None,
        limits: dict[str, int] | None = None,
    ):
        """Initialize an empty simulated subscription.

        Args:
            subscription_id: Identifier reported in logs
            copy_polls: Status polls a blob copy stays pending before it settles
            role_sizes: Role size name to core count
            limits: Overrides for the subscription quota maxima
        """
        self.subscription_id = subscription_id
        self.copy_polls = copy_polls
        self.role_sizes = dict(role_sizes or {"Small": 1, "Medium": 2, "Large": 4, "ExtraLarge": 8})
        self.limits = _Limits(**(limits or {}))

        self.affinity_groups: dict[str, AffinityGroupDetails] = {}
        self.storage_accounts: dict[str, StorageAccountDetails] = {}
        self.cloud_services: dict[str, CloudServiceDetails] = {}
        self.deployments: dict[str, Deployment] = {}
        self.role_status: dict[tuple[str, str], str] = {}
        self.network_configuration: NetworkConfiguration | None = None
        self.reserved_ips: list[ReservedIP] = []
        self.containers: set[tuple[str, str]] = set()
        self.blobs: dict[tuple[str, str, str], _Blob] = {}
        self.unavailable_names: set[str] = set()
        self.copy_outcomes: dict[tuple[str, str, str], CopyStatus] = {}

        self.state_file: Path | None = None
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self._failures: dict[str, deque[BaseException]] = defaultdict(deque)

    # -- Test and seeding helpers -------------------------------------------

    def fail_next(self, method: str, *errors: BaseException) -> None:
        """Make the next calls of a method raise the given errors, in order."""
        self._failures[method].extend(errors)

    def calls_to(self, method: str) -> list[tuple[Any, ...]]:
        """Arguments of every recorded call of a mutating method."""
        return [args for name, args in self.calls if name == method]

    def creation_calls(self) -> list[tuple[str, tuple[Any, ...]]]:
        """Every recorded call that creates a remote resource."""
        return [(name, args) for name, args in self.calls if name in CREATE_METHODS]

    def add_affinity_group(self, details: AffinityGroupDetails) -> None:
        self.affinity_groups[_key(details.name)] = details

    def add_storage_account(self, details: StorageAccountDetails) -> None:
        self.storage_accounts[_key(details.name)] = details

    def add_cloud_service(
        self,
        details: CloudServiceDetails,
        deployment: Deployment | None = None,
        role_status: str = ROLE_STATUS_READY,
    ) -> None:
        self.cloud_services[_key(details.service_name)] = details
        if deployment is not None:
            self.deployments[_key(details.service_name)] = deployment
            for vm in deployment.virtual_machines:
                self.role_status[(_key(details.service_name), vm.details.role_name)] = role_status

    def add_blob(self, account: str, container: str, blob: str, size: int = DEFAULT_BLOB_SIZE) -> None:
        self.containers.add((account, container))
        self.blobs[(account, container, blob)] = _Blob(size=size)

    def add_disk_blobs(self, deployment: Deployment) -> None:
        """Create the blobs behind every disk media link of a deployment."""
        for vm in deployment.virtual_machines:
            for _, disk in vm.details.disks():
                location = BlobLocation.from_media_link(disk.media_link)
                self.add_blob(location.account, location.container, location.blob)

    def add_reserved_ip(self, reserved_ip: ReservedIP) -> None:
        self.reserved_ips.append(reserved_ip)

    # -- Internals -------------------------------------------------------------

    async def _enter(self, method: str, *args: Any) -> None:
        # Yield so concurrent callers interleave like real remote calls
        await asyncio.sleep(0)
        failures = self._failures.get(method)
        if failures:
            raise failures.popleft()
        if method in MUTATING_METHODS:
            self.calls.append((method, args))

    def _service(self, service_name: str) -> CloudServiceDetails:
        service = self.cloud_services.get(_key(service_name))
        if service is None:
            raise NotFoundError(
                "Cloud service not found", resource_type="CloudService", resource_name=service_name
            )
        return service

    def _deployment(self, service_name: str, deployment_name: str | None = None) -> Deployment:
        deployment = self.deployments.get(_key(service_name))
        if deployment is None or (deployment_name is not None and deployment.name != deployment_name):
            raise NotFoundError(
                "Deployment not found",
                resource_type="Deployment",
                resource_name=deployment_name or service_name,
            )
        return deployment

    def _role(self, deployment: Deployment, role_name: str) -> VirtualMachine:
        for vm in deployment.virtual_machines:
            if vm.details.role_name == role_name:
                return vm
        raise NotFoundError(
            "Virtual machine not found", resource_type="VirtualMachine", resource_name=role_name
        )

    def _blob(self, account: str, container: str, blob: str) -> _Blob:
        entry = self.blobs.get((account, container, blob))
        if entry is None:
            raise NotFoundError(
                "Blob not found", resource_type="Blob", resource_name=f"{account}/{container}/{blob}"
            )
        return entry

    @staticmethod
    def _conflict(resource_type: str, name: str) -> CloudError:
        return CloudError(
            "Resource already exists",
            error_code=CONFLICT_ERROR,
            status_code=409,
            resource_type=resource_type,
            resource_name=name,
        )

    # -- Affinity groups -------------------------------------------------------

    async def list_affinity_groups(self) -> list[AffinityGroupDetails]:
        await self._enter("list_affinity_groups")
        return [ag.model_copy(deep=True) for ag in self.affinity_groups.values()]

    async def create_affinity_group(self, details: AffinityGroupDetails) -> None:
        await self._enter("create_affinity_group", details.name)
        if _key(details.name) in self.affinity_groups:
            raise self._conflict("AffinityGroup", details.name)
        self.affinity_groups[_key(details.name)] = details.model_copy(deep=True)

    async def delete_affinity_group(self, name: str) -> None:
        await self._enter("delete_affinity_group", name)
        if self.affinity_groups.pop(_key(name), None) is None:
            raise NotFoundError(
                "Affinity group not found", resource_type="AffinityGroup", resource_name=name
            )

    # -- Storage accounts ------------------------------------------------------

    async def list_storage_accounts(self) -> list[StorageAccountDetails]:
        await self._enter("list_storage_accounts")
        return [sa.model_copy(deep=True) for sa in self.storage_accounts.values()]

    async def check_storage_name_availability(self, name: str) -> bool:
        await self._enter("check_storage_name_availability", name)
        return _key(name) not in self.storage_accounts and _key(name) not in self.unavailable_names

    async def create_storage_account(self, details: StorageAccountDetails) -> None:
        await self._enter("create_storage_account", details.name)
        if _key(details.name) in self.storage_accounts:
            raise self._conflict("StorageAccount", details.name)
        self.storage_accounts[_key(details.name)] = details.model_copy(deep=True)

    async def delete_storage_account(self, name: str) -> None:
        await self._enter("delete_storage_account", name)
        if self.storage_accounts.pop(_key(name), None) is None:
            raise NotFoundError(
                "Storage account not found", resource_type="StorageAccount", resource_name=name
            )
        self.containers = {c for c in self.containers if c[0] != name}
        self.blobs = {k: v for k, v in self.blobs.items() if k[0] != name}

    # -- Cloud services --------------------------------------------------------

    async def list_cloud_services(self) -> list[CloudServiceDetails]:
        await self._enter("list_cloud_services")
        return [cs.model_copy(deep=True) for cs in self.cloud_services.values()]

    async def check_service_name_availability(self, name: str) -> bool:
        await self._enter("check_service_name_availability", name)
        return _key(name) not in self.cloud_services and _key(name) not in self.unavailable_names

    async def create_cloud_service(self, details: CloudServiceDetails) -> None:
        await self._enter("create_cloud_service", details.service_name)
        if _key(details.service_name) in self.cloud_services:
            raise self._conflict("CloudService", details.service_name)
        self.cloud_services[_key(details.service_name)] = details.model_copy(deep=True)

    async def delete_cloud_service(self, name: str) -> None:
        await self._enter("delete_cloud_service", name)
        if self.cloud_services.pop(_key(name), None) is None:
            raise NotFoundError(
                "Cloud service not found", resource_type="CloudService", resource_name=name
            )
        self.deployments.pop(_key(name), None)
        self.role_status = {k: v for k, v in self.role_status.items() if k[0] != _key(name)}

    async def get_deployment(self, service_name: str, slot: str = PRODUCTION_SLOT) -> Deployment:
        await self._enter("get_deployment", service_name, slot)
        self._service(service_name)
        deployment = self._deployment(service_name)
        if deployment.slot != slot:
            raise NotFoundError(
                f"No deployment in slot {slot}", resource_type="Deployment", resource_name=service_name
            )
        return deployment.model_copy(deep=True)

    async def create_deployment(
        self, service_name: str, deployment: Deployment, first_vm: VirtualMachineDetails
    ) -> None:
        await self._enter("create_deployment", service_name, deployment.name, first_vm.role_name)
        self._service(service_name)
        if _key(service_name) in self.deployments:
            raise self._conflict("Deployment", deployment.name)

        created = deployment.model_copy(deep=True)
        created.virtual_machines = [VirtualMachine(details=first_vm.model_copy(deep=True))]
        created.is_imported = False
        self.deployments[_key(service_name)] = created
        self.role_status[(_key(service_name), first_vm.role_name)] = ROLE_STATUS_READY

    async def get_virtual_machine(
        self, service_name: str, deployment_name: str, role_name: str
    ) -> VirtualMachineDetails:
        await self._enter("get_virtual_machine", service_name, deployment_name, role_name)
        deployment = self._deployment(service_name, deployment_name)
        return self._role(deployment, role_name).details.model_copy(deep=True)

    async def create_virtual_machine(
        self, service_name: str, deployment_name: str, vm: VirtualMachineDetails
    ) -> None:
        await self._enter("create_virtual_machine", service_name, deployment_name, vm.role_name)
        deployment = self._deployment(service_name, deployment_name)
        if any(existing.details.role_name == vm.role_name for existing in deployment.virtual_machines):
            raise self._conflict("VirtualMachine", vm.role_name)
        deployment.virtual_machines.append(VirtualMachine(details=vm.model_copy(deep=True)))
        self.role_status[(_key(service_name), vm.role_name)] = ROLE_STATUS_READY

    async def delete_virtual_machine(
        self, service_name: str, deployment_name: str, role_name: str
    ) -> None:
        await self._enter("delete_virtual_machine", service_name, deployment_name, role_name)
        deployment = self._deployment(service_name, deployment_name)
        vm = self._role(deployment, role_name)
        deployment.virtual_machines.remove(vm)
        self.role_status.pop((_key(service_name), role_name), None)

    async def get_role_status(self, service_name: str, deployment_name: str, role_name: str) -> str:
        await self._enter("get_role_status", service_name, deployment_name, role_name)
        deployment = self._deployment(service_name, deployment_name)
        self._role(deployment, role_name)
        return self.role_status.get((_key(service_name), role_name), ROLE_STATUS_READY)

    async def shutdown_virtual_machine(
        self,
        service_name: str,
        deployment_name: str,
        role_name: str,
        post_shutdown_action: PostShutdownAction,
    ) -> None:
        await self._enter(
            "shutdown_virtual_machine", service_name, deployment_name, role_name, post_shutdown_action
        )
        deployment = self._deployment(service_name, deployment_name)
        self._role(deployment, role_name)
        status = (
            "StoppedDeallocated"
            if post_shutdown_action == PostShutdownAction.STOPPED_DEALLOCATED
            else "StoppedVM"
        )
        self.role_status[(_key(service_name), role_name)] = status

    # -- Network and subscription -------------------------------------------

    async def get_network_configuration(self) -> NetworkConfiguration:
        await self._enter("get_network_configuration")
        if self.network_configuration is None:
            raise NotFoundError("Network configuration not found", resource_type="NetworkConfiguration")
        return self.network_configuration.model_copy(deep=True)

    async def set_network_configuration(self, configuration: NetworkConfiguration) -> None:
        await self._enter(
            "set_network_configuration",
            tuple(site.name for site in configuration.virtual_network_sites),
        )
        stored = configuration.model_copy(deep=True)
        stored.is_imported = False
        self.network_configuration = stored

    async def list_reserved_ips(self) -> list[ReservedIP]:
        await self._enter("list_reserved_ips")
        return [ReservedIP(**asdict(ip)) for ip in self.reserved_ips]

    async def list_role_sizes(self) -> dict[str, int]:
        await self._enter("list_role_sizes")
        return dict(self.role_sizes)

    async def get_subscription_capacity(self) -> SubscriptionCapacity:
        await self._enter("get_subscription_capacity")
        network = self.network_configuration or NetworkConfiguration()
        cores = sum(
            self.role_sizes.get(vm.details.role_size or "", 0)
            for deployment in self.deployments.values()
            for vm in deployment.virtual_machines
        )
        return SubscriptionCapacity(
            max_hosted_services=self.limits.max_hosted_services,
            current_hosted_services=len(self.cloud_services),
            max_storage_accounts=self.limits.max_storage_accounts,
            current_storage_accounts=len(self.storage_accounts),
            max_core_count=self.limits.max_core_count,
            current_core_count=cores,
            max_virtual_network_sites=self.limits.max_virtual_network_sites,
            current_virtual_network_sites=len(network.virtual_network_sites),
            max_dns_servers=self.limits.max_dns_servers,
            current_dns_servers=len(network.dns_servers),
            max_local_network_sites=self.limits.max_local_network_sites,
            current_local_network_sites=len(network.local_network_sites),
        )

    # -- Blobs -----------------------------------------------------------------

    async def blob_exists(self, account: str, container: str, blob: str) -> bool:
        await self._enter("blob_exists", account, container, blob)
        return (account, container, blob) in self.blobs

    async def get_blob_properties(self, account: str, container: str, blob: str) -> BlobProperties:
        await self._enter("get_blob_properties", account, container, blob)
        entry = self._blob(account, container, blob)

        if entry.copy_status == CopyStatus.PENDING:
            if entry.polls_remaining > 0:
                entry.polls_remaining -= 1
                progress = self.copy_polls - entry.polls_remaining
                entry.bytes_copied = entry.size * progress // max(self.copy_polls + 1, 1)
            else:
                outcome = self.copy_outcomes.get((account, container, blob), CopyStatus.SUCCESS)
                entry.copy_status = outcome
                if outcome == CopyStatus.SUCCESS:
                    entry.bytes_copied = entry.size

        return BlobProperties(
            copy_status=entry.copy_status,
            copy_id=entry.copy_id,
            bytes_copied=entry.bytes_copied,
            total_bytes=entry.size if entry.copy_status is not None else None,
        )

    async def abort_blob_copy(self, account: str, container: str, blob: str, copy_id: str) -> None:
        await self._enter("abort_blob_copy", account, container, blob, copy_id)
        entry = self._blob(account, container, blob)
        if entry.copy_id != copy_id:
            raise CloudError(
                "Copy id does not match",
                error_code="CopyIdMismatch",
                status_code=409,
                resource_type="Blob",
                resource_name=blob,
            )
        entry.copy_status = CopyStatus.ABORTED

    async def delete_blob(self, account: str, container: str, blob: str) -> None:
        await self._enter("delete_blob", account, container, blob)
        self._blob(account, container, blob)
        del self.blobs[(account, container, blob)]

    async def create_container_if_not_exists(self, account: str, container: str) -> bool:
        await self._enter("create_container_if_not_exists", account, container)
        if (account, container) in self.containers:
            return False
        self.containers.add((account, container))
        return True

    async def generate_read_sas(
        self, account: str, container: str, blob: str, start: datetime, expiry: datetime
    ) -> str:
        await self._enter("generate_read_sas", account, container, blob)
        self._blob(account, container, blob)
        token = urlencode(
            {
                "sp": "r",
                "st": start.strftime("%Y-%m-%dT%H:%M:%SZ"),
                "se": expiry.strftime("%Y-%m-%dT%H:%M:%SZ"),
                "sig": uuid.uuid4().hex,
            }
        )
        return f"{BlobLocation(account, container, blob).to_media_link()}?{token}"

    async def start_blob_copy(self, account: str, container: str, blob: str, source_url: str) -> str:
        await self._enter("start_blob_copy", account, container, blob)
        if (account, container) not in self.containers:
            raise NotFoundError(
                "Container not found", resource_type="Blob", resource_name=f"{account}/{container}"
            )
        copy_id = uuid.uuid4().hex
        self.blobs[(account, container, blob)] = _Blob(
            size=DEFAULT_BLOB_SIZE,
            copy_status=CopyStatus.PENDING,
            copy_id=copy_id,
            bytes_copied=0,
            polls_remaining=self.copy_polls,
            source_url=source_url,
        )
        return copy_id

    # -- State persistence ---------------------------------------------------

    def to_state(self) -> dict[str, Any]:
        """Snapshot the simulated subscription as JSON-safe data."""
        services = []
        for key, details in self.cloud_services.items():
            deployment = self.deployments.get(key)
            services.append(
                {
                    "details": details.model_dump(mode="json"),
                    "deployment": deployment.model_dump(mode="json") if deployment else None,
                    "role_status": {
                        role: status for (svc, role), status in self.role_status.items() if svc == key
                    },
                }
            )
        return {
            "subscription_id": self.subscription_id,
            "copy_polls": self.copy_polls,
            "role_sizes": self.role_sizes,
            "limits": asdict(self.limits),
            "affinity_groups": [ag.model_dump(mode="json") for ag in self.affinity_groups.values()],
            "storage_accounts": [sa.model_dump(mode="json") for sa in self.storage_accounts.values()],
            "cloud_services": services,
            "network_configuration": (
                self.network_configuration.model_dump(mode="json")
                if self.network_configuration
                else None
            ),
            "reserved_ips": [asdict(ip) for ip in self.reserved_ips],
            "blobs": [
                {
                    "account": account,
                    "container": container,
                    "blob": blob,
                    "size": entry.size,
                    "copy_status": entry.copy_status.value if entry.copy_status else None,
                }
                for (account, container, blob), entry in self.blobs.items()
            ],
            "containers": [list(c) for c in sorted(self.containers)],
            "unavailable_names": sorted(self.unavailable_names),
        }

    @classmethod
    def from_state(cls, state: dict[str, Any], subscription_id: str | None = None) -> "InMemoryCloudProvider":
        """Rebuild a provider from to_state() output.

        Raises:
            ConfigurationError: If the state is malformed
        """
        try:
            provider = cls(
                subscription_id=subscription_id or state.get("subscription_id", "memory"),
                copy_polls=int(state.get("copy_polls", 1)),
                role_sizes=state.get("role_sizes"),
                limits=state.get("limits"),
            )
            for ag in state.get("affinity_groups", []):
                provider.add_affinity_group(AffinityGroupDetails.model_validate(ag))
            for sa in state.get("storage_accounts", []):
                provider.add_storage_account(StorageAccountDetails.model_validate(sa))
            for service in state.get("cloud_services", []):
                details = CloudServiceDetails.model_validate(service["details"])
                deployment = service.get("deployment")
                provider.add_cloud_service(
                    details,
                    Deployment.model_validate(deployment) if deployment else None,
                )
                for role, status in service.get("role_status", {}).items():
                    provider.role_status[(_key(details.service_name), role)] = status
            if state.get("network_configuration"):
                provider.network_configuration = NetworkConfiguration.model_validate(
                    state["network_configuration"]
                )
            for ip in state.get("reserved_ips", []):
                provider.add_reserved_ip(ReservedIP(**ip))
            for container in state.get("containers", []):
                provider.containers.add((container[0], container[1]))
            for blob in state.get("blobs", []):
                provider.add_blob(blob["account"], blob["container"], blob["blob"], blob.get("size", DEFAULT_BLOB_SIZE))
                if blob.get("copy_status"):
                    provider.blobs[(blob["account"], blob["container"], blob["blob"])].copy_status = CopyStatus(
                        blob["copy_status"]
                    )
            provider.unavailable_names = {_key(n) for n in state.get("unavailable_names", [])}
        except (KeyError, TypeError, ValueError, PydanticValidationError) as e:
            raise ConfigurationError(f"Invalid in-memory provider state: {e}") from e
        return provider

    @classmethod
    def from_state_file(cls, path: str | Path, subscription_id: str | None = None) -> "InMemoryCloudProvider":
        """Load a provider from a JSON state file.

        Raises:
            ConfigurationError: If the file is missing or malformed
        """
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Provider state file not found: {path}")
        try:
            state = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot read provider state file {path}: {e}") from e

        provider = cls.from_state(state, subscription_id=subscription_id)
        provider.state_file = path
        logger.debug("provider_state_loaded", path=str(path), subscription_id=provider.subscription_id)
        return provider

    def save_state(self, path: str | Path | None = None) -> Path:
        """Write the simulated subscription to a JSON state file."""
        target = Path(path) if path is not None else self.state_file
        if target is None:
            raise ConfigurationError("No state file configured for the in-memory provider")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(json.dumps(self.to_state(), indent=2))
        logger.debug("provider_state_saved", path=str(target))
        return target
