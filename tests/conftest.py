"""Pytest configuration and shared fixtures."""

from pathlib import Path

import pytest

from dc_migration.client.memory import InMemoryCloudProvider
from dc_migration.config import (
    MigrationConfig,
    PathConfig,
    PerformanceConfig,
    RetryConfig,
    SubscriptionConfig,
)
from dc_migration.migration.exporter import SubscriptionExporter
from dc_migration.migration.models import (
    AffinityGroupDetails,
    CloudServiceDetails,
    DataDisk,
    Deployment,
    DnsServer,
    LocalNetworkSite,
    NetworkConfiguration,
    OSDisk,
    StorageAccountDetails,
    Subnet,
    VirtualMachine,
    VirtualMachineDetails,
    VirtualNetworkSite,
)
from dc_migration.migration.persistence import save_subscription
from dc_migration.reporting.progress import ProgressReporter
from dc_migration.resources import PERSISTENT_VM_ROLE
from dc_migration.utils.retry import RetryPolicy

SOURCE_LOCATION = "West US"
DESTINATION_LOCATION = "East US"


def media_link(account: str, blob: str, container: str = "vhds") -> str:
    return f"https://{account}.blob.core.windows.net/{container}/{blob}"


def make_vm(
    role_name: str,
    os_disk: str,
    data_disks: list[str] | None = None,
    role_size: str = "Small",
    account: str = "sa1",
    role_type: str = PERSISTENT_VM_ROLE,
) -> VirtualMachine:
    return VirtualMachine(
        details=VirtualMachineDetails(
            role_name=role_name,
            role_size=role_size,
            role_type=role_type,
            os_disk=OSDisk(name=os_disk, media_link=media_link(account, f"{os_disk}.vhd")),
            data_disks=[
                DataDisk(name=name, media_link=media_link(account, f"{name}.vhd"), lun=lun)
                for lun, name in enumerate(data_disks or [])
            ],
        )
    )


def seed_source(provider: InMemoryCloudProvider) -> InMemoryCloudProvider:
    """Populate a source subscription with one data center and unrelated resources.

    West US holds affinity group ag1, storage account sa1, cloud service svc1
    (deployment dep1 with vm1 and vm2) and virtual network vnet1. Resources
    in North Europe must never be exported.
    """
    provider.add_affinity_group(
        AffinityGroupDetails(name="ag1", label="ag1", location=SOURCE_LOCATION)
    )
    provider.add_affinity_group(
        AffinityGroupDetails(name="ag2", label="ag2", location="North Europe")
    )
    provider.add_storage_account(
        StorageAccountDetails(name="sa1", label="sa1", affinity_group="ag1")
    )
    provider.add_storage_account(
        StorageAccountDetails(name="sa9", label="sa9", location="North Europe")
    )

    deployment = Deployment(
        name="dep1",
        label="dep1",
        virtual_network_name="vnet1",
        virtual_machines=[
            make_vm("vm1", "disk1"),
            make_vm("vm2", "disk2", data_disks=["data2"], role_size="Medium"),
            make_vm("web1", "web1disk", role_type="WebRole"),
        ],
    )
    provider.add_cloud_service(
        CloudServiceDetails(service_name="svc1", label="svc1", affinity_group="ag1"), deployment
    )
    provider.add_disk_blobs(deployment)
    provider.add_cloud_service(
        CloudServiceDetails(service_name="svc9", label="svc9", location="North Europe")
    )

    provider.network_configuration = NetworkConfiguration(
        dns_servers=[
            DnsServer(name="dns1", ip_address="10.0.0.4"),
            DnsServer(name="dnsx", ip_address="10.9.0.4"),
        ],
        local_network_sites=[
            LocalNetworkSite(
                name="local1", address_prefixes=["192.168.0.0/24"], vpn_gateway_address="1.2.3.4"
            )
        ],
        virtual_network_sites=[
            VirtualNetworkSite(
                name="vnet1",
                affinity_group="ag1",
                address_prefixes=["10.0.0.0/16"],
                subnets=[Subnet(name="subnet1", address_prefix="10.0.0.0/24")],
                dns_server_refs=["dns1"],
                local_network_site_ref="local1",
            ),
            VirtualNetworkSite(
                name="vnet9",
                location="North Europe",
                address_prefixes=["10.9.0.0/16"],
                dns_server_refs=["dnsx"],
            ),
        ],
    )
    return provider


@pytest.fixture
def source_provider() -> InMemoryCloudProvider:
    """Source subscription seeded with the West US data center."""
    return seed_source(InMemoryCloudProvider(subscription_id="source"))


@pytest.fixture
def destination_provider() -> InMemoryCloudProvider:
    """Empty destination subscription."""
    return InMemoryCloudProvider(subscription_id="destination")


@pytest.fixture
def sleeps() -> list[float]:
    """Delays requested through the fake sleep."""
    return []


@pytest.fixture
def fake_sleep(sleeps):
    """Awaitable sleep that records the delay and returns immediately."""

    async def sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return sleep


@pytest.fixture
def retry_policy(fake_sleep) -> RetryPolicy:
    """Three attempts without real delays."""
    return RetryPolicy(
        retry_count=3, min_backoff=0, max_backoff=0, delta_backoff=0, sleep=fake_sleep
    )


@pytest.fixture
def reporter() -> ProgressReporter:
    return ProgressReporter()


@pytest.fixture
def export_dir(tmp_path: Path) -> Path:
    return tmp_path / "exports"


@pytest.fixture
def migration_config(export_dir: Path) -> MigrationConfig:
    """Configuration for a West US to East US migration with no waiting."""
    return MigrationConfig(
        source=SubscriptionConfig(subscription_id="source", location=SOURCE_LOCATION),
        destination=SubscriptionConfig(subscription_id="destination", location=DESTINATION_LOCATION),
        retry=RetryConfig(retry_count=3, min_backoff=0, max_backoff=0, delta_backoff=0),
        paths=PathConfig(export_dir=str(export_dir)),
        performance=PerformanceConfig(max_concurrent=4, blob_poll_interval=0, rollback_cooldown=0),
    )


@pytest.fixture
async def exported_subscription(source_provider, retry_policy):
    """Document exported from the seeded source for the West US data center."""
    exporter = SubscriptionExporter(source_provider, retry_policy, SOURCE_LOCATION)
    return await exporter.export_subscription_metadata()


@pytest.fixture
def metadata_file(exported_subscription, export_dir: Path) -> Path:
    """Exported document written where an export would put it."""
    return save_subscription(exported_subscription, export_dir / "West US-01-02-2026-03-04.json")
