"""Tests for disk replication."""

from datetime import UTC, datetime
from urllib.parse import parse_qs, urlparse

import pytest

from dc_migration.client.exceptions import BlobCopyError
from dc_migration.client.provider import CopyStatus, PostShutdownAction
from dc_migration.config import SubscriptionConfig
from dc_migration.migration.blobs import BlobReplicator
from dc_migration.migration.models import BlobLocation
from dc_migration.migration.naming import NameMappingRegistry
from dc_migration.migration.validator import ImportValidator

from conftest import DESTINATION_LOCATION

NOW = datetime(2026, 5, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def registry(exported_subscription) -> NameMappingRegistry:
    return NameMappingRegistry.build_from_subscription(exported_subscription, "dc")


@pytest.fixture
async def data_center(exported_subscription, source_provider, destination_provider, retry_policy, registry):
    """Working copy of the data center, renamed to destination names."""
    working = exported_subscription.model_copy(deep=True)
    validator = ImportValidator(
        destination_provider,
        source_provider,
        retry_policy,
        registry,
        SubscriptionConfig(subscription_id="destination", location=DESTINATION_LOCATION),
    )
    await validator.validate_and_rename(working)
    return working.data_centers[0]


@pytest.fixture
def replicator(source_provider, destination_provider, retry_policy, registry, reporter, fake_sleep):
    return BlobReplicator(
        source_provider,
        destination_provider,
        retry_policy,
        registry,
        reporter=reporter,
        poll_interval=7,
        max_concurrent=2,
        clock=lambda: NOW,
        sleep=fake_sleep,
    )


class TestReplicate:
    """Test BlobReplicator.replicate()."""

    async def test_copies_every_disk(self, replicator, data_center, destination_provider):
        """Test each OS and data disk lands in the mapped account with the same container and blob."""
        copied = await replicator.replicate(data_center)

        assert copied == 3
        for blob in ("disk1.vhd", "disk2.vhd", "data2.vhd"):
            entry = destination_provider.blobs[("dcsa1", "vhds", blob)]
            assert entry.copy_status == CopyStatus.SUCCESS

    async def test_source_vms_shut_down_first(self, replicator, data_center, source_provider):
        """Test running source VMs are stopped without deallocation."""
        await replicator.replicate(data_center)

        shutdowns = source_provider.calls_to("shutdown_virtual_machine")
        assert sorted(call[2] for call in shutdowns) == ["vm1", "vm2"]
        assert all(call[0] == "svc1" and call[1] == "dep1" for call in shutdowns)
        assert all(call[3] == PostShutdownAction.STOPPED for call in shutdowns)

    async def test_stopped_vm_left_alone(self, replicator, data_center, source_provider):
        """Test a source VM already stopped is not shut down again."""
        source_provider.role_status[("svc1", "vm1")] = "StoppedDeallocated"

        await replicator.replicate(data_center)

        assert [call[2] for call in source_provider.calls_to("shutdown_virtual_machine")] == ["vm2"]

    async def test_imported_vms_skipped(self, replicator, data_center, source_provider):
        """Test disks of imported VMs are neither shut down nor copied."""
        data_center.cloud_services[0].deployment.virtual_machines[1].is_imported = True

        assert await replicator.replicate(data_center) == 1
        assert [call[2] for call in source_provider.calls_to("shutdown_virtual_machine")] == ["vm1"]

    async def test_copy_is_polled(self, replicator, data_center, sleeps, reporter):
        """Test a pending copy is polled at the configured interval until it settles."""
        await replicator.replicate(data_center)

        assert sleeps == [7, 7, 7]
        messages = [event.message for event in reporter.events]
        assert "disk1.vhd: 100% copied" in messages

    async def test_read_token_window(self, replicator, data_center, destination_provider):
        """Test the source URL grants read access from 15 minutes ago for 7 days."""
        await replicator.replicate(data_center)

        source_url = destination_provider.blobs[("dcsa1", "vhds", "disk1.vhd")].source_url
        query = parse_qs(urlparse(source_url).query)
        assert query["sp"] == ["r"]
        assert query["st"] == ["2026-05-01T11:45:00Z"]
        assert query["se"] == ["2026-05-08T12:00:00Z"]


class TestCopyBlob:
    """Test BlobReplicator.copy_blob()."""

    async def test_completed_blob_not_copied_again(self, replicator, destination_provider):
        """Test a blob already in the destination is kept."""
        destination_provider.add_blob("dcsa1", "vhds", "disk1.vhd")

        copied = await replicator.copy_blob(BlobLocation("sa1", "vhds", "disk1.vhd"))

        assert copied is False
        assert destination_provider.calls_to("start_blob_copy") == []

    async def test_pending_copy_restarted(self, replicator, destination_provider):
        """Test a copy left pending by an interrupted run is aborted, deleted and restarted."""
        destination_provider.add_blob("dcsa1", "vhds", "disk1.vhd")
        stale = destination_provider.blobs[("dcsa1", "vhds", "disk1.vhd")]
        stale.copy_status = CopyStatus.PENDING
        stale.copy_id = "stale"
        stale.polls_remaining = 5

        copied = await replicator.copy_blob(BlobLocation("sa1", "vhds", "disk1.vhd"))

        assert copied is True
        assert destination_provider.calls_to("abort_blob_copy") == [
            ("dcsa1", "vhds", "disk1.vhd", "stale")
        ]
        assert destination_provider.calls_to("delete_blob") == [("dcsa1", "vhds", "disk1.vhd")]
        assert len(destination_provider.calls_to("start_blob_copy")) == 1

    async def test_failed_copy(self, replicator, destination_provider):
        """Test a copy ending Failed deletes the partial blob and raises."""
        destination_provider.copy_outcomes[("dcsa1", "vhds", "disk1.vhd")] = CopyStatus.FAILED

        with pytest.raises(BlobCopyError, match="Failed"):
            await replicator.copy_blob(BlobLocation("sa1", "vhds", "disk1.vhd"))

        assert ("dcsa1", "vhds", "disk1.vhd") not in destination_provider.blobs

    async def test_container_created_once(self, replicator, destination_provider):
        """Test the destination container is created before the first copy."""
        await replicator.copy_blob(BlobLocation("sa1", "vhds", "disk1.vhd"))
        await replicator.copy_blob(BlobLocation("sa1", "vhds", "disk2.vhd"))

        assert ("dcsa1", "vhds") in destination_provider.containers
