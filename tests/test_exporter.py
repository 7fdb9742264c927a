"""Tests for the subscription exporter."""

import pytest

from dc_migration.client.exceptions import RetryExhaustedError, TransientRemoteError
from dc_migration.migration.exporter import SubscriptionExporter
from dc_migration.migration.models import CloudServiceDetails
from dc_migration.reporting.progress import ProgressReporter
from dc_migration.resources import EXPORT_TOTAL_STAGES

from conftest import SOURCE_LOCATION


@pytest.fixture
def exporter(source_provider, retry_policy, reporter) -> SubscriptionExporter:
    return SubscriptionExporter(
        source_provider, retry_policy, SOURCE_LOCATION, subscription_name="prod", reporter=reporter
    )


class TestExportSubscriptionMetadata:
    """Test SubscriptionExporter.export_subscription_metadata()."""

    async def test_single_data_center(self, exporter):
        """Test the document holds exactly the requested location."""
        subscription = await exporter.export_subscription_metadata()

        assert subscription.name == "prod"
        assert [dc.location_name for dc in subscription.data_centers] == [SOURCE_LOCATION]

    async def test_location_filtering(self, exporter):
        """Test resources of other locations are left out."""
        data_center = (await exporter.export_subscription_metadata()).data_centers[0]

        assert [ag.details.name for ag in data_center.affinity_groups] == ["ag1"]
        assert [sa.details.name for sa in data_center.storage_accounts] == ["sa1"]
        assert [cs.details.service_name for cs in data_center.cloud_services] == ["svc1"]

    async def test_only_persistent_vm_roles(self, exporter):
        """Test the production deployment keeps persistent VM roles only."""
        service = (await exporter.export_subscription_metadata()).data_centers[0].cloud_services[0]

        assert service.deployment.name == "dep1"
        assert [vm.details.role_name for vm in service.deployment.virtual_machines] == ["vm1", "vm2"]

    async def test_network_keeps_referenced_elements(self, exporter):
        """Test the network configuration keeps local sites and the DNS and local networks they use."""
        network = (await exporter.export_subscription_metadata()).data_centers[0].network_configuration

        assert [site.name for site in network.virtual_network_sites] == ["vnet1"]
        assert [dns.name for dns in network.dns_servers] == ["dns1"]
        assert [local.name for local in network.local_network_sites] == ["local1"]

    async def test_nothing_is_marked_imported(self, exporter):
        """Test every exported resource starts as not imported."""
        data_center = (await exporter.export_subscription_metadata()).data_centers[0]

        assert not data_center.is_imported
        assert not any(ag.is_imported for ag in data_center.affinity_groups)
        assert not any(vm.is_imported for _, _, vm in data_center.virtual_machines())
        assert not data_center.network_configuration.is_imported

    async def test_service_without_deployment(self, exporter, source_provider):
        """Test a cloud service without a production deployment is exported bare."""
        source_provider.add_cloud_service(
            CloudServiceDetails(service_name="svc2", affinity_group="ag1")
        )

        data_center = (await exporter.export_subscription_metadata()).data_centers[0]

        services = {cs.details.service_name: cs for cs in data_center.cloud_services}
        assert services["svc2"].deployment is None

    async def test_missing_network_configuration(self, exporter, source_provider):
        """Test a subscription without virtual networks exports no network configuration."""
        source_provider.network_configuration = None

        data_center = (await exporter.export_subscription_metadata()).data_centers[0]

        assert data_center.network_configuration is None

    async def test_location_match_is_case_insensitive(self, source_provider, retry_policy):
        """Test the location comparison ignores case."""
        exporter = SubscriptionExporter(source_provider, retry_policy, "west us")

        data_center = (await exporter.export_subscription_metadata()).data_centers[0]

        assert [ag.details.name for ag in data_center.affinity_groups] == ["ag1"]

    async def test_source_is_never_changed(self, exporter, source_provider):
        """Test exporting makes no mutating call."""
        await exporter.export_subscription_metadata()

        assert source_provider.calls == []

    async def test_transient_listing_failure_is_retried(self, exporter, source_provider, sleeps):
        """Test a throttled listing is retried."""
        source_provider.fail_next("list_affinity_groups", TransientRemoteError("throttled"))

        data_center = (await exporter.export_subscription_metadata()).data_centers[0]

        assert len(data_center.affinity_groups) == 1
        assert len(sleeps) == 1

    async def test_persistent_listing_failure(self, exporter, source_provider):
        """Test a listing that keeps failing aborts the export."""
        source_provider.fail_next(
            "list_cloud_services", *[TransientRemoteError("throttled") for _ in range(3)]
        )

        with pytest.raises(RetryExhaustedError):
            await exporter.export_subscription_metadata()

    async def test_stages_reported(self, exporter, reporter: ProgressReporter):
        """Test each export stage is reported."""
        await exporter.export_subscription_metadata()

        messages = [event.message for event in reporter.events]
        assert f"Completed {EXPORT_TOTAL_STAGES}/{EXPORT_TOTAL_STAGES} stages" in messages
        assert reporter.get_stats()["stages_completed"] == EXPORT_TOTAL_STAGES
