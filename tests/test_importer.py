"""Tests for the resumable tiered import."""

import pytest
import yaml

from dc_migration.client.exceptions import (
    FatalImportError,
    NotFoundError,
    RetryExhaustedError,
    TransientRemoteError,
    ValidationError,
)
from dc_migration.client.provider import PostShutdownAction
from dc_migration.migration.importer import ResourceImporter, merge_network_configurations
from dc_migration.migration.models import DnsServer, NetworkConfiguration, VirtualNetworkSite
from dc_migration.migration.naming import NameMappingRegistry
from dc_migration.migration.persistence import (
    default_mapping_path,
    import_status_path,
    load_subscription,
)
from dc_migration.resources import ResourceType

from conftest import DESTINATION_LOCATION


@pytest.fixture
def importer(source_provider, destination_provider, retry_policy, migration_config, reporter, fake_sleep):
    return ResourceImporter(
        source_provider,
        destination_provider,
        retry_policy,
        migration_config,
        reporter=reporter,
        sleep=fake_sleep,
    )


def all_flags(data_center) -> list[bool]:
    flags = [data_center.is_imported, data_center.network_configuration.is_imported]
    flags += [ag.is_imported for ag in data_center.affinity_groups]
    flags += [sa.is_imported for sa in data_center.storage_accounts]
    for service in data_center.cloud_services:
        flags.append(service.is_imported)
        flags.append(service.deployment.is_imported)
        flags += [vm.is_imported for vm in service.deployment.virtual_machines]
    return flags


class TestFullImport:
    """Test an import of the exported data center into an empty destination."""

    async def test_resources_created(self, importer, metadata_file, destination_provider):
        """Test every tier creates its resources under destination names."""
        result = await importer.import_subscription_metadata(metadata_file)

        assert result.data_centers_imported == 1
        assert result.created == {
            ResourceType.AFFINITY_GROUP: 1,
            ResourceType.STORAGE_ACCOUNT: 1,
            ResourceType.BLOB: 3,
            ResourceType.NETWORK_CONFIGURATION: 1,
            ResourceType.CLOUD_SERVICE: 1,
            ResourceType.DEPLOYMENT: 1,
            ResourceType.VIRTUAL_MACHINE: 1,
        }
        assert set(destination_provider.affinity_groups) == {"dcag1"}
        assert set(destination_provider.storage_accounts) == {"dcsa1"}
        assert set(destination_provider.cloud_services) == {"dcsvc1"}
        deployment = destination_provider.deployments["dcsvc1"]
        assert deployment.name == "dcdep1"
        assert [vm.details.role_name for vm in deployment.virtual_machines] == ["vm1", "vm2"]

    async def test_tier_order(self, importer, metadata_file, destination_provider):
        """Test tiers run strictly in order."""
        await importer.import_subscription_metadata(metadata_file)

        order = [name for name, _ in destination_provider.creation_calls()]
        first = {name: order.index(name) for name in set(order)}
        assert first["create_affinity_group"] < first["create_storage_account"]
        assert first["create_storage_account"] < first["start_blob_copy"]
        assert max(i for i, name in enumerate(order) if name == "start_blob_copy") < first[
            "set_network_configuration"
        ]
        assert first["set_network_configuration"] < first["create_cloud_service"]
        assert first["create_cloud_service"] < first["create_deployment"]
        assert first["create_deployment"] < first["create_virtual_machine"]

    async def test_locations(self, importer, metadata_file, destination_provider):
        """Test the affinity group moves to the destination location and its members follow it."""
        await importer.import_subscription_metadata(metadata_file)

        assert destination_provider.affinity_groups["dcag1"].location == DESTINATION_LOCATION
        account = destination_provider.storage_accounts["dcsa1"]
        assert (account.location, account.affinity_group) == (None, "dcag1")
        assert destination_provider.cloud_services["dcsvc1"].affinity_group == "dcag1"

    async def test_disks_point_at_destination(self, importer, metadata_file, destination_provider):
        """Test VM disks reference the copied blobs and carry destination disk names."""
        await importer.import_subscription_metadata(metadata_file)

        vm2 = destination_provider.deployments["dcsvc1"].virtual_machines[1].details
        assert vm2.os_disk.media_link == "https://dcsa1.blob.core.windows.net/vhds/disk2.vhd"
        assert vm2.os_disk.name == "dcdisk2"
        assert vm2.data_disks[0].name == "dcdata2"

    async def test_vms_deallocated(self, importer, metadata_file, destination_provider):
        """Test every imported VM is shut down and deallocated."""
        await importer.import_subscription_metadata(metadata_file)

        shutdowns = destination_provider.calls_to("shutdown_virtual_machine")
        assert sorted(call[2] for call in shutdowns) == ["vm1", "vm2"]
        assert {call[3] for call in shutdowns} == {PostShutdownAction.STOPPED_DEALLOCATED}

    async def test_network_uses_destination_names(self, importer, metadata_file, destination_provider):
        """Test the deployed network configuration is renamed."""
        await importer.import_subscription_metadata(metadata_file)

        network = destination_provider.network_configuration
        assert [site.name for site in network.virtual_network_sites] == ["dcvnet1"]
        assert [dns.name for dns in network.dns_servers] == ["dcdns1"]
        assert [local.name for local in network.local_network_sites] == ["dclocal1"]

    async def test_progress_document(self, importer, metadata_file):
        """Test the progress copy records every resource with its source name."""
        result = await importer.import_subscription_metadata(metadata_file)

        assert result.progress_file == import_status_path(metadata_file)
        data_center = load_subscription(result.progress_file).data_centers[0]
        assert all(all_flags(data_center))
        assert data_center.storage_accounts[0].details.name == "sa1"
        assert not any(all_flags(load_subscription(metadata_file).data_centers[0]))

    async def test_mapping_generated_next_to_metadata(self, importer, metadata_file):
        """Test a missing mapping is generated with the configured prefix."""
        result = await importer.import_subscription_metadata(metadata_file)

        assert result.mapping_file == default_mapping_path(metadata_file)
        assert yaml.safe_load(result.mapping_file.read_text())["destination_prefix"] == "dc"

    async def test_existing_mapping_reused(self, importer, metadata_file, exported_subscription, destination_provider):
        """Test an edited mapping next to the metadata file is honored."""
        registry = NameMappingRegistry.build_from_subscription(exported_subscription, "dc")
        document = registry.to_document()
        document["AffinityGroups"][0]["destination_name"] = "renamedag"
        default_mapping_path(metadata_file).write_text(yaml.safe_dump(document, sort_keys=False))

        await importer.import_subscription_metadata(metadata_file, prefix="zz")

        assert set(destination_provider.affinity_groups) == {"renamedag"}

    async def test_explicit_prefix(self, importer, metadata_file, destination_provider):
        """Test a prefix given for a generated mapping."""
        await importer.import_subscription_metadata(metadata_file, prefix="m2")

        assert set(destination_provider.storage_accounts) == {"m2sa1"}

    async def test_stages_reported(self, importer, metadata_file, reporter):
        """Test the validation stage and all five tiers are reported."""
        await importer.import_subscription_metadata(metadata_file)

        assert reporter.get_stats()["stages_completed"] == 6
        assert "Completed 6/6 stages" in [event.message for event in reporter.events]


class TestResume:
    """Test resuming from a progress document."""

    async def test_completed_import_is_a_no_op(self, importer, metadata_file, destination_provider):
        """Test re-running a finished progress document creates nothing and rewrites it unchanged."""
        result = await importer.import_subscription_metadata(metadata_file)
        created_before = len(destination_provider.creation_calls())
        before = result.progress_file.read_bytes()

        again = await importer.import_subscription_metadata(result.progress_file, resume=True)

        assert len(destination_provider.creation_calls()) == created_before
        assert again.data_centers_imported == 0
        assert again.progress_file == result.progress_file
        assert result.progress_file.read_bytes() == before

    async def test_resume_after_cloud_service_failure(
        self, importer, metadata_file, destination_provider
    ):
        """Test a failure in the last tier is resumed without repeating earlier tiers."""
        destination_provider.fail_next(
            "create_cloud_service", *[TransientRemoteError("busy") for _ in range(3)]
        )

        with pytest.raises(FatalImportError) as exc_info:
            await importer.import_subscription_metadata(metadata_file)

        error = exc_info.value
        assert isinstance(error.__cause__, RetryExhaustedError)
        assert not error.rolled_back
        progress = load_subscription(error.progress_file).data_centers[0]
        assert progress.affinity_groups[0].is_imported
        assert progress.network_configuration.is_imported
        assert not progress.cloud_services[0].is_imported

        calls_before = {
            name: len(destination_provider.calls_to(name))
            for name in (
                "create_affinity_group",
                "create_storage_account",
                "start_blob_copy",
                "set_network_configuration",
            )
        }

        result = await importer.import_subscription_metadata(error.progress_file, resume=True)

        for name, count in calls_before.items():
            assert len(destination_provider.calls_to(name)) == count
        assert set(destination_provider.cloud_services) == {"dcsvc1"}
        assert all(all_flags(load_subscription(result.progress_file).data_centers[0]))

    async def test_resume_after_second_vm_failure(self, importer, metadata_file, destination_provider):
        """Test an existing deployment gets only the missing virtual machine."""
        destination_provider.fail_next(
            "create_virtual_machine", *[TransientRemoteError("busy") for _ in range(3)]
        )

        with pytest.raises(FatalImportError) as exc_info:
            await importer.import_subscription_metadata(metadata_file)

        progress = load_subscription(exc_info.value.progress_file).data_centers[0]
        vms = progress.cloud_services[0].deployment.virtual_machines
        assert [vm.is_imported for vm in vms] == [True, False]

        await importer.import_subscription_metadata(exc_info.value.progress_file, resume=True)

        assert len(destination_provider.calls_to("create_deployment")) == 1
        deployment = destination_provider.deployments["dcsvc1"]
        assert [vm.details.role_name for vm in deployment.virtual_machines] == ["vm1", "vm2"]

    async def test_retry_removes_partial_virtual_machine(
        self, importer, metadata_file, destination_provider
    ):
        """Test the partial VM is deleted before a retry."""
        destination_provider.fail_next("create_virtual_machine", TransientRemoteError("busy"))

        await importer.import_subscription_metadata(metadata_file)

        assert destination_provider.calls_to("delete_virtual_machine") == [("dcsvc1", "dcdep1", "vm2")]
        assert len(destination_provider.calls_to("create_virtual_machine")) == 1


class TestFailures:
    """Test failure handling."""

    async def test_validation_failure_changes_nothing(
        self, importer, metadata_file, destination_provider
    ):
        """Test a failed pre-flight check leaves the destination untouched."""
        destination_provider.unavailable_names.add("dcsvc1")

        with pytest.raises(ValidationError):
            await importer.import_subscription_metadata(metadata_file)

        assert destination_provider.calls == []

    async def test_rollback_on_failure(self, importer, metadata_file, destination_provider):
        """Test a failed import rolls back everything it created."""
        destination_provider.fail_next(
            "create_cloud_service", *[TransientRemoteError("busy") for _ in range(3)]
        )

        with pytest.raises(FatalImportError) as exc_info:
            await importer.import_subscription_metadata(metadata_file, rollback_on_failure=True)

        assert exc_info.value.rolled_back
        assert destination_provider.affinity_groups == {}
        assert destination_provider.storage_accounts == {}
        assert destination_provider.cloud_services == {}
        assert destination_provider.blobs == {}
        assert destination_provider.network_configuration.is_empty()
        progress = load_subscription(exc_info.value.progress_file).data_centers[0]
        assert not any(all_flags(progress))

    async def test_rollback_after_blob_failure(
        self, importer, metadata_file, source_provider, destination_provider
    ):
        """Test a failed disk copy rolls back the storage account and affinity group only."""
        source_provider.fail_next("generate_read_sas", NotFoundError("blob vanished"))

        with pytest.raises(FatalImportError):
            await importer.import_subscription_metadata(metadata_file, rollback_on_failure=True)

        assert destination_provider.calls_to("delete_storage_account") == [("dcsa1",)]
        assert destination_provider.calls_to("delete_affinity_group") == [("dcag1",)]
        assert destination_provider.calls_to("set_network_configuration") == []
        assert destination_provider.calls_to("delete_cloud_service") == []

    async def test_resume_hint_reported(self, importer, metadata_file, source_provider, reporter):
        """Test a failure without rollback points at the progress document."""
        source_provider.fail_next("generate_read_sas", NotFoundError("blob vanished"))

        with pytest.raises(FatalImportError) as exc_info:
            await importer.import_subscription_metadata(metadata_file)

        messages = [event.message for event in reporter.events]
        assert f"Resume import with {exc_info.value.progress_file}" in messages


class TestMergeNetworkConfigurations:
    """Test merge_network_configurations()."""

    def test_union_by_name(self):
        """Test destination elements win and new ones are appended."""
        current = NetworkConfiguration(
            dns_servers=[DnsServer(name="DNS1", ip_address="10.0.0.1")],
            virtual_network_sites=[VirtualNetworkSite(name="existing")],
        )
        imported = NetworkConfiguration(
            dns_servers=[
                DnsServer(name="dns1", ip_address="10.9.9.9"),
                DnsServer(name="dns2", ip_address="10.0.0.2"),
            ],
            virtual_network_sites=[VirtualNetworkSite(name="dcvnet1")],
        )

        merged = merge_network_configurations(current, imported)

        assert [(d.name, d.ip_address) for d in merged.dns_servers] == [
            ("DNS1", "10.0.0.1"),
            ("dns2", "10.0.0.2"),
        ]
        assert [s.name for s in merged.virtual_network_sites] == ["existing", "dcvnet1"]

    def test_empty_destination(self):
        """Test merging into a subscription without a network configuration."""
        imported = NetworkConfiguration(virtual_network_sites=[VirtualNetworkSite(name="dcvnet1")])

        merged = merge_network_configurations(None, imported)

        assert [s.name for s in merged.virtual_network_sites] == ["dcvnet1"]
        assert not merged.is_imported
