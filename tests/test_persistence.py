"""Tests for document persistence and progress recording."""

import json
from datetime import datetime

import pytest

from dc_migration.client.exceptions import StateError
from dc_migration.migration.naming import NameMappingRegistry
from dc_migration.migration.persistence import (
    ProgressDocument,
    default_mapping_path,
    import_status_path,
    load_subscription,
    mapping_path_for,
    metadata_file_name,
    save_subscription,
)
from dc_migration.resources import ResourceType


class TestFileNames:
    """Test the names of exported documents."""

    def test_metadata_file_name(self):
        """Test the export name carries the location and minute timestamp."""
        assert (
            metadata_file_name("West US", datetime(2026, 3, 7, 9, 5)) == "West US-03-07-2026-09-05.json"
        )

    def test_import_status_path(self, tmp_path):
        """Test the progress copy sits next to the metadata file."""
        path = import_status_path(tmp_path / "West US-03-07-2026-09-05.json")

        assert path == tmp_path / "West US-03-07-2026-09-05_ImportStatus.json"

    def test_mapping_paths(self, tmp_path):
        """Test metadata and progress files share one mapping document."""
        metadata = tmp_path / "West US-03-07-2026-09-05.json"
        expected = tmp_path / "West US-03-07-2026-09-05.yaml"

        assert mapping_path_for(metadata) == expected
        assert default_mapping_path(metadata) == expected
        assert default_mapping_path(import_status_path(metadata)) == expected


class TestSubscriptionFiles:
    """Test saving and loading subscription documents."""

    def test_round_trip(self, exported_subscription, tmp_path):
        """Test a saved document loads back equal."""
        path = save_subscription(exported_subscription, tmp_path / "out" / "dc.json")

        assert load_subscription(path) == exported_subscription
        assert json.loads(path.read_text())["data_centers"][0]["location_name"] == "West US"

    def test_no_temporary_files_left(self, exported_subscription, tmp_path):
        """Test the atomic write leaves only the target file."""
        save_subscription(exported_subscription, tmp_path / "dc.json")

        assert [p.name for p in tmp_path.iterdir()] == ["dc.json"]

    def test_missing_file(self, tmp_path):
        """Test a missing metadata file raises StateError."""
        with pytest.raises(StateError):
            load_subscription(tmp_path / "absent.json")

    def test_invalid_document(self, tmp_path):
        """Test malformed JSON raises StateError."""
        path = tmp_path / "broken.json"
        path.write_text('{"data_centers": [{"affinity_groups": 3}]}')

        with pytest.raises(StateError):
            load_subscription(path)


class TestProgressDocument:
    """Test ProgressDocument.mark()."""

    @pytest.fixture
    def document(self, exported_subscription, tmp_path) -> ProgressDocument:
        registry = NameMappingRegistry.build_from_subscription(exported_subscription, "dc")
        return ProgressDocument(exported_subscription, tmp_path / "progress.json", registry)

    async def test_mark_translates_destination_names(self, document):
        """Test a destination name flags the matching source resource and persists."""
        await document.mark(ResourceType.STORAGE_ACCOUNT, "dcsa1")

        data_center = load_subscription(document.path).data_centers[0]
        assert data_center.storage_accounts[0].is_imported
        assert not data_center.affinity_groups[0].is_imported

    async def test_mark_children_by_parent(self, document):
        """Test deployments and machines are found through their service."""
        await document.mark(ResourceType.DEPLOYMENT, "dcdep1", parent_destination="dcsvc1")
        await document.mark(ResourceType.VIRTUAL_MACHINE, "vm2", parent_destination="dcsvc1")

        deployment = document.subscription.data_centers[0].cloud_services[0].deployment
        assert deployment.is_imported
        assert [vm.is_imported for vm in deployment.virtual_machines] == [False, True]

    async def test_mark_network_and_data_center(self, document):
        """Test the network configuration and data center flags."""
        await document.mark(ResourceType.NETWORK_CONFIGURATION)
        await document.mark(ResourceType.DATA_CENTER, "west us")

        data_center = document.subscription.data_centers[0]
        assert data_center.network_configuration.is_imported
        assert data_center.is_imported

    async def test_unmark(self, document):
        """Test imported=False clears a flag."""
        await document.mark(ResourceType.AFFINITY_GROUP, "dcag1")
        await document.mark(ResourceType.AFFINITY_GROUP, "dcag1", imported=False)

        assert not load_subscription(document.path).data_centers[0].affinity_groups[0].is_imported

    async def test_unknown_name_changes_nothing(self, document):
        """Test marking an unmapped name leaves every flag untouched."""
        await document.mark(ResourceType.CLOUD_SERVICE, "dcother")

        assert not document.subscription.data_centers[0].cloud_services[0].is_imported
