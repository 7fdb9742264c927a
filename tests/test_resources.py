"""Tests for the resource type registry."""

import pytest

from dc_migration.resources import (
    RESOURCE_REGISTRY,
    ResourceType,
    default_max_name_lengths,
    get_max_name_length,
    get_resource_info,
    get_top_level_types,
    section_to_type,
)


class TestRegistry:
    """Test the per-type registry entries."""

    def test_top_level_types(self):
        """Test the types registered at the mapping registry root."""
        assert get_top_level_types() == [
            ResourceType.AFFINITY_GROUP,
            ResourceType.STORAGE_ACCOUNT,
            ResourceType.VIRTUAL_NETWORK_SITE,
            ResourceType.CLOUD_SERVICE,
        ]

    def test_default_name_ceilings(self):
        """Test only bounded types carry a default ceiling."""
        lengths = default_max_name_lengths()

        assert lengths[ResourceType.STORAGE_ACCOUNT] == 23
        assert lengths[ResourceType.CLOUD_SERVICE] == 63
        assert ResourceType.BLOB not in lengths
        assert ResourceType.DNS_SERVER not in lengths

    def test_override_takes_precedence(self):
        """Test a configured ceiling replaces the default one."""
        overrides = {ResourceType.CLOUD_SERVICE: 20}

        assert get_max_name_length(ResourceType.CLOUD_SERVICE, overrides) == 20
        assert get_max_name_length(ResourceType.AFFINITY_GROUP, overrides) == 63
        assert get_max_name_length(ResourceType.DATA_CENTER) is None

    def test_every_entry_is_registered_under_its_own_type(self):
        """Test registry keys match the entries they hold."""
        for resource_type, info in RESOURCE_REGISTRY.items():
            assert info.resource_type is resource_type
            assert section_to_type(info.section) is resource_type

    def test_types_without_entry(self):
        """Test the data center and None types have no registry entry."""
        with pytest.raises(KeyError):
            get_resource_info(ResourceType.DATA_CENTER)
        with pytest.raises(KeyError):
            get_resource_info(ResourceType.NONE)

    def test_unknown_section(self):
        """Test an unknown mapping section is rejected."""
        with pytest.raises(ValueError, match="VirtualNetworks"):
            section_to_type("VirtualNetworks")
