"""Name mapping registry: source to destination resource names.

Destination names are derived once from the source names (prefix plus
truncation to the per-type ceiling), persisted as a YAML tree, and then used in
both directions: forward for every creation call, reverse to map renamed
resources back onto the source document when recording progress.

Names that are only unique below a parent (deployments and virtual machines
under a cloud service, disks under a virtual machine, DNS servers and local
network sites under a virtual network site) are stored as children of the
parent's node and resolved by walking down from the parent.

The registry is built or loaded once before any concurrent work starts and is
only read afterwards.
"""

from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from dc_migration.client.exceptions import StateError
from dc_migration.migration.models import Subscription
from dc_migration.resources import (
    ResourceType,
    default_max_name_lengths,
    get_max_name_length,
    get_resource_info,
    get_top_level_types,
    section_to_type,
)
from dc_migration.utils.logging import get_logger

logger = get_logger(__name__)

PREFIX_KEY = "destination_prefix"
SOURCE_KEY = "source_name"
DESTINATION_KEY = "destination_name"


@dataclass
class MappingNode:
    """One source/destination pair in the registry arena."""

    resource_type: ResourceType
    source_name: str
    destination_name: str
    parent: int | None = None
    children: list[int] = field(default_factory=list)


class NameMappingRegistry:
    """Bidirectional, hierarchical resource name mapping.

    Nodes live in a flat arena and refer to each other by index. Top-level
    nodes are additionally indexed per resource type, in registration order.
    """

    def __init__(self, prefix: str = "", max_lengths: dict[ResourceType, int] | None = None):
        """Initialize an empty registry.

        Args:
            prefix: Destination prefix recorded in the mapping document
            max_lengths: Per-type name ceilings (defaults to the resource table)
        """
        self.prefix = prefix
        self.max_lengths = dict(max_lengths) if max_lengths else default_max_name_lengths()
        self._nodes: list[MappingNode] = []
        self._top_level: dict[ResourceType, list[int]] = {}

    def __len__(self) -> int:
        return len(self._nodes)

    # -- Generation -------------------------------------------------------

    def compute_destination_name(
        self,
        resource_type: ResourceType,
        source_name: str,
        prefix: str | None = None,
        truncate: bool = True,
    ) -> str:
        """Compute `prefix + source_name`, truncated to the type's ceiling.

        A name longer than the ceiling is cut to ceiling - 1 characters, which
        keeps the result a prefix of `prefix + source_name`.
        """
        prefix = self.prefix if prefix is None else prefix
        name = f"{prefix}{source_name}"
        if not truncate:
            return name
        max_length = get_max_name_length(resource_type, self.max_lengths)
        if max_length is not None and len(name) > max_length:
            name = name[: max_length - 1]
        return name

    def generate_destination_name(
        self,
        resource_type: ResourceType,
        source_name: str | None,
        prefix: str | None = None,
    ) -> str | None:
        """Generate and register the destination name of a top-level resource.

        Idempotent: a second call for the same (type, source) returns the same
        name and does not register another entry.

        Returns:
            The destination name, or None when source_name is None
        """
        if source_name is None:
            return None
        if resource_type == ResourceType.NONE:
            return source_name

        existing = self._find_top_level(resource_type, source_name, by_destination=False)
        if existing is not None:
            return existing.destination_name

        destination_name = self.compute_destination_name(resource_type, source_name, prefix)
        self.register(resource_type, source_name, destination_name)
        return destination_name

    def register(
        self,
        resource_type: ResourceType,
        source_name: str,
        destination_name: str,
        parent: int | None = None,
    ) -> int:
        """Register a mapping, at the root or below a parent node.

        Args:
            resource_type: Resource type of the mapping
            source_name: Name in the source subscription
            destination_name: Name in the destination subscription
            parent: Index of the parent node, None for a top-level entry

        Returns:
            Index of the (new or already registered) node
        """
        if parent is None:
            siblings = self._top_level.setdefault(resource_type, [])
        else:
            siblings = self._nodes[parent].children

        for index in siblings:
            node = self._nodes[index]
            if node.resource_type == resource_type and node.source_name == source_name:
                return index

        index = len(self._nodes)
        self._nodes.append(
            MappingNode(
                resource_type=resource_type,
                source_name=source_name,
                destination_name=destination_name,
                parent=parent,
            )
        )
        siblings.append(index)
        return index

    @classmethod
    def build_from_subscription(
        cls,
        subscription: Subscription,
        prefix: str,
        max_lengths: dict[ResourceType, int] | None = None,
    ) -> "NameMappingRegistry":
        """Derive the full mapping for every resource of a subscription document.

        Affinity groups, storage accounts, cloud services and virtual network
        sites are top-level. Deployments nest under their service, virtual
        machines (which keep their names) under the deployment, and disks under
        the virtual machine. DNS servers and local network sites nest under the
        virtual network site that references them.
        """
        registry = cls(prefix=prefix, max_lengths=max_lengths)

        for data_center in subscription.data_centers:
            for affinity_group in data_center.affinity_groups:
                registry.generate_destination_name(
                    ResourceType.AFFINITY_GROUP, affinity_group.details.name
                )
            for storage_account in data_center.storage_accounts:
                registry.generate_destination_name(
                    ResourceType.STORAGE_ACCOUNT, storage_account.details.name
                )

            for service in data_center.cloud_services:
                service_name = service.details.service_name
                registry.generate_destination_name(ResourceType.CLOUD_SERVICE, service_name)
                if service.deployment is None:
                    continue

                service_index = registry._index_of(ResourceType.CLOUD_SERVICE, service_name)
                deployment_index = registry.register(
                    ResourceType.DEPLOYMENT,
                    service.deployment.name,
                    registry.compute_destination_name(
                        ResourceType.DEPLOYMENT, service.deployment.name
                    ),
                    parent=service_index,
                )
                for vm in service.deployment.virtual_machines:
                    role_name = vm.details.role_name
                    vm_index = registry.register(
                        ResourceType.VIRTUAL_MACHINE, role_name, role_name, parent=deployment_index
                    )
                    for disk_type, disk in vm.details.disks():
                        if disk.name is None:
                            continue
                        registry.register(
                            disk_type,
                            disk.name,
                            registry.compute_destination_name(disk_type, disk.name, truncate=False),
                            parent=vm_index,
                        )

            network = data_center.network_configuration
            if network is None:
                continue
            for site in network.virtual_network_sites:
                registry.generate_destination_name(ResourceType.VIRTUAL_NETWORK_SITE, site.name)
                site_index = registry._index_of(ResourceType.VIRTUAL_NETWORK_SITE, site.name)
                for dns_name in site.dns_server_refs:
                    registry.register(
                        ResourceType.DNS_SERVER,
                        dns_name,
                        registry.compute_destination_name(ResourceType.DNS_SERVER, dns_name),
                        parent=site_index,
                    )
                if site.local_network_site_ref:
                    registry.register(
                        ResourceType.LOCAL_NETWORK_SITE,
                        site.local_network_site_ref,
                        registry.compute_destination_name(
                            ResourceType.LOCAL_NETWORK_SITE, site.local_network_site_ref
                        ),
                        parent=site_index,
                    )

        logger.info("name_mapping_generated", prefix=prefix, entries=len(registry))
        return registry

    # -- Resolution -------------------------------------------------------

    def resolve_destination(
        self,
        resource_type: ResourceType,
        source_name: str | None,
        parent_type: ResourceType | None = None,
        parent_destination: str | None = None,
    ) -> str | None:
        """Translate a source name to its destination name.

        Top-level types are looked up directly. Child types are found by
        locating the parent by its destination name and walking its subtree.
        Unknown names are returned unchanged.
        """
        return self._resolve(resource_type, source_name, parent_type, parent_destination, False)

    def resolve_source(
        self,
        resource_type: ResourceType,
        destination_name: str | None,
        parent_type: ResourceType | None = None,
        parent_destination: str | None = None,
    ) -> str | None:
        """Translate a destination name back to its source name.

        Mirror of resolve_destination(). Unknown names are returned unchanged.
        """
        return self._resolve(resource_type, destination_name, parent_type, parent_destination, True)

    def _resolve(
        self,
        resource_type: ResourceType,
        name: str | None,
        parent_type: ResourceType | None,
        parent_destination: str | None,
        reverse: bool,
    ) -> str | None:
        if name is None:
            return None
        if resource_type == ResourceType.NONE:
            return name

        node = self._find_top_level(resource_type, name, by_destination=reverse)
        if node is None and parent_type is not None and parent_destination is not None:
            parent = self._find_top_level(parent_type, parent_destination, by_destination=True)
            if parent is not None:
                node = self._find_descendant(parent, resource_type, name, by_destination=reverse)

        if node is None:
            return name
        return node.source_name if reverse else node.destination_name

    def _find_top_level(
        self, resource_type: ResourceType, name: str, by_destination: bool
    ) -> MappingNode | None:
        for index in self._top_level.get(resource_type, []):
            node = self._nodes[index]
            candidate = node.destination_name if by_destination else node.source_name
            if candidate == name:
                return node
        return None

    def _find_descendant(
        self, root: MappingNode, resource_type: ResourceType, name: str, by_destination: bool
    ) -> MappingNode | None:
        # Depth-first, children in registration order
        stack = list(reversed(root.children))
        while stack:
            node = self._nodes[stack.pop()]
            candidate = node.destination_name if by_destination else node.source_name
            if node.resource_type == resource_type and candidate == name:
                return node
            stack.extend(reversed(node.children))
        return None

    def _index_of(self, resource_type: ResourceType, source_name: str) -> int:
        for index in self._top_level.get(resource_type, []):
            if self._nodes[index].source_name == source_name:
                return index
        raise KeyError(f"{resource_type} {source_name} is not registered")

    # -- Inspection -------------------------------------------------------

    def entries(self) -> Iterator[tuple[ResourceType, str, str, int]]:
        """Iterate (type, source, destination, depth) depth-first for display."""
        for resource_type in self._ordered_sections():
            for index in self._top_level[resource_type]:
                stack = [(index, 0)]
                while stack:
                    current, depth = stack.pop()
                    node = self._nodes[current]
                    yield node.resource_type, node.source_name, node.destination_name, depth
                    stack.extend((child, depth + 1) for child in reversed(node.children))

    def _ordered_sections(self) -> list[ResourceType]:
        top_level = get_top_level_types()
        known = [t for t in top_level if t in self._top_level]
        others = [t for t in self._top_level if t not in top_level]
        return known + others

    # -- Persistence ------------------------------------------------------

    def to_document(self) -> dict[str, Any]:
        """Convert to the YAML-safe mapping document."""
        document: dict[str, Any] = {PREFIX_KEY: self.prefix}
        for resource_type in self._ordered_sections():
            section = get_resource_info(resource_type).section
            document[section] = [self._node_to_dict(i) for i in self._top_level[resource_type]]
        return document

    def _node_to_dict(self, index: int) -> dict[str, Any]:
        node = self._nodes[index]
        entry: dict[str, Any] = {
            SOURCE_KEY: node.source_name,
            DESTINATION_KEY: node.destination_name,
        }
        for child in node.children:
            section = get_resource_info(self._nodes[child].resource_type).section
            entry.setdefault(section, []).append(self._node_to_dict(child))
        return entry

    @classmethod
    def from_document(
        cls,
        document: dict[str, Any],
        max_lengths: dict[ResourceType, int] | None = None,
    ) -> "NameMappingRegistry":
        """Rebuild a registry from a mapping document.

        Raises:
            StateError: If the document is malformed
        """
        if not isinstance(document, dict):
            raise StateError("Name mapping document must be a mapping")

        registry = cls(prefix=str(document.get(PREFIX_KEY) or ""), max_lengths=max_lengths)
        for section, entries in document.items():
            if section == PREFIX_KEY:
                continue
            registry._load_entries(section, entries, parent=None)
        return registry

    def _load_entries(self, section: str, entries: Any, parent: int | None) -> None:
        try:
            resource_type = section_to_type(section)
        except ValueError as e:
            raise StateError(f"Invalid name mapping document: {e}") from e
        if not isinstance(entries, list):
            raise StateError(f"Section {section} of the name mapping document must be a list")

        for entry in entries:
            if not isinstance(entry, dict) or SOURCE_KEY not in entry or DESTINATION_KEY not in entry:
                raise StateError(f"Invalid entry in section {section}: {entry!r}")
            index = self.register(
                resource_type,
                str(entry[SOURCE_KEY]),
                str(entry[DESTINATION_KEY]),
                parent=parent,
            )
            for key, value in entry.items():
                if key not in (SOURCE_KEY, DESTINATION_KEY):
                    self._load_entries(key, value, parent=index)

    def save(self, path: str | Path) -> Path:
        """Write the mapping document as YAML."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.safe_dump(self.to_document(), f, default_flow_style=False, sort_keys=False)
        logger.info("name_mapping_saved", path=str(path), entries=len(self))
        return path

    @classmethod
    def load(
        cls, path: str | Path, max_lengths: dict[ResourceType, int] | None = None
    ) -> "NameMappingRegistry":
        """Read a mapping document written by save().

        Raises:
            StateError: If the file is missing or not valid YAML
        """
        path = Path(path)
        if not path.exists():
            raise StateError(f"Name mapping file not found: {path}")
        try:
            with open(path) as f:
                document = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise StateError(f"Name mapping file {path} is not valid YAML: {e}") from e

        registry = cls.from_document(document or {}, max_lengths=max_lengths)
        logger.info("name_mapping_loaded", path=str(path), entries=len(registry))
        return registry
