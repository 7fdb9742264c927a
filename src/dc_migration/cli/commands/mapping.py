"""
Name mapping commands.

Generate the editable source-to-destination name mapping for a metadata
document, or display an existing one.
"""

from pathlib import Path

import click

from dc_migration.cli.context import MigrationContext
from dc_migration.cli.decorators import handle_errors, pass_context, requires_config
from dc_migration.cli.utils import echo_success, print_table, validate_prefix
from dc_migration.migration.naming import NameMappingRegistry


@click.group(name="mapping")
def mapping() -> None:
    """Manage destination name mappings."""
    pass


@mapping.command(name="generate")
@click.option(
    "--metadata-file",
    "-m",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Exported metadata document",
)
@click.option(
    "--prefix",
    default=None,
    callback=validate_prefix,
    help="Destination name prefix (default: naming.destination_prefix)",
)
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Mapping file to write (default: metadata path with .yaml extension)",
)
@pass_context
@requires_config
@handle_errors
def generate(
    ctx: MigrationContext, metadata_file: Path, prefix: str | None, output: Path | None
) -> None:
    """Generate the name mapping for an exported metadata document."""
    path = ctx.coordinator.generate_mapping(metadata_file, prefix=prefix, output_path=output)
    echo_success(f"Name mapping written to {path}")


@mapping.command(name="show")
@click.option(
    "--mapping-file",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Name mapping document",
)
@pass_context
@requires_config
@handle_errors
def show(ctx: MigrationContext, mapping_file: Path) -> None:
    """Show source and destination names of a mapping document."""
    registry = NameMappingRegistry.load(mapping_file, ctx.config.naming.max_name_lengths)
    rows = [
        [str(resource_type), "  " * depth + source, destination]
        for resource_type, source, destination, depth in registry.entries()
    ]
    print_table(
        f"Name Mapping (prefix: {registry.prefix or '-'})",
        ["Resource Type", "Source Name", "Destination Name"],
        rows,
    )
