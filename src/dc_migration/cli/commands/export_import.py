"""
Export and import commands.

Export reads one data center of the source subscription into a metadata
document. Import recreates a metadata document in the destination
subscription, tier by tier, and can resume from its progress document.
"""

import asyncio
from pathlib import Path

import click

from dc_migration.cli.context import MigrationContext
from dc_migration.cli.decorators import handle_errors, pass_context, requires_config
from dc_migration.cli.utils import (
    echo_info,
    echo_success,
    elapsed_between,
    print_stats,
    print_table,
    validate_prefix,
)
from dc_migration.migration.coordinator import ExportResult
from dc_migration.migration.importer import ImportResult
from dc_migration.utils.logging import get_logger

logger = get_logger(__name__)


def print_export_summary(result: ExportResult) -> None:
    """Print resource counts per exported data center."""
    rows = []
    for data_center in result.subscription.data_centers:
        network = data_center.network_configuration
        rows.append(
            [
                data_center.location_name,
                len(data_center.affinity_groups),
                len(data_center.storage_accounts),
                len(data_center.cloud_services),
                sum(1 for _ in data_center.virtual_machines()),
                len(network.virtual_network_sites) if network else 0,
            ]
        )
    print_table(
        "Exported Resources",
        ["Data Center", "Affinity Groups", "Storage", "Cloud Services", "VMs", "Networks"],
        rows,
    )


def print_import_summary(ctx: MigrationContext, result: ImportResult) -> None:
    """Print created resource counts and reporter statistics."""
    stats: dict[str, object] = {str(rt): count for rt, count in result.created.items()}
    stats["data_centers_imported"] = result.data_centers_imported
    stats.update(ctx.coordinator.reporter.get_stats())
    duration = elapsed_between(
        ctx.coordinator.metrics["start_time"], ctx.coordinator.metrics["end_time"]
    )
    if duration:
        stats["duration"] = duration
    print_stats(stats, title="Import Summary")


@click.command(name="export")
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),
    default=None,
    help="Metadata file to write (default: {export_dir}/{location}-{timestamp}.json)",
)
@click.option(
    "--generate-mapping/--no-generate-mapping",
    default=None,
    help="Also write the name mapping document (default: generate_mapping setting)",
)
@click.option(
    "--prefix",
    default=None,
    callback=validate_prefix,
    help="Destination name prefix used for the mapping document",
)
@pass_context
@requires_config
@handle_errors
def export(
    ctx: MigrationContext,
    output: Path | None,
    generate_mapping: bool | None,
    prefix: str | None,
) -> None:
    """Export a data center of the source subscription.

    Writes the affinity groups, storage accounts, cloud services (with their
    production deployment and persistent VMs) and the network configuration
    of the source location to a metadata document. The destination
    subscription is never touched.

    Examples:

        \b
        # Export to the default export directory
        dc-migrate export --config config.yaml

        \b
        # Export and write the editable name mapping next to it
        dc-migrate export --generate-mapping --prefix west
    """
    logger.debug("export_starting", output=str(output) if output else None)

    result = asyncio.run(
        ctx.coordinator.export(output_path=output, generate_mapping=generate_mapping, prefix=prefix)
    )

    print_export_summary(result)
    echo_success(f"Metadata written to {result.metadata_file}")
    if result.mapping_file:
        echo_success(f"Name mapping written to {result.mapping_file}")
        echo_info("Edit destination names in the mapping before importing if needed")


@click.command(name="import")
@click.option(
    "--metadata-file",
    "-m",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Metadata document to import (default: paths.metadata_file)",
)
@click.option(
    "--mapping-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Name mapping document (generated next to the metadata when absent)",
)
@click.option(
    "--prefix",
    default=None,
    callback=validate_prefix,
    help="Destination name prefix when the mapping is generated",
)
@click.option(
    "--resume",
    is_flag=True,
    help="Treat the metadata file as a progress document and skip imported resources",
)
@click.option(
    "--rollback-on-failure",
    is_flag=True,
    help="Delete everything created by this import if it fails",
)
@pass_context
@requires_config
@handle_errors
def import_cmd(
    ctx: MigrationContext,
    metadata_file: Path | None,
    mapping_file: Path | None,
    prefix: str | None,
    resume: bool,
    rollback_on_failure: bool,
) -> None:
    """Import a metadata document into the destination subscription.

    Validation runs first and changes nothing when it fails. The import
    then creates affinity groups, storage accounts, disk copies, the network
    configuration and cloud services in that order, recording progress in
    a `_ImportStatus` copy of the metadata file.

    Examples:

        \b
        # Import an exported data center
        dc-migrate import --metadata-file exports/West-US-10-19-2026-09-30.json

        \b
        # Resume an interrupted import
        dc-migrate import -m exports/West-US-10-19-2026-09-30_ImportStatus.json --resume
    """
    logger.debug(
        "import_starting",
        metadata_file=str(metadata_file) if metadata_file else None,
        resume=resume,
    )

    result = asyncio.run(
        ctx.coordinator.import_(
            metadata_file,
            mapping_path=mapping_file,
            prefix=prefix,
            resume=resume or None,
            rollback_on_failure=rollback_on_failure or None,
        )
    )

    print_import_summary(ctx, result)
    echo_success(f"Import completed; progress recorded in {result.progress_file}")
