"""
Rollback command.

Deletes the destination resources that a progress document records as
imported, in reverse creation order.
"""

import asyncio
from pathlib import Path

import click

from dc_migration.cli.context import MigrationContext
from dc_migration.cli.decorators import confirm_action, handle_errors, pass_context, requires_config
from dc_migration.cli.utils import (
    echo_error,
    echo_success,
    echo_warning,
    print_stats,
    print_table,
)
from dc_migration.utils.logging import get_logger

logger = get_logger(__name__)


@click.command(name="rollback")
@click.option(
    "--metadata-file",
    "-m",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Progress document (_ImportStatus file) of the import to roll back",
)
@click.option(
    "--mapping-file",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Name mapping document used by the import",
)
@click.option(
    "-y",
    "--yes",
    is_flag=True,
    help="Automatically confirm prompts (skip confirmation)",
)
@pass_context
@requires_config
@handle_errors
@confirm_action("This deletes every imported resource from the destination subscription. Continue?")
def rollback(ctx: MigrationContext, metadata_file: Path, mapping_file: Path, yes: bool) -> None:
    """Roll back an import recorded in a progress document.

    Cloud services are deleted first (with their deployments and virtual
    machines), then storage accounts, the imported network elements and
    affinity groups. Failed deletions are reported and the sweep continues.

    Examples:

        \b
        dc-migrate rollback -m exports/West-US-10-19-2026-09-30_ImportStatus.json \\
            --mapping-file exports/West-US-10-19-2026-09-30.yaml --yes
    """
    result = asyncio.run(ctx.coordinator.rollback(metadata_file, mapping_file))

    print_stats({str(rt): count for rt, count in result.deleted.items()}, title="Deleted Resources")

    if result.failures:
        print_table(
            "Rollback Failures",
            ["Resource Type", "Name", "Error"],
            [[f.resource_type, f.resource_name or "-", f.error] for f in result.failures],
        )
        echo_error(f"Rollback finished with {len(result.failures)} failure(s)")
        raise click.exceptions.Exit(4)

    if result.total_deleted == 0:
        echo_warning("Nothing was recorded as imported; the destination is unchanged")
        return

    echo_success(f"Rollback completed ({result.total_deleted} resources deleted)")
