"""
Migration execution command.

Runs an export of the source data center followed by an import of the
freshly written metadata document.
"""

import asyncio

import click

from dc_migration.cli.commands.export_import import print_import_summary
from dc_migration.cli.context import MigrationContext
from dc_migration.cli.decorators import handle_errors, pass_context, requires_config
from dc_migration.cli.utils import echo_info, echo_success, validate_prefix
from dc_migration.utils.logging import get_logger

logger = get_logger(__name__)


@click.command(name="migrate")
@click.option(
    "--prefix",
    default=None,
    callback=validate_prefix,
    help="Destination name prefix (default: naming.destination_prefix)",
)
@click.option(
    "--rollback-on-failure",
    is_flag=True,
    help="Delete everything created by the import if it fails",
)
@pass_context
@requires_config
@handle_errors
def migrate(ctx: MigrationContext, prefix: str | None, rollback_on_failure: bool) -> None:
    """Export the source data center and import it into the destination.

    Both subscriptions must be configured. The metadata document is written
    to the export directory first, so a failed import can be resumed with
    the import command.

    Examples:

        \b
        # Full migration with the default prefix
        dc-migrate --config config.yaml migrate

        \b
        # Clean up the destination if anything fails
        dc-migrate migrate --prefix west --rollback-on-failure
    """
    # Fail before exporting when the destination is missing
    ctx.config.require_destination()
    logger.debug("migrate_starting", prefix=prefix, rollback_on_failure=rollback_on_failure)
    echo_info(f"Migrating data center {ctx.config.require_source().location}")

    result = asyncio.run(
        ctx.coordinator.migrate(prefix=prefix, rollback_on_failure=rollback_on_failure or None)
    )

    print_import_summary(ctx, result)
    echo_success("Migration completed")
