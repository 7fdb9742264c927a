"""
Main CLI entry point for dc-migrate.

This module provides the command-line interface for moving the resources of
one data center between cloud subscriptions.
"""

import sys
from pathlib import Path

import click
from click.core import ParameterSource
from dotenv import load_dotenv

from dc_migration import __version__
from dc_migration.cli.commands import export_import
from dc_migration.cli.commands import mapping as mapping_commands
from dc_migration.cli.commands import migrate as migrate_commands
from dc_migration.cli.commands import rollback as rollback_commands
from dc_migration.cli.context import MigrationContext
from dc_migration.config import LoggingConfig
from dc_migration.utils.logging import configure_logging, get_logger

# Load environment variables from .env file
load_dotenv()

logger = get_logger(__name__)


@click.group()
@click.version_option(version=__version__, prog_name="dc-migrate")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file",
    envvar="DC_MIGRATE_CONFIG",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    help="Console logging level (overrides logging.level)",
    envvar="DC_MIGRATE_LOG_LEVEL",
)
@click.option(
    "--log-file",
    type=click.Path(path_type=Path),
    help="Log file (overrides logging.file, default: logs/migration.log)",
    envvar="DC_MIGRATE_LOG_FILE",
)
@click.option(
    "--quiet",
    "-q",
    is_flag=True,
    help="Suppress progress messages",
)
@click.pass_context
def cli(
    ctx: click.Context,
    config: Path | None,
    log_level: str,
    log_file: Path | None,
    quiet: bool,
) -> None:
    """dc-migrate - Move a data center between cloud subscriptions.

    Exports the affinity groups, storage accounts, disks, virtual networks
    and cloud services of one location and recreates them in another
    subscription under prefixed names.

    Examples:

        # Export the source data center
        dc-migrate export --config config.yaml

        # Import an exported metadata document
        dc-migrate import --config config.yaml --metadata-file exports/West-US.json

        # Export and import in one run
        dc-migrate migrate --config config.yaml

        # Undo an import
        dc-migrate rollback -m exports/West-US_ImportStatus.json --mapping-file exports/West-US.yaml
    """
    # Logging starts from the options; the configuration file refines it once loaded
    level_source = ctx.get_parameter_source("log_level")
    level_given = level_source in (ParameterSource.COMMANDLINE, ParameterSource.ENVIRONMENT)
    configure_logging(
        LoggingConfig(level=log_level, **({"file": str(log_file)} if log_file else {}))
    )

    ctx.obj = MigrationContext(
        config_path=config,
        log_level=log_level.upper() if level_given else None,
        log_file=log_file,
        quiet=quiet,
    )

    logger.debug(
        "CLI initialized",
        config=str(config) if config else None,
        log_level=log_level,
    )


# Register command groups
cli.add_command(mapping_commands.mapping)

# Register standalone commands
cli.add_command(export_import.export)
cli.add_command(export_import.import_cmd, name="import")
cli.add_command(migrate_commands.migrate)
cli.add_command(rollback_commands.rollback)


def main() -> int:
    """Main entry point for CLI."""
    try:
        # Non-standalone click returns the code of an intentional Exit
        exit_code = cli(standalone_mode=False)
        return exit_code if isinstance(exit_code, int) else 0
    except click.exceptions.Abort:
        click.echo("Aborted!", err=True)
        return 1
    except click.ClickException as e:
        e.show()
        return e.exit_code
    except Exception as e:
        logger.error("Unexpected error", error=str(e), exc_info=True)
        click.echo(f"Error: {e}", err=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
