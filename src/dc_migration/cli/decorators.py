"""Decorators shared by the dc-migrate commands.

Commands stack them as::

    @pass_context
    @requires_config
    @handle_errors
    def command(ctx: MigrationContext, ...): ...
"""

import functools
from collections.abc import Callable
from typing import NoReturn

import click

from dc_migration.cli.context import MigrationContext
from dc_migration.client.exceptions import (
    CloudError,
    ConfigurationError,
    FatalImportError,
    RetryExhaustedError,
    StateError,
    ValidationError,
)
from dc_migration.utils.logging import get_logger

logger = get_logger(__name__)

EXIT_UNEXPECTED = 1
EXIT_CONFIGURATION = 2
EXIT_VALIDATION = 3
EXIT_REMOTE = 4
EXIT_STATE = 5
EXIT_IMPORT_FAILED = 6


def _fail(code: int, label: str, error: BaseException, *hints: str) -> NoReturn:
    logger.error("command_failed", exit_code=code, error_type=type(error).__name__, error=str(error))
    click.echo(f"{label}: {error}", err=True)
    for hint in hints:
        click.echo(hint, err=True)
    raise click.exceptions.Exit(code) from error


def pass_context(f: Callable) -> Callable:
    """Call the command with the MigrationContext stored on the click context.

    The context is entered around the call, so simulated environments the
    command touched are saved whether it returns or fails.
    """

    @click.pass_context
    @functools.wraps(f)
    def wrapper(click_ctx: click.Context, *args, **kwargs):
        migration_ctx: MigrationContext = click_ctx.obj
        with migration_ctx:
            return f(migration_ctx, *args, **kwargs)

    return wrapper


def handle_errors(f: Callable) -> Callable:
    """Turn migration errors into a message on stderr and an exit code.

    Exit codes:
        1: Unexpected error
        2: Configuration error
        3: Validation error (the destination was not changed)
        4: Remote error, including exhausted retries
        5: Unreadable or unwritable metadata or mapping document
        6: Import failed after validation (progress document written)
    """

    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except (click.exceptions.Exit, click.ClickException):
            raise
        except (ConfigurationError, FileNotFoundError) as e:
            _fail(EXIT_CONFIGURATION, "Configuration Error", e, "\nCheck the configuration file.")
        except ValidationError as e:
            _fail(
                EXIT_VALIDATION,
                "Validation Error",
                e,
                "\nNo resources were created in the destination subscription.",
            )
        except FatalImportError as e:
            hints = []
            if e.__cause__ is not None:
                hints.append(f"Cause: {e.__cause__}")
            if e.rolled_back:
                hints.append("\nCreated resources were rolled back.")
            elif e.progress_file:
                hints.append(
                    f"\nResume with: dc-migrate import --metadata-file {e.progress_file} --resume"
                )
            _fail(EXIT_IMPORT_FAILED, "Import Failed", e, *hints)
        except (CloudError, RetryExhaustedError) as e:
            hints = []
            if isinstance(e, CloudError) and e.status_code:
                hints.append(f"\nResponse status: {e.status_code}")
            _fail(EXIT_REMOTE, "Remote Error", e, *hints)
        except StateError as e:
            _fail(EXIT_STATE, "State Error", e, "\nA metadata or mapping document could not be used.")
        except Exception as e:
            logger.exception("unexpected_error")
            _fail(EXIT_UNEXPECTED, "Unexpected Error", e, "\nSee the log file for details.")

    return wrapper


def requires_config(f: Callable) -> Callable:
    """Load the configuration (YAML file or DC_MIGRATE_ variables) before the command runs."""

    @functools.wraps(f)
    def wrapper(ctx: MigrationContext, *args, **kwargs):
        try:
            _ = ctx.config
        except Exception as e:
            click.echo(f"Error loading configuration: {e}", err=True)
            raise click.exceptions.Exit(EXIT_CONFIGURATION) from e

        return f(ctx, *args, **kwargs)

    return wrapper


def confirm_action(
    message: str = "Do you want to continue?",
    abort_message: str = "Operation cancelled.",
) -> Callable:
    """Ask for confirmation unless the command was given --yes.

    Declining prints abort_message and exits with status 0.
    """

    def decorator(f: Callable) -> Callable:
        @functools.wraps(f)
        def wrapper(*args, **kwargs):
            if not click.get_current_context().params.get("yes", False) and not click.confirm(
                message
            ):
                click.echo(abort_message)
                raise click.exceptions.Exit(0)
            return f(*args, **kwargs)

        return wrapper

    return decorator
