"""Custom exceptions for dc-migrate.

This module defines exception classes for the error conditions that can occur
while exporting, importing or rolling back data center resources.
"""

RESOURCE_NOT_FOUND = "ResourceNotFound"


class DCMigrationError(Exception):
    """Base exception for all data center migration errors."""

    pass


class ConfigurationError(DCMigrationError):
    """Raised when configuration is invalid or missing."""

    pass


class ValidationError(DCMigrationError):
    """Raised when a pre-flight check fails before any remote mutation.

    Never retried. The import aborts before the destination is changed.
    """

    pass


class CloudError(DCMigrationError):
    """Base class for errors returned by a cloud provider."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int | None = None,
        resource_type: str | None = None,
        resource_name: str | None = None,
    ):
        """Initialize cloud error.

        Args:
            message: Error message
            error_code: Provider error code (e.g. "ResourceNotFound")
            status_code: HTTP status code, when the provider exposes one
            resource_type: Type of resource the call operated on
            resource_name: Name of resource the call operated on
        """
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.resource_type = resource_type
        self.resource_name = resource_name
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format error message with error code and resource."""
        msg = self.message
        if self.error_code:
            msg = f"[{self.error_code}] {msg}"
        if self.resource_name:
            msg = f"{msg} ({self.resource_type or 'resource'}: {self.resource_name})"
        return msg


class NotFoundError(CloudError):
    """Raised when the provider reports a resource does not exist."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("error_code", RESOURCE_NOT_FOUND)
        kwargs.setdefault("status_code", 404)
        super().__init__(message, **kwargs)


class TransientRemoteError(CloudError):
    """Raised for remote failures worth retrying (throttling, timeouts, busy resources)."""

    pass


class BlobCopyError(CloudError):
    """Raised when a server-side blob copy ends in Aborted, Failed or Invalid state."""

    pass


class RetryExhaustedError(DCMigrationError):
    """Raised when every attempt of a retried operation failed.

    Attributes:
        errors: One exception per failed attempt, in attempt order
        resource_type: Type of resource the operation targeted
        resource_name: Name of resource the operation targeted
    """

    def __init__(
        self,
        message: str,
        errors: list[BaseException] | None = None,
        resource_type: str | None = None,
        resource_name: str | None = None,
    ):
        self.errors = list(errors or [])
        self.resource_type = resource_type
        self.resource_name = resource_name
        last = f": {self.errors[-1]}" if self.errors else ""
        super().__init__(f"{message} after {len(self.errors)} attempt(s){last}")

    @property
    def last_error(self) -> BaseException | None:
        """Exception raised by the final attempt."""
        return self.errors[-1] if self.errors else None


class StateError(DCMigrationError):
    """Raised when a persisted document cannot be read or written."""

    pass


class MigrationError(DCMigrationError):
    """Raised when migration operations fail."""

    pass


class FatalImportError(MigrationError):
    """Raised when an import fails after tier 0.

    The progress document has been flushed before this is raised. Either the
    rollback coordinator ran, or the document can be used to resume.
    """

    def __init__(self, message: str, progress_file: str | None = None, rolled_back: bool = False):
        """Initialize fatal import error.

        Args:
            message: Error message
            progress_file: Path of the flushed progress document
            rolled_back: Whether rollback ran before this error surfaced
        """
        self.progress_file = progress_file
        self.rolled_back = rolled_back
        super().__init__(message)
