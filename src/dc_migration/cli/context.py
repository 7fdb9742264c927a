"""State shared by one dc-migrate invocation: settings, coordinator and the
simulated environments to save when the command ends."""

from dataclasses import dataclass, field
from pathlib import Path

from dc_migration.config import MigrationConfig, load_config_from_yaml
from dc_migration.migration.coordinator import MigrationCoordinator
from dc_migration.reporting.progress import ConsoleProgressSink, ProgressReporter
from dc_migration.utils.logging import configure_logging, get_logger

logger = get_logger(__name__)


@dataclass
class MigrationContext:
    """Stored on the click context by the command group.

    The configuration is loaded and the coordinator built on first access, so
    `--help` and option errors never touch a configuration file.

    Attributes:
        config_path: Path to configuration file
        log_level: Console log level given on the command line, if any
        log_file: Log file given on the command line, if any
        quiet: Suppress progress messages regardless of quiet_mode
        config: Loaded migration configuration
        coordinator: Migration coordinator (creates providers on first use)
    """

    config_path: Path | None = None
    log_level: str | None = None
    log_file: Path | None = None
    quiet: bool = False

    _config: MigrationConfig | None = field(default=None, init=False, repr=False)
    _coordinator: MigrationCoordinator | None = field(default=None, init=False, repr=False)

    @property
    def config(self) -> MigrationConfig:
        """Get or load migration configuration."""
        if self._config is None:
            if self.config_path is None:
                logger.debug("Loading configuration from environment")
                self._config = MigrationConfig()
            else:
                logger.debug("Loading configuration", config_path=str(self.config_path))
                self._config = load_config_from_yaml(self.config_path)
            if self.quiet:
                self._config.quiet_mode = True
            self._apply_logging_settings(self._config)
            logger.debug("Configuration loaded successfully")

        return self._config

    def _apply_logging_settings(self, config: MigrationConfig) -> None:
        """Reconfigure logging from the loaded settings, command line options first."""
        overrides: dict[str, str] = {}
        if self.log_level is not None:
            overrides["level"] = self.log_level
        if self.log_file is not None:
            overrides["file"] = str(self.log_file)
        configure_logging(config.logging.model_copy(update=overrides))

    @property
    def coordinator(self) -> MigrationCoordinator:
        """Get or create the migration coordinator."""
        if self._coordinator is None:
            reporter = ProgressReporter(quiet=self.config.quiet_mode)
            reporter.subscribe(ConsoleProgressSink())
            self._coordinator = MigrationCoordinator(self.config, reporter=reporter)

        return self._coordinator

    def cleanup(self) -> None:
        """Persist simulated environments that were touched by the command."""
        providers = self._coordinator.active_providers() if self._coordinator else []
        for provider in providers:
            save_state = getattr(provider, "save_state", None)
            if save_state is not None and getattr(provider, "state_file", None) is not None:
                save_state()

    def __enter__(self) -> "MigrationContext":
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Context manager exit."""
        self.cleanup()
