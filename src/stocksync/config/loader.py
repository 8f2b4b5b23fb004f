"""Configuration loader for JSON/YAML files and environment variables."""

import os
import json
from pathlib import Path
from typing import Dict, Any, Union, List

import yaml
from pydantic import ValidationError

from .settings import AppSettings, load_settings
from ..utils.logging import get_logger


class ConfigurationError(Exception):
    """Raised when configuration loading fails."""
    pass


class ConfigLoader:
    """Loads and validates configuration from various sources."""

    def __init__(self):
        self.logger = get_logger(self.__class__.__name__)

    def load_from_file(self, file_path: Union[str, Path]) -> AppSettings:
        """Load configuration from JSON or YAML file.

        Args:
            file_path: Path to configuration file

        Returns:
            Validated AppSettings object

        Raises:
            ConfigurationError: If file cannot be loaded or validated
        """
        file_path = Path(file_path)

        if not file_path.exists():
            raise ConfigurationError(f"Configuration file not found: {file_path}")

        self.logger.info("Loading configuration from file", file_path=str(file_path))

        suffix = file_path.suffix.lower()
        if suffix not in (".yaml", ".yml", ".json"):
            raise ConfigurationError(f"Unsupported file format: {file_path.suffix}")

        try:
            with open(file_path, "r", encoding="utf-8") as f:
                if suffix == ".json":
                    data = json.load(f)
                else:
                    data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML format: {e}")
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON format: {e}")
        except OSError as e:
            raise ConfigurationError(f"Failed to read configuration: {e}")

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigurationError("Configuration root must be a mapping")

        settings = self.load_from_dict(data)
        self.logger.info(
            "Configuration loaded successfully",
            environment=settings.environment,
            data_dir=settings.storage.data_dir
        )
        return settings

    def load_from_dict(self, data: Dict[str, Any]) -> AppSettings:
        """Load configuration from dictionary.

        Args:
            data: Configuration data as dictionary

        Returns:
            Validated AppSettings object
        """
        data = self._apply_env_overrides(data)
        try:
            return load_settings(**data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}")

    def _apply_env_overrides(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides to configuration data.

        Environment variables use the format: STOCKSYNC_<KEY>
        For example: STOCKSYNC_DATA_DIR, STOCKSYNC_LOG_LEVEL
        """
        env_overrides: Dict[str, Any] = {}

        if os.getenv("STOCKSYNC_ENVIRONMENT"):
            env_overrides["environment"] = os.getenv("STOCKSYNC_ENVIRONMENT")

        logging_overrides = {}
        if os.getenv("STOCKSYNC_LOG_LEVEL"):
            logging_overrides["level"] = os.getenv("STOCKSYNC_LOG_LEVEL")
        if os.getenv("STOCKSYNC_LOG_FORMAT"):
            logging_overrides["format"] = os.getenv("STOCKSYNC_LOG_FORMAT")
        if logging_overrides:
            env_overrides["logging"] = {**data.get("logging", {}), **logging_overrides}

        if os.getenv("STOCKSYNC_DATA_DIR"):
            env_overrides["storage"] = {
                **data.get("storage", {}),
                "data_dir": os.getenv("STOCKSYNC_DATA_DIR"),
            }

        if os.getenv("STOCKSYNC_AUTO_SYNC_INTERVAL"):
            try:
                interval = int(os.getenv("STOCKSYNC_AUTO_SYNC_INTERVAL"))
                env_overrides["auto_sync"] = {**data.get("auto_sync", {}), "interval_seconds": interval}
            except ValueError:
                self.logger.warning("Invalid STOCKSYNC_AUTO_SYNC_INTERVAL value, ignoring")

        if env_overrides:
            self.logger.info("Applied environment variable overrides", overrides=list(env_overrides.keys()))
            data = {**data, **env_overrides}

        return data

    def validate(self, settings: AppSettings) -> List[str]:
        """Validate configuration and return list of warnings/issues.

        Args:
            settings: Configuration to validate

        Returns:
            List of validation warnings
        """
        warnings = []

        if not settings.commerce.is_configured:
            warnings.append("Commerce store/token not configured; outbound and inbound sync disabled")
        elif not settings.commerce.location_id:
            warnings.append("No commerce location configured; level updates will fail")

        if settings.session.password == "password":
            warnings.append("Session password is the default value")

        if settings.rate_limit.min_interval_ms < 100:
            warnings.append(
                f"Very small request spacing: {settings.rate_limit.min_interval_ms}ms"
            )

        if settings.auto_sync.enabled and not settings.commerce.is_configured:
            warnings.append("Auto sync enabled without commerce configuration; it will not start")

        if warnings:
            self.logger.warning("Configuration validation warnings", warnings=warnings)
        else:
            self.logger.info("Configuration validation passed")

        return warnings


def load_config_from_env() -> AppSettings:
    """Load configuration from environment variables and default files.

    Looks for configuration files in this order:
    1. STOCKSYNC_CONFIG_FILE environment variable
    2. ./config/stocksync.yaml
    3. ./config/stocksync.json
    4. ./stocksync.yaml
    5. ./stocksync.json

    If no file is found, settings come from the environment alone.
    """
    loader = ConfigLoader()
    logger = get_logger("load_config_from_env")

    config_file = os.getenv("STOCKSYNC_CONFIG_FILE")
    if config_file:
        if os.path.exists(config_file):
            return loader.load_from_file(config_file)
        logger.warning("Specified config file not found", file=config_file)

    possible_files = [
        "./config/stocksync.yaml",
        "./config/stocksync.yml",
        "./config/stocksync.json",
        "./stocksync.yaml",
        "./stocksync.yml",
        "./stocksync.json",
    ]

    for file_path in possible_files:
        if os.path.exists(file_path):
            logger.info("Found configuration file", file=file_path)
            return loader.load_from_file(file_path)

    logger.info("No configuration file found, using environment settings")
    return loader.load_from_dict({})
