"""Configuration management for igdctl.

Loads configuration hierarchically from defaults → TOML config file →
environment variables, validated through the pydantic models.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import toml

from .exceptions import ConfigurationError
from .logging_config import setup_logging
from .models import Config

# Mapping of environment variables to config paths
ENV_MAPPINGS: Dict[str, str] = {
    # NAT / UPnP
    "IGDCTL_ADD_RETRY_ATTEMPTS": "nat.add_retry_attempts",
    "IGDCTL_ADD_RETRY_DELAY": "nat.add_retry_delay",
    "IGDCTL_LEASE_DURATION": "nat.lease_duration",
    "IGDCTL_DESCRIPTION_PREFIX": "nat.description_prefix",
    "IGDCTL_INTERNAL_CLIENT": "nat.internal_client",
    "IGDCTL_SSDP_SEARCH_INTERVAL": "nat.ssdp_search_interval",
    "IGDCTL_SSDP_MX": "nat.ssdp_mx",
    "IGDCTL_SSDP_BIND_PORT": "nat.ssdp_bind_port",
    "IGDCTL_SOAP_TIMEOUT": "nat.soap_timeout",
    "IGDCTL_DESCRIPTION_TIMEOUT": "nat.description_timeout",
    # Observability
    "IGDCTL_LOG_LEVEL": "observability.log_level",
    "IGDCTL_LOG_FILE": "observability.log_file",
    "IGDCTL_STRUCTURED_LOGGING": "observability.structured_logging",
}

# Values kept verbatim even when they look like numbers or booleans
_STRING_PATHS = {"nat.description_prefix", "nat.internal_client", "observability.log_file"}


class ConfigManager:
    """Manages configuration loading and validation."""

    def __init__(self, config_file: Optional[Union[str, Path]] = None):
        """Initialize configuration manager.

        Args:
            config_file: Path to TOML config file. If None, searches for igdctl.toml
        """
        self.config_file = self._find_config_file(config_file)
        self.config = self._load_config()
        self._setup_logging()

    def _find_config_file(self, config_file: Optional[Union[str, Path]]) -> Optional[Path]:
        """Find configuration file in standard locations."""
        if config_file:
            return Path(config_file)

        search_paths = [
            Path.cwd() / "igdctl.toml",
            Path.home() / ".config" / "igdctl" / "igdctl.toml",
            Path.home() / ".igdctl.toml",
        ]

        for path in search_paths:
            if path.exists():
                return path

        return None

    def _load_config(self) -> Config:
        """Load configuration from file and environment."""
        config_data: Dict[str, Any] = {}

        if self.config_file and self.config_file.exists():
            try:
                with open(self.config_file, encoding="utf-8") as f:
                    toml_data = toml.load(f)
                config_data.update(toml_data)
            except (OSError, toml.TomlDecodeError) as e:
                logging.warning(f"Failed to load config file {self.config_file}: {e}")

        env_config = self._get_env_config()
        config_data = self._merge_config(config_data, env_config)

        try:
            return Config(**config_data)
        except Exception as e:
            raise ConfigurationError(f"Invalid configuration: {e}")

    def _get_env_config(self) -> Dict[str, Any]:
        """Get configuration from environment variables."""
        env_config: Dict[str, Any] = {}

        def _parse_env_value(raw: str) -> Union[bool, int, float, str]:
            low = raw.lower()
            if low in {"true", "yes", "on"}:
                return True
            if low in {"false", "no", "off"}:
                return False
            try:
                if "." in raw:
                    return float(raw)
                return int(raw)
            except ValueError:
                return raw

        def _set_nested(d: Dict[str, Any], path: str, value: Any) -> None:
            parts = path.split(".")
            cur = d
            for p in parts[:-1]:
                cur = cur.setdefault(p, {})
            cur[parts[-1]] = value

        for env_name, cfg_path in ENV_MAPPINGS.items():
            raw = os.getenv(env_name)
            if raw is None:
                continue
            value = raw if cfg_path in _STRING_PATHS else _parse_env_value(raw)
            _set_nested(env_config, cfg_path, value)

        return env_config

    def _merge_config(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Merge configuration dictionaries recursively."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value

        return result

    def export(self, fmt: str = "toml") -> str:
        """Export current configuration as a string in the given format.

        Args:
            fmt: one of "toml" or "json"
        """
        data = self.config.model_dump(mode="json", exclude_none=True)
        fmt = (fmt or "toml").lower()
        if fmt == "toml":
            return toml.dumps(data)
        if fmt == "json":
            return json.dumps(data, indent=2)
        raise ConfigurationError(f"Unsupported export format: {fmt}")

    def _setup_logging(self) -> None:
        """Set up logging configuration."""
        setup_logging(self.config.observability)


def init_config(config_file: Optional[Union[str, Path]] = None) -> ConfigManager:
    """Load configuration and apply its logging settings.

    Raises:
        ConfigurationError: if the merged settings do not validate
    """
    return ConfigManager(config_file)
