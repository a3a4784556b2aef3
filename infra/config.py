"""
Client Configuration
--------------------
Tunables for the request layer.

Loads from YAML with environment variable overrides:
    ESI_CLIENT_<KEY>          e.g. ESI_CLIENT_MIN_REQUEST_INTERVAL=0.2
    ESI_CLIENT_<SECTION>_<KEY> for dot-notation lookups through ConfigManager

Usage:
    settings = ClientSettings.load("esi_client.yaml")
"""

from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union
import os

import yaml

from .logging import get_logger

ENV_PREFIX = "ESI_CLIENT_"


class ConfigManager:
    """
    Raw configuration access.
    Loads configuration from YAML with environment variable overrides.
    """

    def __init__(self, config_path: Optional[Union[str, Path]] = None):
        self._config_path = Path(config_path) if config_path else None
        self._config: Dict[str, Any] = {}
        self._logger = get_logger("infra.config")

        self._load_config()

    def _load_config(self) -> None:
        """Load configuration from file."""
        if self._config_path is None:
            return
        if self._config_path.exists():
            with open(self._config_path, "r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f) or {}
            if not isinstance(loaded, dict):
                self._logger.warning(f"Ignoring non-mapping config in {self._config_path}")
                loaded = {}
            self._config = loaded
            self._logger.info(f"Loaded config from {self._config_path}")
        else:
            self._logger.warning(f"Config file not found: {self._config_path}")

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a configuration value.
        Supports dot notation: 'section.key'
        Environment variables override file config.
        """
        env_key = f"{ENV_PREFIX}{key.upper().replace('.', '_')}"
        env_value = os.getenv(env_key)
        if env_value is not None:
            return env_value

        value: Any = self._config
        for part in key.split("."):
            if isinstance(value, dict) and part in value:
                value = value[part]
            else:
                return default

        return value

    def set(self, key: str, value: Any) -> None:
        """Set a configuration value (runtime only, not persisted)."""
        parts = key.split(".")
        config = self._config

        for part in parts[:-1]:
            config = config.setdefault(part, {})

        config[parts[-1]] = value

    def as_dict(self) -> Dict[str, Any]:
        return dict(self._config)

    def reload(self) -> None:
        """Reload configuration from file."""
        self._load_config()


@dataclass
class ClientSettings:
    """Every tunable of the Provider API and bulk reference clients."""
    # Provider API
    esi_base_url: str = "https://esi.evetech.net"
    compatibility_date: str = "2025-11-06"
    app_version: str = "0.1.0"
    contact: str = "esi-client@example.invalid"
    request_timeout: float = 30.0
    min_request_interval: float = 0.1
    default_retry_after: float = 60.0
    rate_limit_warn_remaining: int = 20
    error_limit_warn_remaining: int = 50
    health_cache_ttl: float = 60.0
    health_request_timeout: float = 5.0

    # Bulk reference API
    ref_base_url: str = "https://edencom.net/api/v1"
    ref_app_key: Optional[str] = None
    ref_min_request_interval: float = 0.25
    ref_max_retries: int = 3
    ref_retry_base_delay: float = 2.0
    ref_request_timeout: float = 30.0

    # Resolvers
    type_coalesce_delay: float = 2.0
    location_coalesce_delay: float = 0.05
    type_chunk_size: int = 1000
    location_chunk_size: int = 1000
    chunk_concurrency: int = 3

    @property
    def user_agent(self) -> str:
        return f"ESIClient/{self.app_version} ({self.contact})"

    @classmethod
    def from_mapping(cls, values: Dict[str, Any]) -> "ClientSettings":
        """Build settings from a flat mapping, coercing to field types."""
        logger = get_logger("infra.config")
        known = {f.name: f for f in fields(cls)}
        kwargs: Dict[str, Any] = {}

        for key, raw in values.items():
            field_def = known.get(key)
            if field_def is None:
                logger.warning(f"Unknown config key ignored: {key}")
                continue
            kwargs[key] = _coerce(raw, field_def.default)

        return cls(**kwargs)

    @classmethod
    def load(cls, config_path: Optional[Union[str, Path]] = None) -> "ClientSettings":
        """Load settings from YAML (optional) and ESI_CLIENT_* environment variables."""
        manager = ConfigManager(config_path)
        values = dict(manager.get("client", {}) or {})

        for f in fields(cls):
            env_value = os.getenv(f"{ENV_PREFIX}{f.name.upper()}")
            if env_value is not None:
                values[f.name] = env_value

        return cls.from_mapping(values)


def _coerce(value: Any, default: Any) -> Any:
    """Convert config/env strings to the type of the field default."""
    if value is None:
        return None
    if isinstance(default, bool):
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes", "on"}
        return bool(value)
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    return str(value) if default is not None or isinstance(value, str) else value
