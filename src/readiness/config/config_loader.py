"""
Configuration loader for the readiness pipeline.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from ..core.exceptions import ConfigError
from ..runner.batch_runner import (
    DEFAULT_CONCURRENCY,
    DEFAULT_MAX_FAILURES_KEPT,
    DEFAULT_MAX_RECORDS,
    DEFAULT_PAGE_SIZE,
    DEFAULT_UNIT_TIMEOUT_SECONDS,
    DEFAULT_YIELD_SECONDS,
    BatchConfig,
)


logger = logging.getLogger(__name__)


def _int_or_none(value: str) -> Optional[int]:
    if value.strip().lower() in ("none", "unlimited"):
        return None
    return int(value)


# Environment variable -> dotted config key
ENV_OVERRIDES = {
    "READINESS_STORE_BACKEND": ("store.backend", str),
    "READINESS_DB_PATH": ("store.sqlite.db_path", str),
    "READINESS_MODE": ("batch.mode", str),
    "READINESS_PAGE_SIZE": ("batch.page_size", int),
    "READINESS_MAX_RECORDS": ("batch.max_records", _int_or_none),
    "READINESS_CONCURRENCY": ("batch.concurrency", int),
}


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class ReadinessConfig:
    """
    Configuration for the readiness pipeline.

    Loads a YAML file on top of the defaults, then applies READINESS_*
    environment overrides.
    """

    def __init__(self, config_path: Optional[Union[str, Path]] = None):
        """
        Initialize configuration.

        Args:
            config_path: Path to YAML config file (optional)
        """
        self.config_path = Path(config_path) if config_path else None
        self.config = self._default_config()
        if self.config_path:
            self.config = _merge(self.config, self._load_config())
        self._apply_env_overrides()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from YAML file."""
        if not self.config_path.exists():
            raise FileNotFoundError(f"Config file not found: {self.config_path}")

        logger.info(f"Loading config from: {self.config_path}")

        with open(self.config_path, "r", encoding="utf-8") as f:
            try:
                config = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {self.config_path}: {e}") from e

        if config is not None and not isinstance(config, dict):
            raise ConfigError(f"Config root must be a mapping: {self.config_path}")
        return config or {}

    def _default_config(self) -> Dict[str, Any]:
        """Return default configuration."""
        return {
            "store": {
                "backend": "sqlite",
                "sqlite": {
                    "db_path": "local/readiness/cellar.db",
                    "busy_timeout_seconds": 5.0,
                },
                "sqlserver": {
                    "host": "localhost",
                    "port": 1433,
                    "database": "Cellar",
                    "user": "sa",
                    "schema": "cellar",
                    "driver": "ODBC Driver 18 for SQL Server",
                    "query_timeout_seconds": 30,
                },
            },
            "batch": {
                "mode": "missing_only",
                "page_size": DEFAULT_PAGE_SIZE,
                "max_records": DEFAULT_MAX_RECORDS,
                "concurrency": DEFAULT_CONCURRENCY,
                "unit_timeout_seconds": DEFAULT_UNIT_TIMEOUT_SECONDS,
                "yield_seconds": DEFAULT_YIELD_SECONDS,
                "pagination": "keyset",
                "max_failures_kept": DEFAULT_MAX_FAILURES_KEPT,
                "checkpoint": True,
            },
            "logging": {
                "level": "INFO",
                "structured": False,
            },
        }

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides to loaded config."""
        for env_var, (key, cast) in ENV_OVERRIDES.items():
            raw = os.environ.get(env_var)
            if raw is None or raw == "":
                continue
            try:
                value = cast(raw)
            except ValueError as e:
                raise ConfigError(f"Invalid value for {env_var}: {raw!r}") from e
            self._set(key, value)

    def _set(self, key: str, value: Any) -> None:
        keys = key.split(".")
        node = self.config
        for k in keys[:-1]:
            node = node.setdefault(k, {})
        node[keys[-1]] = value

    def get_store_config(self) -> Dict[str, Any]:
        """Get record store configuration."""
        return self.config.get("store", {})

    def get_batch_settings(self) -> Dict[str, Any]:
        """Get raw batch job settings."""
        return self.config.get("batch", {})

    def get_logging_config(self) -> Dict[str, Any]:
        """Get logging configuration."""
        return self.config.get("logging", {})

    def get_batch_config(self) -> BatchConfig:
        """
        Build a validated BatchConfig from the batch section.

        Raises:
            ConfigError: If a value is missing its expected type or out of range
        """
        settings = dict(self.get_batch_settings())
        known = set(BatchConfig.__dataclass_fields__)
        unknown = set(settings) - known
        if unknown:
            logger.warning(f"Ignoring unknown batch settings: {sorted(unknown)}")
        try:
            return BatchConfig(**{k: v for k, v in settings.items() if k in known})
        except TypeError as e:
            raise ConfigError(f"Invalid batch settings: {e}") from e

    def get_store_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for create_record_store() derived from the store section."""
        store = self.get_store_config()
        backend = store.get("backend", "sqlite")
        if backend == "sqlite":
            sqlite = store.get("sqlite", {})
            return {
                "backend": "sqlite",
                "db_path": sqlite.get("db_path"),
                "busy_timeout": sqlite.get("busy_timeout_seconds"),
            }
        if backend == "sqlserver":
            sqlserver = store.get("sqlserver", {})
            return {
                "backend": "sqlserver",
                "connection_string": sqlserver.get("connection_string"),
                "host": sqlserver.get("host", "localhost"),
                "port": sqlserver.get("port", 1433),
                "database": sqlserver.get("database", "Cellar"),
                "username": sqlserver.get("user", "sa"),
                "password": sqlserver.get("password"),
                "driver": sqlserver.get("driver", "ODBC Driver 18 for SQL Server"),
                "schema": sqlserver.get("schema", "cellar"),
                "query_timeout": sqlserver.get("query_timeout_seconds"),
            }
        return {"backend": backend}

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value by dotted key."""
        keys = key.split(".")
        value = self.config

        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default

        return value if value is not None else default
