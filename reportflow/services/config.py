"""
ConfigService - Configuration management.
"""

import copy
import os
from typing import Any, Dict, Optional
from pathlib import Path
import yaml


DEFAULTS: Dict[str, Any] = {
    "database_url": "",
    "storage": {
        "base_path": "./data",
        "max_file_size_mb": 100,
    },
    "engine": {
        "cache_ttl": 3600,
    },
    "scheduler": {
        "sweep_interval": 60,
    },
    "subscriptions": {
        "sweep_interval": 60,
        "drain_interval": 5,
        "retention_days": 30,
    },
    "delivery": {
        "smtp": {
            "host": "",
            "port": 587,
            "username": None,
            "password": None,
            "from_address": "reports@reportflow.local",
            "from_name": "Reportflow",
            "use_tls": True,
            "timeout": 30,
        },
        "webhook": {
            "timeout": 30,
        },
        "ftp": {
            "timeout": 30,
        },
    },
}


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge override into a copy of base."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class ConfigService:
    """
    Configuration management service.

    Loads defaults, then environment variables, then an optional YAML file
    whose `reportflow` section (or the whole document) is merged on top.
    """

    def __init__(self, config_path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None):
        self._config: Dict[str, Any] = copy.deepcopy(DEFAULTS)
        self._load_env()

        if config_path:
            self._load_yaml(config_path)
        elif os.environ.get("REPORTFLOW_CONFIG_PATH"):
            self._load_yaml(os.environ["REPORTFLOW_CONFIG_PATH"])

        if overrides:
            self._config = _merge(self._config, overrides)

    def _load_env(self):
        """Load configuration from environment variables."""
        if os.environ.get("REPORTFLOW_DATABASE_URL"):
            self._config["database_url"] = os.environ["REPORTFLOW_DATABASE_URL"]
        if os.environ.get("REPORTFLOW_DATA_DIR"):
            self.set("storage.base_path", os.environ["REPORTFLOW_DATA_DIR"])
        if os.environ.get("REPORTFLOW_SMTP_HOST"):
            self.set("delivery.smtp.host", os.environ["REPORTFLOW_SMTP_HOST"])
        if os.environ.get("REPORTFLOW_SMTP_PORT"):
            self.set("delivery.smtp.port", int(os.environ["REPORTFLOW_SMTP_PORT"]))

    def _load_yaml(self, path: str):
        """Load configuration from YAML file."""
        config_file = Path(path)
        if config_file.exists():
            with open(config_file) as f:
                yaml_config = yaml.safe_load(f) or {}
            yaml_config = yaml_config.get("reportflow", yaml_config)
            self._config = _merge(self._config, yaml_config)

    @property
    def database_url(self) -> str:
        return self._config.get("database_url", "")

    def get(self, key: str, default: Any = None) -> Any:
        """Get a config value by dot-notation key."""
        parts = key.split(".")
        value = self._config

        for part in parts:
            if isinstance(value, dict) and part in value:
                value = value[part]
            else:
                return default

        return value

    def set(self, key: str, value: Any) -> None:
        """Set a config value."""
        parts = key.split(".")
        config = self._config

        for part in parts[:-1]:
            if part not in config:
                config[part] = {}
            config = config[part]

        config[parts[-1]] = value

    def as_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self._config)
