"""Configuration Management for CLI Settings"""

import os
from pathlib import Path
from typing import Any

import yaml


class ConfigManager:
    """Manage CLI configuration stored in ``~/.jobflow/config.yaml``"""

    def __init__(self, config_dir: Path | None = None):
        self.config_dir = config_dir or Path(
            os.getenv("JOBFLOW_CLI_HOME", Path.home() / ".jobflow")
        )
        self.config_file = self.config_dir / "config.yaml"

    def load_config(self) -> dict[str, Any]:
        """Load configuration merged over the defaults"""
        config = self.get_default_config()
        if not self.config_file.exists():
            return config

        with open(self.config_file) as f:
            stored = yaml.safe_load(f) or {}
        _merge(config, stored)
        return config

    def save_config(self, config: dict[str, Any]):
        self.config_dir.mkdir(parents=True, exist_ok=True)
        with open(self.config_file, "w") as f:
            yaml.safe_dump(config, f, default_flow_style=False)

    def get_default_config(self) -> dict[str, Any]:
        return {
            "api": {
                "base_url": os.getenv("JOBFLOW_API_URL", "http://localhost:8000"),
                "timeout": 30,
                "headers": {},
            },
            "display": {"page_size": 50},
        }

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value using dot notation (e.g., 'api.base_url')"""
        current: Any = self.load_config()
        for k in key.split("."):
            if isinstance(current, dict) and k in current:
                current = current[k]
            else:
                return default
        return current

    def set(self, key: str, value: Any):
        """Set configuration value using dot notation"""
        config = self.load_config()
        keys = key.split(".")

        current = config
        for k in keys[:-1]:
            if not isinstance(current.get(k), dict):
                current[k] = {}
            current = current[k]
        current[keys[-1]] = value

        self.save_config(config)

    def reset(self):
        self.save_config(self.get_default_config())


def _merge(base: dict[str, Any], override: dict[str, Any]) -> None:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value


# Global config manager instance
config = ConfigManager()
