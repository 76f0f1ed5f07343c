"""Configuration management for mdsync.

This module handles loading and saving application configuration to/from
a JSON file. The config directory can be customized via CLI argument.

Keys use dotted paths for nested sections, e.g. "sync.server_url".

CRITICAL: This module must have NO Flask dependencies.
"""

from __future__ import annotations

import copy
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from .validation import ValidationError

logger = logging.getLogger(__name__)

__all__ = ["Config", "DEFAULT_CONFIG"]

DEFAULT_CONFIG: Dict[str, Any] = {
    "database_file": "mdsync.sqlite",
    "sync": {
        "namespace": "docs:article/sync-",
        "server_port": 8384,
        "server_url": "http://127.0.0.1:8384",
        "sync_directory": None,
    },
}


class Config:
    """Manages application configuration stored in JSON format.

    Attributes:
        config_dir: Path to the configuration directory
        config_file: Path to config.json
        config_data: Loaded configuration (defaults merged in)
    """

    def __init__(self, config_dir: Optional[Path] = None) -> None:
        """Initialize configuration manager.

        Args:
            config_dir: Custom config directory path. If None, uses ~/.config/mdsync/
        """
        if config_dir is None:
            config_dir = Path.home() / ".config" / "mdsync"
        self.config_dir = Path(config_dir)
        self.config_file = self.config_dir / "config.json"
        self.config_data = self.load_config()

    def load_config(self) -> Dict[str, Any]:
        """Load configuration, writing defaults if the file does not exist."""
        self.config_dir.mkdir(parents=True, exist_ok=True)
        data = copy.deepcopy(DEFAULT_CONFIG)

        if not self.config_file.exists():
            self.save_config(data)
            logger.info(f"Created default config at {self.config_file}")
            return data

        try:
            with open(self.config_file, "r", encoding="utf-8") as f:
                stored = json.load(f)
        except json.JSONDecodeError as e:
            raise ValidationError("config", f"{self.config_file} is not valid JSON: {e}") from e

        if not isinstance(stored, dict):
            raise ValidationError("config", f"{self.config_file} must contain a JSON object")

        _merge(data, stored)
        return data

    def save_config(self, config: Optional[Dict[str, Any]] = None) -> None:
        """Write configuration to disk."""
        if config is not None:
            self.config_data = config
        self.config_dir.mkdir(parents=True, exist_ok=True)
        with open(self.config_file, "w", encoding="utf-8") as f:
            json.dump(self.config_data, f, indent=2)

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value by dotted key."""
        node: Any = self.config_data
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return default if node is None else node

    def set(self, key: str, value: Any) -> None:
        """Set a configuration value by dotted key and save to file."""
        parts = key.split(".")
        node = self.config_data
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = value
        self.save_config()

    def get_config_dir(self) -> Path:
        """Get the configuration directory path."""
        return self.config_dir

    def get_database_path(self) -> Path:
        """Get the database file path (relative paths resolve against config_dir)."""
        path = Path(self.get("database_file", DEFAULT_CONFIG["database_file"]))
        if not path.is_absolute():
            path = self.config_dir / path
        return path

    # ===== Sync Configuration Methods =====

    def get_sync_config(self) -> Dict[str, Any]:
        """Get sync configuration."""
        return dict(self.config_data.get("sync", {}))

    def get_sync_namespace(self) -> str:
        """Get the identity prefix of synchronized documents."""
        return self.get("sync.namespace", DEFAULT_CONFIG["sync"]["namespace"])

    def get_sync_server_port(self) -> int:
        """Get the sync server port."""
        return int(self.get("sync.server_port", DEFAULT_CONFIG["sync"]["server_port"]))

    def set_sync_server_port(self, port: int) -> None:
        """Set the sync server port."""
        if isinstance(port, bool) or not isinstance(port, int) or not 1 <= port <= 65535:
            raise ValidationError("sync.server_port", "must be an integer between 1 and 65535")
        self.set("sync.server_port", port)

    def get_sync_server_url(self) -> str:
        """Get the URL clients use to reach the sync server."""
        return self.get("sync.server_url", DEFAULT_CONFIG["sync"]["server_url"])

    def set_sync_server_url(self, url: str) -> None:
        """Set the sync server URL."""
        if not isinstance(url, str) or not url.startswith(("http://", "https://")):
            raise ValidationError("sync.server_url", "must start with http:// or https://")
        self.set("sync.server_url", url.rstrip("/"))

    def get_sync_directory(self) -> Optional[Path]:
        """Get the local directory mirrored by the sync client."""
        value = self.get("sync.sync_directory")
        return Path(value).expanduser() if value else None

    def set_sync_directory(self, path: Path) -> None:
        """Set the local directory mirrored by the sync client."""
        self.set("sync.sync_directory", str(Path(path).expanduser().resolve()))


def _merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> None:
    """Recursively merge overrides into base (in place)."""
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
