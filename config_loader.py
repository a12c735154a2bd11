"""
Configuration loader for the identity pipeline.
Loads config from JSON file and provides validation.
"""
import json
import os
from pathlib import Path
from typing import Any, Dict, List


class ConfigLoader:
    """Singleton configuration loader with validation."""

    _instance = None
    _config: Dict[str, Any] = {}
    _loaded = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super(ConfigLoader, cls).__new__(cls)
        return cls._instance

    def __init__(self):
        """Load configuration from JSON file on first instantiation."""
        if not self._loaded:
            config_path = os.getenv("ETL_CONFIG", "config.json")
            self._load_config(config_path)
            self._validate()
            self._loaded = True

    def _load_config(self, config_path: str):
        """Load and parse the configuration file."""
        config_file = Path(config_path)

        if not config_file.exists():
            raise FileNotFoundError(
                f"Configuration file not found: {config_path}. "
                "Please create it from config.json or set ETL_CONFIG env var."
            )

        with open(config_file, "r") as f:
            self._config = json.load(f)

    def _validate(self):
        """Validate required sections and value ranges."""
        required_sections = [
            "database_path",
            "paths",
            "identity",
            "netting",
            "validation",
        ]
        missing = [s for s in required_sections if s not in self._config]
        if missing:
            raise ValueError(f"Missing required config sections: {missing}")

        tracked = self._config.get("identity", {}).get("tracked_user_attributes")
        if not isinstance(tracked, list) or not all(isinstance(a, str) for a in tracked):
            raise ValueError(
                f"identity.tracked_user_attributes must be a list of names, got {tracked}"
            )

        prefix = self._config.get("identity", {}).get("anonymous_prefix", "ANON-")
        if not isinstance(prefix, str) or not prefix:
            raise ValueError(
                f"identity.anonymous_prefix must be a non-empty string, got {prefix!r}"
            )

        refund_statuses = self._config.get("netting", {}).get("refund_statuses")
        if not isinstance(refund_statuses, list) or not refund_statuses:
            raise ValueError(
                f"netting.refund_statuses must be a non-empty list, got {refund_statuses}"
            )

        tolerance = self._config.get("validation", {}).get("netting_tolerance")
        if not isinstance(tolerance, (int, float)) or tolerance < 0:
            raise ValueError(
                f"validation.netting_tolerance must be non-negative number, got {tolerance}"
            )

    def get(self, key_path: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation.

        Args:
            key_path: Dot-separated path like 'database_path' or 'netting.refund_statuses'
            default: Default value if key not found

        Returns:
            Configuration value or default

        Example:
            config.get('database_path')
            config.get('identity.anonymous_prefix', 'ANON-')
        """
        keys = key_path.split(".")
        value = self._config

        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default

        return value

    def get_list(self, key_path: str, default: List[Any] = None) -> List[Any]:
        """Get a list value; a scalar is wrapped, a missing key yields default (or [])."""
        value = self.get(key_path)
        if value is None:
            return list(default or [])
        if isinstance(value, list):
            return value
        return [value]

    def get_path(
        self, path_key: str, create: bool = False, base_dir: str = None
    ) -> Path:
        """
        Get a path from config and optionally create the directory.

        Args:
            path_key: Key to path in config (e.g., 'paths.staging_dir')
            create: If True, create the directory
            base_dir: Base directory for relative paths (defaults to current dir)

        Returns:
            Path object (absolute)
        """
        path_str = self.get(path_key)
        if not path_str:
            raise ValueError(f"Path key '{path_key}' not found in config")

        path = Path(path_str)

        if not path.is_absolute():
            if base_dir:
                path = Path(base_dir) / path
            else:
                path = Path.cwd() / path

        if create:
            path.mkdir(parents=True, exist_ok=True)

        return path

    def reload(self):
        """Force reload configuration from file (useful for testing)."""
        self._loaded = False
        self.__init__()


# Global singleton instance
_loader = None


def load_config() -> ConfigLoader:
    """Get or create the global configuration loader instance."""
    global _loader
    if _loader is None:
        _loader = ConfigLoader()
    return _loader
