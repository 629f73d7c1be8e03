"""
Configuration management for the palette reducer.
Handles loading, saving, and managing user preferences.
"""

import copy
import json
import logging
import os
from typing import Any, Dict
from pathlib import Path

logger = logging.getLogger(__name__)

__all__ = [
    'ConfigManager',
]


class ConfigManager:
    """Manages application configuration and user preferences."""

    DEFAULT_CONFIG = {
        # Default processing settings, used where a job config leaves them out
        "defaults": {
            "palette_source": "analyze",
            "num_colors": 256,
            "threshold": 400,
            "metric": "lab_quick",
            "dither_mode": "floyd_steinberg",
            "strength": 1.0,
            "seed": 42,
            "final_resize_enabled": False,
            "final_resize_multiplier": 2
        },

        # Where named palettes live
        "palettes": {
            "file": "palette.json"
        },

        # Last used paths
        "paths": {
            "last_image_dir": None,
            "last_save_dir": None,
            "last_preload_dir": None
        },

        # Recent files (keep last 10)
        "recent_files": []
    }

    def __init__(self, config_file: str = "config.json"):
        """
        Initialize config manager.

        Args:
            config_file: Path to config file
        """
        self.config_file = config_file
        self.config = self._load_config()

    def _load_config(self) -> Dict:
        """Load config from file, or create default if not exists."""
        defaults = copy.deepcopy(self.DEFAULT_CONFIG)
        if not os.path.exists(self.config_file):
            self._write(defaults)
            return defaults
        try:
            with open(self.config_file, 'r', encoding='utf-8') as f:
                loaded = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Error loading config {self.config_file}: {e}")
            return defaults
        if not isinstance(loaded, dict):
            logger.error(f"Ignoring config {self.config_file}: top level must be an object")
            return defaults
        # Merge with defaults to handle new settings
        return self._merge_configs(defaults, loaded)

    def _merge_configs(self, default: Dict, loaded: Dict) -> Dict:
        """
        Recursively merge loaded config with defaults.
        Ensures all default keys exist even if not in loaded config.
        """
        for key, value in default.items():
            if key in loaded:
                if isinstance(value, dict) and isinstance(loaded[key], dict):
                    default[key] = self._merge_configs(value, loaded[key])
                else:
                    default[key] = loaded[key]
        return default

    def _write(self, config: Dict):
        try:
            with open(self.config_file, 'w', encoding='utf-8') as f:
                json.dump(config, f, indent=4)
        except OSError as e:
            logger.error(f"Error saving config {self.config_file}: {e}")

    def save(self):
        """Save current config to file."""
        self._write(self.config)

    def get(self, *keys: str, default: Any = None) -> Any:
        """
        Get config value by nested keys.

        Args:
            *keys: Nested keys (e.g., "defaults", "strength")
            default: Default value if key not found

        Returns:
            Config value or default

        Example:
            config.get("defaults", "num_colors")  # Returns 256
        """
        value = self.config
        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default
        return value

    def set(self, *keys: str, value: Any):
        """
        Set config value by nested keys.

        Args:
            *keys: Nested keys (e.g., "defaults", "strength")
            value: Value to set

        Example:
            config.set("defaults", "strength", value=0.75)
        """
        if len(keys) == 0:
            return

        # Navigate to the parent dict
        current = self.config
        for key in keys[:-1]:
            if key not in current:
                current[key] = {}
            current = current[key]

        current[keys[-1]] = value

    def get_processing_defaults(self) -> Dict[str, Any]:
        """Copy of the "defaults" section."""
        return dict(self.get("defaults", default={}))

    def update_last_path(self, path_type: str, filepath: str):
        """
        Update last used directory for a path type.

        Args:
            path_type: "image", "save", or "preload"
            filepath: File path to extract directory from
        """
        if filepath:
            directory = str(Path(filepath).parent)
            self.set("paths", f"last_{path_type}_dir", value=directory)

    def add_recent_file(self, filepath: str, max_recent: int = 10):
        """
        Add file to recent files list.

        Args:
            filepath: File path to add
            max_recent: Maximum number of recent files to keep
        """
        recent = list(self.get("recent_files", default=[]))

        if filepath in recent:
            recent.remove(filepath)
        recent.insert(0, filepath)

        self.set("recent_files", value=recent[:max_recent])

    def get_recent_files(self, max_count: int = 10) -> list:
        """
        Get list of recent files that still exist.

        Args:
            max_count: Maximum number to return

        Returns:
            List of file paths
        """
        recent = self.get("recent_files", default=[])
        existing = [f for f in recent if os.path.exists(f)]
        return existing[:max_count]

    def clear_recent_files(self):
        """Clear all recent files."""
        self.set("recent_files", value=[])
