"""
MiSub - Configuration Manager
==============================
Handles loading of server configuration from two sources:

1. config.yaml  - Non-sensitive settings (address, CORS origin, KV backend)
2. Environment  - Secrets (ADMIN_PASSWORD, COOKIE_SECRET), usually from .env

app.py loads .env into the process environment before the app is created,
so secrets are read with os.environ here. Tests can pass an explicit
mapping instead.

Usage:
    config = ConfigManager(project_dir="/path/to/misub")
    settings = config.load()        # Returns merged config dict
    secrets = config.secrets()      # {"admin_password": ..., "cookie_secret": ...}
"""

import logging
import os
from typing import Mapping

import yaml


logger = logging.getLogger(__name__)


# Default configuration values used when config.yaml is missing or incomplete.
DEFAULTS = {
    "web": {
        "host": "127.0.0.1",
        "port": 8787,
        "log_level": "info",
    },
    "cors": {
        "origin": "http://localhost:5173",
    },
    "kv": {
        "backend": "file",
        "path": "data/kv.json",
    },
    "auth": {
        "session_days": 7,
    },
    "server": {
        # Unknown routes answer 200 with the endpoint listing instead of 404
        "legacy_fallback": False,
        # Include exception message and traceback in 500 payloads
        "expose_errors": False,
        # Read-check-write attempts before a 409
        "write_attempts": 5,
    },
}

ENV_ADMIN_PASSWORD = "ADMIN_PASSWORD"
ENV_COOKIE_SECRET = "COOKIE_SECRET"


class ConfigManager:
    """
    Configuration reader for the local server.

    Attributes:
        project_dir: Root directory of the project.
        config_path: Full path to config.yaml.
        env_path:    Full path to .env file.
    """

    def __init__(self, project_dir: str):
        self.project_dir = project_dir
        self.config_path = os.path.join(project_dir, "config.yaml")
        self.env_path = os.path.join(project_dir, ".env")

    def load(self) -> dict:
        """
        Load and merge configuration from config.yaml with defaults.

        Returns:
            A dictionary containing the full configuration. If the YAML
            file is unreadable, defaults are returned with '_config_error' set.
        """
        config = _deep_copy(DEFAULTS)

        if os.path.exists(self.config_path):
            try:
                with open(self.config_path, "r", encoding="utf-8") as f:
                    user_config = yaml.safe_load(f) or {}
                if not isinstance(user_config, dict):
                    raise yaml.YAMLError("top level must be a mapping")
                _deep_merge(config, user_config)
            except (yaml.YAMLError, OSError) as e:
                logger.error("Ignoring %s: %s", self.config_path, e)
                config["_config_error"] = str(e)

        return config

    def secrets(self, environ: Mapping[str, str] | None = None) -> dict:
        """
        Read secrets from the environment.

        Args:
            environ: Mapping to read from. Defaults to os.environ.

        Returns:
            Dict with 'admin_password' and 'cookie_secret' (None when unset).
        """
        env = os.environ if environ is None else environ
        return {
            "admin_password": env.get(ENV_ADMIN_PASSWORD) or None,
            "cookie_secret": env.get(ENV_COOKIE_SECRET) or None,
        }


# -- Helper Functions ---------------------------------------------------------

def _deep_copy(d: dict) -> dict:
    """Create a deep copy of a nested dictionary."""
    result = {}
    for key, value in d.items():
        if isinstance(value, dict):
            result[key] = _deep_copy(value)
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _deep_merge(base: dict, override: dict) -> None:
    """
    Recursively merge 'override' into 'base' (in-place).

    For nested dicts, values are merged recursively.
    For all other types, override replaces base.
    """
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value


def build_config(overrides: dict | None = None) -> dict:
    """Return DEFAULTS with 'overrides' merged on top (for tests and embedding)."""
    config = _deep_copy(DEFAULTS)
    if overrides:
        _deep_merge(config, overrides)
    return config
