"""
Session Configuration - Project settings for a development session
Loads .devsession/config.json over built-in defaults and resolves hosts and ports
"""

import copy
import json
import logging
import os
from typing import Any, Dict, List, Optional

from port_allocator import PreferredPorts

logger = logging.getLogger(__name__)

CONFIG_DIR = ".devsession"
CONFIG_FILE = "config.json"
LOADER_FILE = "loader.js"
GITIGNORE_ENTRY = ".devsession/"

DEFAULT_APP_COMMAND = "npm run dev"
DEFAULT_SUPPORT_COMMAND = "devsession-support"

DEFAULT_CONFIG: Dict[str, Any] = {
    "support": {"host": None, "port": None, "command": DEFAULT_SUPPORT_COMMAND},
    "server": {"proxy_port": None},
    "proxy": {"port": None},
    "app": {"port": None, "command": DEFAULT_APP_COMMAND},
    "overlay": {"enabled": True},
}


def merge_config(default: Dict, loaded: Dict) -> Dict:
    """Recursively merge loaded values over defaults"""
    merged = copy.deepcopy(default)
    for key, value in loaded.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = value
    return merged


def _port_or(value: Any, fallback: int) -> int:
    # bool is an int subclass but never a port
    if isinstance(value, int) and not isinstance(value, bool) and 0 < value < 65536:
        return value
    return fallback


class SessionConfig:
    """Configuration for one project directory"""

    def __init__(self, project_dir: Optional[str] = None):
        self.project_dir = os.path.abspath(project_dir or os.getcwd())
        self.config_dir = os.path.join(self.project_dir, CONFIG_DIR)
        self.config_file = os.path.join(self.config_dir, CONFIG_FILE)
        self.config = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from file, falling back to defaults"""
        if os.path.exists(self.config_file):
            try:
                with open(self.config_file, "r", encoding="utf-8") as f:
                    loaded = json.load(f)
                if isinstance(loaded, dict):
                    return merge_config(DEFAULT_CONFIG, loaded)
                logger.warning(f"Ignoring {CONFIG_DIR}/{CONFIG_FILE}: top level is not an object")
            except (json.JSONDecodeError, OSError) as e:
                logger.warning(f"Failed to parse {CONFIG_DIR}/{CONFIG_FILE}: {e}")

        return copy.deepcopy(DEFAULT_CONFIG)

    def get(self, key_path: str, default=None):
        """Get configuration value by dot-separated key path"""
        value = self.config

        for key in key_path.split("."):
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default

        return default if value is None else value

    def resolve_host(self) -> str:
        """Bind host for the support service"""
        return (
            self.get("support.host")
            or os.environ.get("DEVSESSION_SUPPORT_HOST")
            or os.environ.get("HOST")
            or "localhost"
        )

    def resolve_preferred_ports(self) -> PreferredPorts:
        """Preferred ports from config, with defaults for anything missing or non-numeric"""
        defaults = PreferredPorts()
        proxy_port = self.get("server.proxy_port")
        if proxy_port is None:
            proxy_port = self.get("proxy.port")

        return PreferredPorts(
            proxy_port=_port_or(proxy_port, defaults.proxy_port),
            support_port=_port_or(self.get("support.port"), defaults.support_port),
            app_port=_port_or(self.get("app.port"), defaults.app_port),
        )

    @property
    def app_command(self) -> str:
        return self.get("app.command", DEFAULT_APP_COMMAND)

    @property
    def support_command(self) -> str:
        return self.get("support.command", DEFAULT_SUPPORT_COMMAND)

    @property
    def overlay_enabled(self) -> bool:
        return bool(self.get("overlay.enabled", True))


def gitignore_has_entry(project_dir: str) -> bool:
    """Check if the project's .gitignore already ignores the config directory"""
    path = os.path.join(project_dir, ".gitignore")
    if not os.path.exists(path):
        return False
    with open(path, "r", encoding="utf-8") as f:
        return GITIGNORE_ENTRY in f.read()


def missing_initialization_items(project_dir: str) -> List[str]:
    """Everything `devsession init` would create that is not there yet"""
    config_dir = os.path.join(project_dir, CONFIG_DIR)
    missing = []

    if not os.path.isdir(config_dir):
        missing.append(f"{CONFIG_DIR}/ directory")
    if not os.path.exists(os.path.join(config_dir, CONFIG_FILE)):
        missing.append(f"{CONFIG_DIR}/{CONFIG_FILE}")
    if not os.path.exists(os.path.join(config_dir, LOADER_FILE)):
        missing.append(f"{CONFIG_DIR}/{LOADER_FILE}")
    if not gitignore_has_entry(project_dir):
        missing.append(f".gitignore entry for {GITIGNORE_ENTRY}")

    return missing
