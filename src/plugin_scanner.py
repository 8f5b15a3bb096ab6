"""
Plugin Scanner - Finds overlay plugins in the project's .devsession/plugins directory
Each plugin is served by the support service and loaded with one script tag
"""

import logging
import os
from typing import Dict, List

from session_config import CONFIG_DIR

logger = logging.getLogger(__name__)

PLUGIN_DIR = "plugins"
PLUGIN_EXTENSIONS = (".js", ".mjs", ".cjs")


class PluginEntry:
    """A plugin file discovered in the project"""

    def __init__(self, name: str, file: str):
        self.name = name
        self.file = file

    def __repr__(self):
        return f"PluginEntry(name='{self.name}', file='{self.file}')"

    def __eq__(self, other):
        return isinstance(other, PluginEntry) and (self.name, self.file) == (other.name, other.file)

    def to_dict(self) -> Dict[str, str]:
        """Convert to dictionary"""
        return {"name": self.name, "file": self.file}


def scan_plugins(project_dir: str) -> List[PluginEntry]:
    """
    List plugin files sorted by file name
    A missing or unreadable plugin directory yields no plugins
    """
    plugins_dir = os.path.join(project_dir, CONFIG_DIR, PLUGIN_DIR)

    try:
        files = sorted(os.listdir(plugins_dir))
    except FileNotFoundError:
        return []
    except OSError as e:
        logger.warning(f"Could not read plugin directory {plugins_dir}: {e}")
        return []

    plugins = []
    for file in files:
        name, ext = os.path.splitext(file)
        if ext in PLUGIN_EXTENSIONS and name and os.path.isfile(os.path.join(plugins_dir, file)):
            plugins.append(PluginEntry(name, file))

    logger.debug(f"Found {len(plugins)} plugin(s): {[p.name for p in plugins]}")
    return plugins
