"""
Project Init - Scaffolds the .devsession directory for `devsession init`
Existing files are left alone so the command is safe to run repeatedly
"""

import json
import logging
import os
from typing import List

from console_output import ConsoleOutput
from session_config import CONFIG_DIR, CONFIG_FILE, GITIGNORE_ENTRY, LOADER_FILE

logger = logging.getLogger(__name__)

INITIAL_CONFIG = {
    "support": {"host": "localhost"},
    "overlay": {"enabled": True},
}

LOADER_CONTENT = """// devsession loader - automatically generated
// This file is used by the devsession proxy to inject the overlay
module.exports = {
  inject: true,
};
"""


class ProjectInitializer:
    """Creates the files `devsession start` expects to find"""

    def __init__(self, project_dir: str, console: ConsoleOutput):
        self.project_dir = project_dir
        self.console = console
        self.config_dir = os.path.join(project_dir, CONFIG_DIR)
        self.created: List[str] = []

    def run(self) -> List[str]:
        """Scaffold everything; returns the paths that were created or updated"""
        self.console.line("🚀 Initializing devsession...", ConsoleOutput.CYAN)

        self.ensure_config_file()
        self.ensure_loader_file()
        self.ensure_gitignore_entry()

        self.console.line()
        self.console.success("devsession initialized successfully!")
        self.console.line()
        self.console.line("Next steps:", ConsoleOutput.CYAN)
        self.console.line("  1. Run 'devsession start' to start the development session")
        self.console.line("  2. Free ports are picked automatically; check the console output")
        self.console.line()
        return self.created

    def ensure_config_file(self):
        if not os.path.isdir(self.config_dir):
            os.makedirs(self.config_dir, exist_ok=True)
            self.console.success(f"Created {CONFIG_DIR}/ directory")

        path = os.path.join(self.config_dir, CONFIG_FILE)
        if os.path.exists(path):
            self.console.warning(f"{CONFIG_DIR}/{CONFIG_FILE} already exists")
            return

        with open(path, "w", encoding="utf-8") as f:
            json.dump(INITIAL_CONFIG, f, indent=2)
        self._record(path)
        self.console.success(f"Created {CONFIG_DIR}/{CONFIG_FILE}")

    def ensure_loader_file(self):
        os.makedirs(self.config_dir, exist_ok=True)

        path = os.path.join(self.config_dir, LOADER_FILE)
        if os.path.exists(path):
            self.console.warning(f"{CONFIG_DIR}/{LOADER_FILE} already exists")
            return

        with open(path, "w", encoding="utf-8") as f:
            f.write(LOADER_CONTENT)
        self._record(path)
        self.console.success(f"Created {CONFIG_DIR}/{LOADER_FILE}")

    def ensure_gitignore_entry(self):
        path = os.path.join(self.project_dir, ".gitignore")

        if not os.path.exists(path):
            with open(path, "w", encoding="utf-8") as f:
                f.write(f"{GITIGNORE_ENTRY}\n")
            self._record(path)
            self.console.success("Created .gitignore")
            return

        with open(path, "r", encoding="utf-8") as f:
            content = f.read()

        if GITIGNORE_ENTRY in content:
            self.console.warning(f".gitignore already has {GITIGNORE_ENTRY}")
            return

        with open(path, "a", encoding="utf-8") as f:
            if content and not content.endswith("\n"):
                f.write("\n")
            f.write(f"{GITIGNORE_ENTRY}\n")
        self._record(path)
        self.console.success("Updated .gitignore")

    def _record(self, path: str):
        logger.debug(f"Wrote {path}")
        self.created.append(path)
