"""
Update Checker - Once-a-day notice when a newer release is on the package index
Never fatal: every failure is logged at debug level and ignored
"""

import json
import logging
import os
import re
import time
from importlib import metadata
from typing import Callable, Optional, Tuple

import requests

from console_output import ConsoleOutput

logger = logging.getLogger(__name__)

PACKAGE_NAME = "devsession"
INDEX_URL = f"https://pypi.org/pypi/{PACKAGE_NAME}/json"
CACHE_FILE = os.path.join(os.path.expanduser("~"), ".devsession-update-cache.json")
CHECK_INTERVAL = 24 * 60 * 60
REQUEST_TIMEOUT = 3


def installed_version() -> str:
    """Version of the installed distribution"""
    try:
        return metadata.version(PACKAGE_NAME)
    except metadata.PackageNotFoundError:
        return "0.0.0"


def version_tuple(version: str) -> Tuple[int, int, int]:
    """Leading major.minor.patch numbers; missing or non-numeric parts count as 0"""
    parts = []
    for part in version.split(".")[:3]:
        match = re.match(r"\d+", part)
        parts.append(int(match.group()) if match else 0)
    while len(parts) < 3:
        parts.append(0)
    return tuple(parts)


def is_newer_version(latest: str, current: str) -> bool:
    return version_tuple(latest) > version_tuple(current)


class UpdateChecker:
    """Throttled lookup of the latest published version"""

    def __init__(
        self,
        console: ConsoleOutput,
        cache_file: str = CACHE_FILE,
        current_version: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.console = console
        self.cache_file = cache_file
        self.current_version = current_version or installed_version()
        self.clock = clock

    def should_check(self) -> bool:
        """True unless the cache says we checked within the last day"""
        try:
            with open(self.cache_file, "r", encoding="utf-8") as f:
                cache = json.load(f)
            return self.clock() - float(cache["last_checked"]) > CHECK_INTERVAL
        except (OSError, ValueError, KeyError, TypeError):
            return True

    def fetch_latest_version(self) -> Optional[str]:
        response = requests.get(INDEX_URL, timeout=REQUEST_TIMEOUT)
        response.raise_for_status()
        return response.json().get("info", {}).get("version")

    def save_cache(self, latest_version: str):
        try:
            with open(self.cache_file, "w", encoding="utf-8") as f:
                json.dump({"last_checked": self.clock(), "latest_version": latest_version}, f)
        except OSError as e:
            logger.debug(f"Could not write update cache: {e}")

    def check(self) -> Optional[str]:
        """
        Print a notice if a newer version exists
        Returns the newer version, or None when up to date, throttled or failed
        """
        if not self.should_check():
            logger.debug("Update check skipped (cached)")
            return None

        try:
            latest = self.fetch_latest_version()
        except (requests.exceptions.RequestException, ValueError, AttributeError) as e:
            logger.debug(f"Update check failed: {e}")
            return None

        if not latest:
            logger.debug("Could not determine latest version")
            return None

        self.save_cache(latest)

        if not is_newer_version(latest, self.current_version):
            return None

        self.notify(latest)
        return latest

    def notify(self, latest: str):
        self.console.line(f"Update available: {self.current_version} → {latest}", ConsoleOutput.YELLOW)
        self.console.line(f"Run: pip install --upgrade {PACKAGE_NAME}", ConsoleOutput.CYAN)
        self.console.line()
