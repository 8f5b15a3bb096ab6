#!/usr/bin/env python3
"""
devsession - Local development session orchestrator

Runs your dev server behind a transparent proxy that loads the overlay:
- Picks free ports for the proxy, the support service and your app
- Starts both services and waits until they are ready
- Rewrites HTML on the way through and tunnels WebSockets untouched
- Tears everything down on Ctrl+C
"""

import argparse
import asyncio
import logging
import os
import sys
from typing import List, Optional

from console_output import ConsoleOutput
from lifecycle_controller import LifecycleController, SessionSettings
from plugin_scanner import scan_plugins
from project_init import ProjectInitializer
from session_config import SessionConfig, missing_initialization_items
from update_checker import UpdateChecker, installed_version

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(verbose: bool):
    """Diagnostics go to stderr; DEBUG with --verbose, warnings only otherwise"""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING, format=LOG_FORMAT)
    # aiohttp and sanic are chatty at DEBUG and add nothing to a dev session
    for name in ("aiohttp", "sanic"):
        logging.getLogger(name).setLevel(logging.INFO if verbose else logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="devsession",
        description="Run your dev server behind a proxy that injects the development overlay",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {installed_version()}")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("init", help="Initialize devsession in this project")

    start = subparsers.add_parser("start", help="Start the development session behind the proxy")
    start.add_argument("-v", "--verbose", action="store_true", help="Show detailed startup logs")

    return parser


def init_command(project_dir: str, console: ConsoleOutput) -> int:
    """Scaffold .devsession/ in the project"""
    ProjectInitializer(project_dir, console).run()
    return 0


def verify_initialization(project_dir: str, console: ConsoleOutput) -> bool:
    """Explain what is missing when the project was never initialized"""
    missing = missing_initialization_items(project_dir)
    if not missing:
        return True

    console.line()
    console.warning("devsession needs to be initialized before running `devsession start`.")
    for item in missing:
        console.line(f"  missing: {item}", ConsoleOutput.GRAY)
    console.line()
    console.line("Run `devsession init` once in this project, then try again.")
    console.line()
    return False


def session_settings(project_dir: str, verbose: bool) -> SessionSettings:
    """Resolve config file values and discovered plugins into session settings"""
    config = SessionConfig(project_dir)
    return SessionSettings(
        project_dir=project_dir,
        host=config.resolve_host(),
        preferred_ports=config.resolve_preferred_ports(),
        app_command=config.app_command,
        support_command=config.support_command,
        plugin_names=tuple(plugin.name for plugin in scan_plugins(project_dir)),
        inject_overlay=config.overlay_enabled,
        verbose=verbose,
    )


async def run_session(settings: SessionSettings, console: ConsoleOutput) -> int:
    """Update notice, then the session itself"""
    await asyncio.to_thread(UpdateChecker(console).check)
    return await LifecycleController(settings, console).run()


def start_command(project_dir: str, verbose: bool, console: ConsoleOutput) -> int:
    if not verify_initialization(project_dir, console):
        return 1

    settings = session_settings(project_dir, verbose)
    console.banner(installed_version())
    return asyncio.run(run_session(settings, console))


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the devsession command"""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    verbose = getattr(args, "verbose", False)
    configure_logging(verbose)
    console = ConsoleOutput(verbose=verbose)
    project_dir = os.getcwd()

    try:
        if args.command == "init":
            return init_command(project_dir, console)
        return start_command(project_dir, verbose, console)
    except KeyboardInterrupt:
        return 0
    except Exception as e:  # pylint: disable=broad-except
        logger.debug("Unhandled error", exc_info=True)
        console.error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
