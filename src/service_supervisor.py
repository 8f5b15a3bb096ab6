"""
Service Supervisor - Spawns and terminates the application and support services
Handles output wiring, exit observation and platform-specific termination
"""

import asyncio
import logging
import os
import shlex
import signal
import subprocess
import sys
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

import psutil

from errors import SpawnFailure

logger = logging.getLogger(__name__)

GRACE_PERIOD = 1.0
TREE_KILL_WAIT = 5.0
OUTPUT_DRAIN_TIMEOUT = 1.0

PASS_THROUGH_VARIABLES = (
    "DEVSESSION_PRO_ORIGIN",
    "DEVSESSION_PRO_AUTH_TOKEN",
    "DEVSESSION_PRO_TIMEOUT",
)


class ServiceKind(str, Enum):
    """Which child service a handle belongs to"""
    APPLICATION = "application"
    SUPPORT = "support"


class StdioMode(str, Enum):
    """How child output is connected to the orchestrator"""
    VERBOSE = "verbose"
    QUIET = "quiet"


class ServiceProcessHandle:
    """A spawned child service, owned by the supervisor"""

    def __init__(self, kind: ServiceKind, process: asyncio.subprocess.Process, stdio_mode: StdioMode):
        self.kind = kind
        self.process = process
        self.pid: int = process.pid
        self.stdio_mode = stdio_mode
        self.exit_code: Optional[int] = None
        self.released = False
        self.tasks: List[asyncio.Task] = []

    def has_exited(self) -> bool:
        """Check if the child has been observed to exit"""
        if self.exit_code is None and self.process.returncode is not None:
            self.exit_code = self.process.returncode
        return self.exit_code is not None

    def __repr__(self):
        return f"ServiceProcessHandle(kind='{self.kind.value}', pid={self.pid}, exit_code={self.exit_code})"


def is_error_line(line: str) -> bool:
    """Quiet mode only lets through stderr lines that mention an error"""
    return "error" in line.lower()


def kill_process_tree(pid: int, timeout: float = TREE_KILL_WAIT) -> None:
    """Kill a process and all of its descendants"""
    try:
        parent = psutil.Process(pid)
        descendants = parent.children(recursive=True)
    except psutil.NoSuchProcess:
        return

    for proc in [parent, *descendants]:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass

    # The direct child is reaped by the event loop, never by psutil
    _gone, alive = psutil.wait_procs(descendants, timeout=timeout)
    for proc in alive:
        logger.warning(f"Process {proc.pid} survived tree kill")


class TerminationStrategy:
    """How a child process is stopped"""

    name = "base"

    async def terminate(self, handle: ServiceProcessHandle) -> None:
        """Stop the child; returns once it has exited or the strategy gives up"""
        raise NotImplementedError


class GracefulThenForceful(TerminationStrategy):
    """SIGTERM to the child's process group, SIGKILL after a grace period"""

    name = "graceful-then-forceful"

    def __init__(self, grace_period: float = GRACE_PERIOD):
        self.grace_period = grace_period

    async def terminate(self, handle: ServiceProcessHandle) -> None:
        self._signal(handle, signal.SIGTERM)
        try:
            await asyncio.wait_for(handle.process.wait(), timeout=self.grace_period)
            logger.info(f"{handle.kind.value} (PID {handle.pid}) terminated gracefully")
            return
        except asyncio.TimeoutError:
            logger.warning(f"{handle.kind.value} (PID {handle.pid}) did not stop gracefully, force killing")

        self._signal(handle, signal.SIGKILL)
        await handle.process.wait()

    def _signal(self, handle: ServiceProcessHandle, sig: int):
        """Signal the whole process group, falling back to the child alone"""
        try:
            os.killpg(os.getpgid(handle.pid), sig)
        except ProcessLookupError:
            logger.debug(f"Process {handle.pid} already gone")
        except PermissionError:
            try:
                handle.process.send_signal(sig)
            except ProcessLookupError:
                pass


class ForcefulTreeKill(TerminationStrategy):
    """taskkill /f /t on the child's PID, psutil tree kill if taskkill is unavailable"""

    name = "forceful-tree-kill"

    def __init__(self, wait_timeout: float = TREE_KILL_WAIT):
        self.wait_timeout = wait_timeout

    async def terminate(self, handle: ServiceProcessHandle) -> None:
        try:
            killer = await asyncio.create_subprocess_exec(
                "taskkill", "/pid", str(handle.pid), "/f", "/t",
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
            await killer.wait()
        except OSError as e:
            logger.warning(f"taskkill unavailable ({e}), killing process tree directly")
            await asyncio.to_thread(kill_process_tree, handle.pid, self.wait_timeout)

        try:
            await asyncio.wait_for(handle.process.wait(), timeout=self.wait_timeout)
        except asyncio.TimeoutError:
            logger.error(f"{handle.kind.value} (PID {handle.pid}) still running after tree kill")


def default_termination_strategy() -> TerminationStrategy:
    """Pick the termination strategy for the current platform"""
    if sys.platform == "win32":
        return ForcefulTreeKill()
    return GracefulThenForceful()


def application_environment(app_port: int) -> Dict[str, str]:
    """Environment for the application service"""
    env = os.environ.copy()
    env["PORT"] = str(app_port)
    return env


def application_arguments(app_port: int) -> List[str]:
    """Arguments appended to the application's dev command"""
    return ["--", "--port", str(app_port)]


def support_environment(support_port: int, host: str, project_dir: str) -> Dict[str, str]:
    """Environment for the support service; pass-through variables default to empty"""
    env = os.environ.copy()
    env["PORT"] = str(support_port)
    env["HOST"] = host
    env["DEVSESSION_PROJECT_PATH"] = project_dir
    for name in PASS_THROUGH_VARIABLES:
        env[name] = os.environ.get(name, "")
    return env


def _shell_command(command: str, args: Sequence[str]) -> str:
    """Join a shell command with extra arguments, quoted for the platform shell"""
    if not args:
        return command
    if sys.platform == "win32":
        return f"{command} {subprocess.list2cmdline(list(args))}"
    return f"{command} {shlex.join(args)}"


class ServiceSupervisor:
    """Owns the child service processes for one session"""

    def __init__(
        self,
        strategy: Optional[TerminationStrategy] = None,
        death_callback: Optional[Callable[[ServiceProcessHandle], None]] = None,
    ):
        self.strategy = strategy or default_termination_strategy()
        self.death_callback = death_callback
        self.handles: Dict[ServiceKind, ServiceProcessHandle] = {}

        logger.debug(f"Service supervisor using {self.strategy.name} termination")

    async def spawn(
        self,
        kind: ServiceKind,
        command: str,
        args: Sequence[str] = (),
        env: Optional[Dict[str, str]] = None,
        stdio_mode: StdioMode = StdioMode.QUIET,
        cwd: Optional[str] = None,
        shell: bool = False,
    ) -> ServiceProcessHandle:
        """Start a child service; spawn errors raise SpawnFailure"""
        verbose = stdio_mode == StdioMode.VERBOSE
        options = {
            "stdin": subprocess.DEVNULL,
            "stdout": None if verbose else subprocess.DEVNULL,
            "stderr": None if verbose else subprocess.PIPE,
            "env": env,
            "cwd": cwd,
            # Own process group so termination reaches grandchildren too
            "start_new_session": sys.platform != "win32",
        }

        try:
            if shell:
                cmdline = _shell_command(command, args)
                logger.info(f"Starting {kind.value}: {cmdline}")
                process = await asyncio.create_subprocess_shell(cmdline, **options)
            else:
                logger.info(f"Starting {kind.value}: {' '.join([command, *args])}")
                process = await asyncio.create_subprocess_exec(command, *args, **options)
        except OSError as e:
            raise SpawnFailure(kind.value, str(e)) from e

        handle = ServiceProcessHandle(kind, process, stdio_mode)
        self.handles[kind] = handle

        if process.stderr is not None:
            handle.tasks.append(asyncio.create_task(self._relay_errors(handle), name=f"{kind.value}-stderr"))
        handle.tasks.append(asyncio.create_task(self._monitor(handle), name=f"{kind.value}-monitor"))

        logger.info(f"{kind.value} started with PID {handle.pid}")
        return handle

    async def terminate(self, handle: ServiceProcessHandle) -> None:
        """Stop a child service; a no-op for handles already terminated"""
        if handle.released:
            return
        handle.released = True

        if not handle.has_exited():
            logger.info(f"Stopping {handle.kind.value} (PID {handle.pid})")
            await self.strategy.terminate(handle)

        handle.has_exited()
        await self._drain_tasks(handle)

        if self.handles.get(handle.kind) is handle:
            del self.handles[handle.kind]
        logger.info(f"{handle.kind.value} stopped (exit code {handle.exit_code})")

    async def terminate_all(self) -> None:
        """Stop every child still owned by the supervisor"""
        handles = list(self.handles.values())
        if handles:
            await asyncio.gather(*(self.terminate(handle) for handle in handles))

    async def _relay_errors(self, handle: ServiceProcessHandle):
        """Re-emit child stderr lines that mention an error"""
        stream = handle.process.stderr
        while True:
            line = await stream.readline()
            if not line:
                break

            text = line.decode("utf-8", errors="replace")
            if is_error_line(text):
                sys.stderr.write(text)
                sys.stderr.flush()

    async def _monitor(self, handle: ServiceProcessHandle):
        """Record the exit code and report unexpected exits"""
        handle.exit_code = await handle.process.wait()

        if handle.released:
            return

        logger.warning(f"{handle.kind.value} exited unexpectedly with code {handle.exit_code}")
        if self.death_callback:
            try:
                self.death_callback(handle)
            except Exception as e:  # pylint: disable=broad-except
                logger.error(f"Error calling death callback for {handle.kind.value}: {e}")

    async def _drain_tasks(self, handle: ServiceProcessHandle):
        """Let output and monitor tasks finish, cancelling stragglers"""
        pending = [task for task in handle.tasks if not task.done()]
        if pending:
            _done, still_pending = await asyncio.wait(pending, timeout=OUTPUT_DRAIN_TIMEOUT)
            for task in still_pending:
                task.cancel()
            if still_pending:
                await asyncio.gather(*still_pending, return_exceptions=True)
        handle.tasks.clear()
