"""
Lifecycle Controller - Sequences one development session from start to stop
Allocates ports, starts both child services, waits for them, puts the proxy
in front of the application and tears everything down exactly once
"""

import asyncio
import logging
import shlex
import signal
import sys
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, FrozenSet, Optional, Sequence

from console_output import ConsoleOutput
from errors import DevSessionError, SpawnFailure
from html_injector import ProxyConfiguration, plugin_script_tags
from port_allocator import PortAssignment, PreferredPorts, allocate_session_ports
from proxy_gateway import ProxyGateway, describe_origin
from readiness_probe import DEFAULT_TIMEOUT, await_http, await_port
from service_supervisor import (
    ServiceKind,
    ServiceProcessHandle,
    ServiceSupervisor,
    StdioMode,
    application_arguments,
    application_environment,
    support_environment,
)

logger = logging.getLogger(__name__)

HEALTH_PATH = "/api/health"


class SessionState(str, Enum):
    """Where a session is in its lifecycle"""
    IDLE = "idle"
    ALLOCATING = "allocating"
    SPAWNING = "spawning"
    PROBING = "probing"
    PROXY_STARTING = "proxy_starting"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"
    FAILED = "failed"


TERMINAL_STATES = frozenset({SessionState.STOPPED, SessionState.FAILED})

# FAILED is reachable from every non-terminal state and is added in transition()
TRANSITIONS: Dict[SessionState, FrozenSet[SessionState]] = {
    SessionState.IDLE: frozenset({SessionState.ALLOCATING, SessionState.SHUTTING_DOWN}),
    SessionState.ALLOCATING: frozenset({SessionState.SPAWNING, SessionState.SHUTTING_DOWN}),
    SessionState.SPAWNING: frozenset({SessionState.PROBING, SessionState.SHUTTING_DOWN}),
    SessionState.PROBING: frozenset({SessionState.PROXY_STARTING, SessionState.SHUTTING_DOWN}),
    SessionState.PROXY_STARTING: frozenset({SessionState.RUNNING, SessionState.SHUTTING_DOWN}),
    SessionState.RUNNING: frozenset({SessionState.SHUTTING_DOWN}),
    SessionState.SHUTTING_DOWN: frozenset({SessionState.STOPPED}),
    SessionState.STOPPED: frozenset(),
    SessionState.FAILED: frozenset(),
}


class ShutdownState:
    """Set once when teardown begins, never reset"""

    def __init__(self):
        self.started = False

    def begin(self) -> bool:
        """Claim the teardown; False if someone already did"""
        if self.started:
            return False
        self.started = True
        return True


@dataclass(frozen=True)
class SessionSettings:
    """Everything a session needs that comes from config and the command line"""
    project_dir: str
    host: str = "localhost"
    preferred_ports: PreferredPorts = PreferredPorts()
    app_command: str = "npm run dev"
    support_command: str = "devsession-support"
    plugin_names: Sequence[str] = ()
    inject_overlay: bool = True
    verbose: bool = False
    readiness_timeout: float = DEFAULT_TIMEOUT


class LifecycleController:
    """Owns all mutable state of one session"""

    def __init__(
        self,
        settings: SessionSettings,
        console: Optional[ConsoleOutput] = None,
        supervisor: Optional[ServiceSupervisor] = None,
        gateway_factory: Callable[[ProxyConfiguration], ProxyGateway] = ProxyGateway,
    ):
        self.settings = settings
        self.console = console or ConsoleOutput(verbose=settings.verbose)
        self.supervisor = supervisor or ServiceSupervisor(death_callback=self._on_child_exit)
        self.gateway_factory = gateway_factory

        self.state = SessionState.IDLE
        self.shutdown_state = ShutdownState()
        self.ports: Optional[PortAssignment] = None
        self.app_handle: Optional[ServiceProcessHandle] = None
        self.support_handle: Optional[ServiceProcessHandle] = None
        self.gateway: Optional[ProxyGateway] = None
        self.elapsed: Optional[float] = None
        self.exit_code = 0

        self.stop_event: Optional[asyncio.Event] = None
        self.stop_requested = False
        self._start_task: Optional[asyncio.Task] = None
        self._spawned = 0

    @property
    def stdio_mode(self) -> StdioMode:
        return StdioMode.VERBOSE if self.settings.verbose else StdioMode.QUIET

    @property
    def client_host(self) -> str:
        return describe_origin(self.settings.host, 0)[0]

    @property
    def proxy_url(self) -> Optional[str]:
        if self.ports is None:
            return None
        return describe_origin(self.settings.host, self.ports.proxy_port)[1]

    def transition(self, new_state: SessionState):
        """Move to `new_state`; illegal moves raise RuntimeError"""
        allowed = TRANSITIONS[self.state]
        if new_state is SessionState.FAILED and self.state not in TERMINAL_STATES:
            allowed = allowed | {SessionState.FAILED}

        if new_state not in allowed:
            raise RuntimeError(f"Illegal session transition {self.state.value} -> {new_state.value}")

        logger.debug(f"Session {self.state.value} -> {new_state.value}")
        self.state = new_state

    # -------------------------------------------------------------------------
    # Startup
    # -------------------------------------------------------------------------

    async def start(self) -> PortAssignment:
        """
        Run the startup sequence up to RUNNING
        Any failure moves the session to FAILED, cleans up and re-raises
        """
        loop = asyncio.get_running_loop()
        started_at = loop.time()

        try:
            self.transition(SessionState.ALLOCATING)
            self.ports = await allocate_session_ports(self.settings.preferred_ports)
            logger.info(f"Ports: {self.ports}")

            self.transition(SessionState.SPAWNING)
            self.console.progress("Starting services...")
            await self._run_siblings(self._start_application(), self._start_support())

            self.transition(SessionState.PROXY_STARTING)
            self.gateway = self.gateway_factory(self.proxy_configuration())
            await self.gateway.start(self.ports.proxy_port, host=self.settings.host)
            self.console.progress(f"✓ Proxy (port {self.ports.proxy_port})")

            self.transition(SessionState.RUNNING)
        except asyncio.CancelledError:
            raise
        except Exception:
            if self.state not in TERMINAL_STATES and not self.shutdown_state.started:
                self.transition(SessionState.FAILED)
            await self.shutdown()
            raise

        self.elapsed = loop.time() - started_at
        return self.ports

    def proxy_configuration(self) -> ProxyConfiguration:
        """Gateway settings for the allocated ports"""
        _host, support_origin = describe_origin(self.settings.host, self.ports.support_port)
        return ProxyConfiguration(
            target_origin=f"http://localhost:{self.ports.app_port}",
            support_origin=support_origin,
            injection_fragments=tuple(plugin_script_tags(self.settings.plugin_names, support_origin)),
            inject_overlay=self.settings.inject_overlay,
        )

    async def _run_siblings(self, *coros):
        """Run coroutines concurrently; the first failure cancels the rest before propagating"""
        tasks = [asyncio.create_task(coro) for coro in coros]
        try:
            done, _pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
            failed = [task for task in done if not task.cancelled() and task.exception()]
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        if failed:
            raise failed[0].exception()

    def _mark_spawned(self):
        """Both branches report here; the second one moves the session to PROBING"""
        self._spawned += 1
        if self._spawned == 2:
            self.transition(SessionState.PROBING)

    async def _start_application(self):
        port = self.ports.app_port
        self.console.progress(f"Starting your app on port {port}...")

        self.app_handle = await self.supervisor.spawn(
            ServiceKind.APPLICATION,
            self.settings.app_command,
            application_arguments(port),
            env=application_environment(port),
            stdio_mode=self.stdio_mode,
            cwd=self.settings.project_dir,
            shell=True,
        )
        self._mark_spawned()

        await await_port(port, self.settings.readiness_timeout)
        self.console.progress(f"✓ App server (port {port})")

    async def _start_support(self):
        port = self.ports.support_port
        self.console.progress(f"Starting support service on port {port}...")

        argv = shlex.split(self.settings.support_command, posix=sys.platform != "win32")
        if not argv:
            raise SpawnFailure(ServiceKind.SUPPORT.value, "no support command configured")

        self.support_handle = await self.supervisor.spawn(
            ServiceKind.SUPPORT,
            argv[0],
            argv[1:],
            env=support_environment(port, self.settings.host, self.settings.project_dir),
            stdio_mode=self.stdio_mode,
            cwd=self.settings.project_dir,
        )
        self._mark_spawned()

        health_url = f"http://{self.client_host}:{port}{HEALTH_PATH}"
        await await_http(health_url, self.settings.readiness_timeout)
        self.console.progress(f"✓ Support service (port {port})")

    # -------------------------------------------------------------------------
    # Shutdown
    # -------------------------------------------------------------------------

    async def shutdown(self):
        """Terminate both children and close the listener; safe to call repeatedly"""
        if not self.shutdown_state.begin():
            logger.debug("Shutdown already in progress")
            return

        if self.state not in TERMINAL_STATES:
            self.transition(SessionState.SHUTTING_DOWN)
        self.console.stopping()

        try:
            await self.supervisor.terminate_all()
        finally:
            if self.gateway is not None:
                await self.gateway.stop()

        if self.state is SessionState.SHUTTING_DOWN:
            self.transition(SessionState.STOPPED)
            self.console.stopped()
        logger.info(f"Session {self.state.value}")

    def request_stop(self, signum: Optional[int] = None):
        """Ask a running or starting session to shut down"""
        if signum is not None:
            logger.info(f"Received signal {signum}, shutting down...")

        self.stop_requested = True
        if self._start_task is not None and not self._start_task.done():
            self._start_task.cancel()
        if self.stop_event is not None:
            self.stop_event.set()

    def _on_child_exit(self, handle: ServiceProcessHandle):
        """A child dying while the session runs ends the session"""
        if self.state is not SessionState.RUNNING or self.stop_requested:
            return

        self.console.error(f"{handle.kind.value} exited unexpectedly with code {handle.exit_code}")
        self.exit_code = 1
        self.request_stop()

    def install_signal_handlers(self, loop: asyncio.AbstractEventLoop):
        """Route SIGINT and SIGTERM to request_stop"""
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop, sig)
            except NotImplementedError:
                # Windows event loops have no add_signal_handler
                signal.signal(sig, lambda signum, _frame: loop.call_soon_threadsafe(self.request_stop, signum))

    def remove_signal_handlers(self, loop: asyncio.AbstractEventLoop):
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except NotImplementedError:
                signal.signal(sig, signal.SIG_DFL)

    # -------------------------------------------------------------------------
    # Whole session
    # -------------------------------------------------------------------------

    async def run(self) -> int:
        """Start, serve until stopped and clean up; returns the process exit status"""
        loop = asyncio.get_running_loop()
        self.stop_event = asyncio.Event()
        self.install_signal_handlers(loop)

        try:
            self._start_task = asyncio.create_task(self.start())
            try:
                await self._start_task
            except asyncio.CancelledError:
                if not self.stop_requested:
                    raise
                await self.shutdown()
                return 0
            except DevSessionError as e:
                logger.debug("Startup failed", exc_info=True)
                self.console.error(str(e))
                return 1

            self.console.ready(self.proxy_url, self.elapsed)

            await self.stop_event.wait()
            await self.shutdown()
            return self.exit_code
        finally:
            self.remove_signal_handlers(loop)
